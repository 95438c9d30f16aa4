"""
infracluster.py
---------------
Client for the infrastructure cluster that runs the KubeVirt VMs.

Credentials are a kubeconfig stored in a tenant-cluster secret. Errors from the
API surface unchanged as ``kubernetes.client.ApiException``; a 404 means the
object does not exist.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import kubernetes
import yaml
from kubernetes.client import ApiClient, CoreV1Api, CustomObjectsApi

from ..config import (
    DEFAULT_INFRA_CREDENTIALS_SECRET_NAME,
    DEFAULT_INFRA_CREDENTIALS_SECRET_NAMESPACE,
    INFRA_CREDENTIALS_KEY,
    KUBEVIRT_GROUP,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_PLURAL,
    KUBEVIRT_VMI_PLURAL,
)
from ..errors import InvalidMachineConfiguration, is_not_found
from .tenantcluster import TenantClusterClient, secret_value

LOG = logging.getLogger(__name__)


class InfraClusterClient:
    def __init__(self, api_client: Optional[ApiClient] = None) -> None:
        self.custom_objects = CustomObjectsApi(api_client)
        self.core_v1 = CoreV1Api(api_client)

    @classmethod
    def from_tenant_secret(
        cls,
        tenant_client: TenantClusterClient,
        secret_name: str = "",
        namespace: str = "",
    ) -> "InfraClusterClient":
        """Build a client from the kubeconfig kept in a tenant-cluster secret.

        Without *secret_name* the well-known ``openshift-machine-api/kubevirt-credentials``
        secret is used. A custom *secret_name* must come with its *namespace*.
        """
        if not secret_name:
            secret_name = DEFAULT_INFRA_CREDENTIALS_SECRET_NAME
            namespace = DEFAULT_INFRA_CREDENTIALS_SECRET_NAMESPACE
        if not namespace:
            raise InvalidMachineConfiguration("Infra-cluster credentials secret - Invalid empty namespace")

        try:
            secret = tenant_client.get_secret(secret_name, namespace)
        except kubernetes.client.ApiException as exc:
            if is_not_found(exc):
                raise InvalidMachineConfiguration(
                    f"Infra-cluster credentials secret {namespace}/{secret_name} not found"
                ) from exc
            raise

        kubeconfig = secret_value(secret, INFRA_CREDENTIALS_KEY)
        if kubeconfig is None:
            raise InvalidMachineConfiguration(
                f"Infra-cluster credentials secret {namespace}/{secret_name} did not contain key {INFRA_CREDENTIALS_KEY}"
            )
        try:
            config_dict = yaml.safe_load(kubeconfig)
        except yaml.YAMLError as exc:
            raise InvalidMachineConfiguration(
                f"Infra-cluster credentials secret {namespace}/{secret_name}: kubeconfig is not valid YAML"
            ) from exc

        api_client = kubernetes.config.new_client_from_config_dict(config_dict)
        LOG.info(f"Infra-cluster client built from secret {namespace}/{secret_name}")
        return cls(api_client)

    # -- VirtualMachine ----------------------------------------------------------
    def create_virtual_machine(self, namespace: str, vm: Mapping[str, Any]) -> Dict[str, Any]:
        return self.custom_objects.create_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VM_PLURAL,
            body=vm,
        )

    def get_virtual_machine(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.custom_objects.get_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VM_PLURAL,
            name=name,
        )

    def update_virtual_machine(self, namespace: str, vm: Mapping[str, Any]) -> Dict[str, Any]:
        return self.custom_objects.replace_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VM_PLURAL,
            name=vm["metadata"]["name"],
            body=vm,
        )

    def delete_virtual_machine(self, namespace: str, name: str, grace_period_seconds: int) -> None:
        self.custom_objects.delete_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VM_PLURAL,
            name=name,
            grace_period_seconds=grace_period_seconds,
        )

    def list_virtual_machines(self, namespace: str, label_selector: str = "") -> List[Dict[str, Any]]:
        vms = self.custom_objects.list_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VM_PLURAL,
            label_selector=label_selector,
        )
        return vms.get("items", [])

    # -- VirtualMachineInstance --------------------------------------------------
    def get_virtual_machine_instance(self, namespace: str, name: str) -> Dict[str, Any]:
        return self.custom_objects.get_namespaced_custom_object(
            group=KUBEVIRT_GROUP,
            version=KUBEVIRT_VERSION,
            namespace=namespace,
            plural=KUBEVIRT_VMI_PLURAL,
            name=name,
        )

    # -- Secret ----------------------------------------------------------------
    def create_secret(self, namespace: str, secret: Mapping[str, Any]):
        return self.core_v1.create_namespaced_secret(namespace=namespace, body=secret)

    def replace_secret(self, namespace: str, secret: Mapping[str, Any]):
        return self.core_v1.replace_namespaced_secret(
            name=secret["metadata"]["name"], namespace=namespace, body=secret
        )
