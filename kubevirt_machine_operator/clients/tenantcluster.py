"""
tenantcluster.py
----------------
Client for the cluster whose ``Machine`` objects are reconciled.

Reads secrets and config maps, and writes machines back as JSON merge patches
computed against the snapshot taken before the reconcile touched them.
"""
from __future__ import annotations

import base64
import copy
import logging
from typing import Any, Dict, Mapping, Optional

import kopf
import kubernetes
import yaml
from kubernetes.client import ApiClient, CoreV1Api, CustomObjectsApi, V1Secret

from ..config import MACHINE_GROUP, MACHINE_PLURAL, MACHINE_VERSION
from ..errors import InvalidMachineConfiguration

LOG = logging.getLogger(__name__)


def merge_patch(old: Mapping[str, Any], new: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the RFC 7386 merge patch that turns *old* into *new*."""
    patch: Dict[str, Any] = {}
    for key in old.keys() - new.keys():
        patch[key] = None
    for key, value in new.items():
        if key not in old:
            patch[key] = copy.deepcopy(value)
        elif isinstance(value, Mapping) and isinstance(old[key], Mapping):
            nested = merge_patch(old[key], value)
            if nested:
                patch[key] = nested
        elif value != old[key]:
            patch[key] = copy.deepcopy(value)
    return patch


def secret_value(secret: V1Secret, key: str) -> Optional[bytes]:
    """Decoded value of *key* in *secret*, or ``None`` if the key is absent."""
    encoded = (secret.data or {}).get(key)
    if encoded is None:
        return None
    return base64.b64decode(encoded)


class TenantClusterClient:
    def __init__(self, api_client: Optional[ApiClient] = None, logger: Optional[logging.Logger] = None) -> None:
        self.core_v1 = CoreV1Api(api_client)
        self.custom_objects = CustomObjectsApi(api_client)
        self.logger = logger or LOG

    @classmethod
    def from_environment(cls) -> "TenantClusterClient":
        """Build a client from the in-cluster service account, else ``~/.kube/config``."""
        try:
            kubernetes.config.load_incluster_config()
            LOG.info("Loaded in-cluster kube-config")
        except kubernetes.config.config_exception.ConfigException:
            try:
                kubernetes.config.load_kube_config()
                LOG.info("Loaded kube-config from local file")
            except kubernetes.config.config_exception.ConfigException as exc:
                LOG.critical(f"Failed to load Kubernetes configuration: {exc}")
                raise kopf.PermanentError("Cannot load Kubernetes config") from exc
        return cls()

    def get_secret(self, name: str, namespace: str) -> V1Secret:
        return self.core_v1.read_namespaced_secret(name=name, namespace=namespace)

    def get_config_map_value(self, name: str, namespace: str, key: str) -> Dict[str, Any]:
        """Parse the YAML document stored under *key* of config map *namespace/name*."""
        config_map = self.core_v1.read_namespaced_config_map(name=name, namespace=namespace)
        raw = (config_map.data or {}).get(key)
        if raw is None:
            raise InvalidMachineConfiguration(f"configMap {namespace}/{name} has no key {key}")
        try:
            value = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise InvalidMachineConfiguration(f"configMap {namespace}/{name}: key {key} is not valid YAML: {exc}") from exc
        if not isinstance(value, dict):
            raise InvalidMachineConfiguration(f"configMap {namespace}/{name}: key {key} does not hold a map")
        return value

    def patch_machine(self, new: Mapping[str, Any], old: Mapping[str, Any]) -> None:
        """Patch everything but ``status``; a no-op when nothing changed."""
        before = {k: v for k, v in old.items() if k != "status"}
        after = {k: v for k, v in new.items() if k != "status"}
        patch = merge_patch(before, after)
        if not patch:
            return
        metadata = new["metadata"]
        self.logger.debug(f"{metadata['name']}: patching machine with {patch}")
        self.custom_objects.patch_namespaced_custom_object(
            group=MACHINE_GROUP,
            version=MACHINE_VERSION,
            namespace=metadata["namespace"],
            plural=MACHINE_PLURAL,
            name=metadata["name"],
            body=patch,
        )

    def status_patch_machine(self, new: Mapping[str, Any], old: Mapping[str, Any]) -> None:
        """Patch the ``status`` subresource; a no-op when nothing changed."""
        patch = merge_patch({"status": old.get("status") or {}}, {"status": new.get("status") or {}})
        if not patch:
            return
        metadata = new["metadata"]
        self.logger.debug(f"{metadata['name']}: patching machine status with {patch}")
        self.custom_objects.patch_namespaced_custom_object_status(
            group=MACHINE_GROUP,
            version=MACHINE_VERSION,
            namespace=metadata["namespace"],
            plural=MACHINE_PLURAL,
            name=metadata["name"],
            body=patch,
        )
