"""Shared stubs: machines, in-memory cluster clients and an event recorder."""
from __future__ import annotations

import base64
import copy
import functools
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import pytest
from kubernetes.client import ApiException, V1ObjectMeta, V1Secret

from kubevirt_machine_operator.actuator import Actuator
from kubevirt_machine_operator.config import MACHINE_CLUSTER_ID_LABEL
from kubevirt_machine_operator.machinescope import MachineScope, Resolved
from kubevirt_machine_operator.vm_manager import VMManager

logging.basicConfig(level=logging.INFO)
log = logging.getLogger()

INFRA_NAMESPACE = "test-infra-namespace"
INFRA_ID = "test-infra-id"
MACHINE_NAME = "test-machine-name"
MACHINE_NAMESPACE = "openshift-machine-api"
IGNITION_SECRET_NAME = "test-ignition-secret"
STUB_IP = "10.0.0.5"
USER_DATA = b'{"ignition": {"version": "3.1.0"}}'

PROVIDER_SPEC: Dict[str, Any] = {
    "apiVersion": "kubevirtproviderconfig.openshift.io/v1alpha1",
    "kind": "KubevirtMachineProviderSpec",
    "sourcePvcName": "test-source-pvc",
    "ignitionSecretName": IGNITION_SECRET_NAME,
    "networkName": "test-network",
    "requestedMemory": "4096M",
    "requestedCPU": 2,
    "requestedStorage": "50Gi",
    "storageClassName": "test-storage-class",
    "persistentVolumeAccessMode": "ReadWriteOnce",
}


def not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def stub_machine(**provider_overrides: Any) -> Dict[str, Any]:
    """A Machine body as the tenant API would hand it out."""
    provider_spec = {**PROVIDER_SPEC, **provider_overrides}
    return {
        "apiVersion": "machine.openshift.io/v1beta1",
        "kind": "Machine",
        "metadata": {
            "name": MACHINE_NAME,
            "namespace": MACHINE_NAMESPACE,
            "uid": "machine-uid",
            "resourceVersion": "100",
            "labels": {
                MACHINE_CLUSTER_ID_LABEL: INFRA_ID,
                "machine.openshift.io/cluster-api-machine-role": "worker",
            },
            "annotations": {},
        },
        "spec": {"providerSpec": {"value": provider_spec}},
        "status": {},
    }


def stub_resolver(hostname: str, timeout: float) -> Resolved:
    return Resolved((STUB_IP,))


def make_scope(machine: Optional[Dict[str, Any]] = None, **kwargs: Any) -> MachineScope:
    kwargs.setdefault("resolver", stub_resolver)
    return MachineScope(machine or stub_machine(), INFRA_NAMESPACE, INFRA_ID, **kwargs)


def make_secret(name: str, namespace: str, data: Dict[str, bytes]) -> V1Secret:
    return V1Secret(
        metadata=V1ObjectMeta(name=name, namespace=namespace),
        data={key: base64.b64encode(value).decode("ascii") for key, value in data.items()},
    )


class FakeInfraClient:
    """In-memory stand-in for the infra cluster, keyed by (namespace, name)."""

    def __init__(self) -> None:
        self.vms: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.vmis: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.errors: Dict[str, Exception] = {}
        self.deleted: List[Tuple[str, str, int]] = []
        self._rv = 1

    def _call(self, method: str) -> None:
        self.calls.append(method)
        if method in self.errors:
            raise self.errors[method]

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add_vm(self, name: str = MACHINE_NAME, created: bool = True, ready: bool = True, rv: str = "1") -> Dict[str, Any]:
        vm = {
            "apiVersion": "kubevirt.io/v1",
            "kind": "VirtualMachine",
            "metadata": {"name": name, "namespace": INFRA_NAMESPACE, "uid": f"uid-{name}", "resourceVersion": rv},
            "spec": {},
            "status": {"created": created, "ready": ready},
        }
        self.vms[(INFRA_NAMESPACE, name)] = vm
        return vm

    def add_vmi(self, name: str = MACHINE_NAME) -> None:
        self.vmis[(INFRA_NAMESPACE, name)] = {
            "metadata": {"name": name, "namespace": INFRA_NAMESPACE},
            "status": {"phase": "Running"},
        }

    def create_virtual_machine(self, namespace: str, vm: Dict[str, Any]) -> Dict[str, Any]:
        self._call("create_virtual_machine")
        key = (namespace, vm["metadata"]["name"])
        if key in self.vms:
            raise ApiException(status=409, reason="AlreadyExists")
        stored = copy.deepcopy(vm)
        stored["metadata"].update(uid=f"uid-{key[1]}", resourceVersion=self._next_rv())
        stored["status"] = {}
        self.vms[key] = stored
        return copy.deepcopy(stored)

    def get_virtual_machine(self, namespace: str, name: str) -> Dict[str, Any]:
        self._call("get_virtual_machine")
        if (namespace, name) not in self.vms:
            raise not_found()
        return copy.deepcopy(self.vms[(namespace, name)])

    def update_virtual_machine(self, namespace: str, vm: Dict[str, Any]) -> Dict[str, Any]:
        self._call("update_virtual_machine")
        key = (namespace, vm["metadata"]["name"])
        if key not in self.vms:
            raise not_found()
        stored = self.vms[key]
        if vm["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        changed = vm["spec"] != stored["spec"] or vm["metadata"].get("labels") != stored["metadata"].get("labels")
        updated = copy.deepcopy(vm)
        updated["metadata"]["uid"] = stored["metadata"]["uid"]
        updated["status"] = copy.deepcopy(stored["status"])
        if changed:
            updated["metadata"]["resourceVersion"] = self._next_rv()
        self.vms[key] = updated
        return copy.deepcopy(updated)

    def delete_virtual_machine(self, namespace: str, name: str, grace_period_seconds: int) -> None:
        self._call("delete_virtual_machine")
        if (namespace, name) not in self.vms:
            raise not_found()
        del self.vms[(namespace, name)]
        self.deleted.append((namespace, name, grace_period_seconds))

    def list_virtual_machines(self, namespace: str, label_selector: str = "") -> List[Dict[str, Any]]:
        self._call("list_virtual_machines")
        return [copy.deepcopy(vm) for (ns, _), vm in self.vms.items() if ns == namespace]

    def get_virtual_machine_instance(self, namespace: str, name: str) -> Dict[str, Any]:
        self._call("get_virtual_machine_instance")
        if (namespace, name) not in self.vmis:
            raise not_found()
        return copy.deepcopy(self.vmis[(namespace, name)])

    def create_secret(self, namespace: str, secret: Dict[str, Any]) -> Dict[str, Any]:
        self._call("create_secret")
        key = (namespace, secret["metadata"]["name"])
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = copy.deepcopy(secret)
        return secret

    def replace_secret(self, namespace: str, secret: Dict[str, Any]) -> Dict[str, Any]:
        self._call("replace_secret")
        self.secrets[(namespace, secret["metadata"]["name"])] = copy.deepcopy(secret)
        return secret

    def secret_payload(self, name: str) -> Dict[str, Any]:
        encoded = self.secrets[(INFRA_NAMESPACE, name)]["data"]["userdata"]
        return json.loads(base64.b64decode(encoded))


class FakeTenantClient:
    """In-memory tenant cluster: secrets, config map values and recorded patches."""

    def __init__(self) -> None:
        self.secrets: Dict[Tuple[str, str], V1Secret] = {}
        self.config_maps: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.patches: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        self.status_patches: List[Tuple[Dict[str, Any], Dict[str, Any]]] = []
        self.patch_error: Optional[Exception] = None

    def add_secret(self, name: str, namespace: str, data: Dict[str, bytes]) -> None:
        self.secrets[(namespace, name)] = make_secret(name, namespace, data)

    def get_secret(self, name: str, namespace: str) -> V1Secret:
        if (namespace, name) not in self.secrets:
            raise not_found()
        return self.secrets[(namespace, name)]

    def get_config_map_value(self, name: str, namespace: str, key: str) -> Dict[str, Any]:
        if (namespace, name) not in self.config_maps:
            raise not_found()
        return self.config_maps[(namespace, name)]

    def patch_machine(self, new: Dict[str, Any], old: Dict[str, Any]) -> None:
        if self.patch_error is not None:
            raise self.patch_error
        self.patches.append((copy.deepcopy(new), copy.deepcopy(old)))

    def status_patch_machine(self, new: Dict[str, Any], old: Dict[str, Any]) -> None:
        self.status_patches.append((copy.deepcopy(new), copy.deepcopy(old)))


class FakeEventRecorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, str]] = []

    def event(self, obj: Dict[str, Any], type: str, reason: str, message: str) -> None:
        self.events.append((type, reason, message))


@pytest.fixture
def infra_client() -> FakeInfraClient:
    return FakeInfraClient()


@pytest.fixture
def tenant_client() -> FakeTenantClient:
    client = FakeTenantClient()
    client.add_secret(IGNITION_SECRET_NAME, MACHINE_NAMESPACE, {"userData": USER_DATA})
    return client


@pytest.fixture
def recorder() -> FakeEventRecorder:
    return FakeEventRecorder()


@pytest.fixture
def vm_manager(infra_client: FakeInfraClient) -> VMManager:
    return VMManager(infra_client)


@pytest.fixture
def actuator(vm_manager: VMManager, recorder: FakeEventRecorder, tenant_client: FakeTenantClient) -> Actuator:
    return Actuator(
        vm_manager,
        recorder,
        tenant_client,
        INFRA_NAMESPACE,
        INFRA_ID,
        scope_factory=functools.partial(MachineScope, resolver=stub_resolver),
    )
