from unittest.mock import MagicMock

import kopf
import kubernetes
import pytest
from kubernetes.client import ApiClient, ApiException, V1ConfigMap

from conftest import MACHINE_NAME, MACHINE_NAMESPACE, make_secret, not_found, stub_machine
from kubevirt_machine_operator.clients import InfraClusterClient, TenantClusterClient, merge_patch
from kubevirt_machine_operator.clients.tenantcluster import secret_value
from kubevirt_machine_operator.errors import InvalidMachineConfiguration

KUBECONFIG = b"""
apiVersion: v1
kind: Config
clusters:
- name: infra
  cluster:
    server: https://infra.example.com:6443
contexts:
- name: infra
  context:
    cluster: infra
    user: operator
current-context: infra
users:
- name: operator
  user:
    token: secret-token
"""


# ---------------------------------------------------------------------------
# merge_patch --------------------------------------------------------------------
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "old, new, expected",
    [
        ({"a": 1}, {"a": 1}, {}),
        ({"a": 1}, {"a": 2}, {"a": 2}),
        ({"a": 1}, {}, {"a": None}),
        ({}, {"a": {"b": 1}}, {"a": {"b": 1}}),
        ({"a": {"b": 1, "c": 2}}, {"a": {"b": 1, "c": 3}}, {"a": {"c": 3}}),
        ({"a": {"b": 1}}, {"a": {}}, {"a": {"b": None}}),
        ({"a": [1, 2]}, {"a": [1]}, {"a": [1]}),
        ({"a": "x"}, {"a": {"b": 1}}, {"a": {"b": 1}}),
    ],
)
def test_merge_patch(old, new, expected):
    assert merge_patch(old, new) == expected


def test_secret_value():
    secret = make_secret("s", "ns", {"key": b"value"})

    assert secret_value(secret, "key") == b"value"
    assert secret_value(secret, "other") is None


# ---------------------------------------------------------------------------
# Tenant cluster -----------------------------------------------------------------
# ---------------------------------------------------------------------------
@pytest.fixture
def tenant():
    client = TenantClusterClient(ApiClient())
    client.core_v1 = MagicMock()
    client.custom_objects = MagicMock()
    return client


def test_get_config_map_value(tenant):
    tenant.core_v1.read_namespaced_config_map.return_value = V1ConfigMap(
        data={"config": "namespace: infra-ns\ninfraID: infra-id\n"}
    )

    value = tenant.get_config_map_value("cloud-provider-config", "openshift-config", "config")

    assert value == {"namespace": "infra-ns", "infraID": "infra-id"}
    tenant.core_v1.read_namespaced_config_map.assert_called_once_with(
        name="cloud-provider-config", namespace="openshift-config"
    )


@pytest.mark.parametrize("data", [{}, {"config": "- a list"}, {"config": "key: [unclosed"}])
def test_get_config_map_value_invalid(tenant, data):
    tenant.core_v1.read_namespaced_config_map.return_value = V1ConfigMap(data=data)

    with pytest.raises(InvalidMachineConfiguration):
        tenant.get_config_map_value("cloud-provider-config", "openshift-config", "config")


def test_get_config_map_value_not_found(tenant):
    tenant.core_v1.read_namespaced_config_map.side_effect = not_found()

    with pytest.raises(ApiException):
        tenant.get_config_map_value("cloud-provider-config", "openshift-config", "config")


def test_patch_machine_sends_spec_and_metadata_only(tenant):
    old = stub_machine()
    new = stub_machine()
    new["spec"]["providerID"] = "kubevirt://ns/vm"
    new["metadata"]["annotations"]["VmId"] = "uid"
    new["status"]["addresses"] = []

    tenant.patch_machine(new, old)

    tenant.custom_objects.patch_namespaced_custom_object.assert_called_once_with(
        group="machine.openshift.io",
        version="v1beta1",
        namespace=MACHINE_NAMESPACE,
        plural="machines",
        name=MACHINE_NAME,
        body={"metadata": {"annotations": {"VmId": "uid"}}, "spec": {"providerID": "kubevirt://ns/vm"}},
    )


def test_patch_machine_skips_empty_patch(tenant):
    tenant.patch_machine(stub_machine(), stub_machine())
    tenant.status_patch_machine(stub_machine(), stub_machine())

    tenant.custom_objects.patch_namespaced_custom_object.assert_not_called()
    tenant.custom_objects.patch_namespaced_custom_object_status.assert_not_called()


def test_status_patch_machine(tenant):
    old = stub_machine()
    new = stub_machine()
    new["status"]["lastUpdated"] = "2024-05-01T12:00:00Z"

    tenant.status_patch_machine(new, old)

    kwargs = tenant.custom_objects.patch_namespaced_custom_object_status.call_args.kwargs
    assert kwargs["body"] == {"status": {"lastUpdated": "2024-05-01T12:00:00Z"}}
    assert kwargs["name"] == MACHINE_NAME


def test_from_environment_without_config(monkeypatch):
    def no_config(*args, **kwargs):
        raise kubernetes.config.config_exception.ConfigException("no config")

    monkeypatch.setattr(kubernetes.config, "load_incluster_config", no_config)
    monkeypatch.setattr(kubernetes.config, "load_kube_config", no_config)

    with pytest.raises(kopf.PermanentError):
        TenantClusterClient.from_environment()


def test_from_environment_falls_back_to_kube_config(monkeypatch):
    loaded = []

    def no_incluster(*args, **kwargs):
        raise kubernetes.config.config_exception.ConfigException("not in a pod")

    monkeypatch.setattr(kubernetes.config, "load_incluster_config", no_incluster)
    monkeypatch.setattr(kubernetes.config, "load_kube_config", lambda *a, **kw: loaded.append(True))

    assert isinstance(TenantClusterClient.from_environment(), TenantClusterClient)
    assert loaded == [True]


# ---------------------------------------------------------------------------
# Infra cluster ------------------------------------------------------------------
# ---------------------------------------------------------------------------
@pytest.fixture
def infra():
    client = InfraClusterClient(ApiClient())
    client.custom_objects = MagicMock()
    client.core_v1 = MagicMock()
    return client


def test_from_tenant_secret_default(monkeypatch):
    seen = {}

    def fake_new_client(config_dict, *args, **kwargs):
        seen["config"] = config_dict
        return ApiClient()

    monkeypatch.setattr(kubernetes.config, "new_client_from_config_dict", fake_new_client)
    tenant = MagicMock()
    tenant.get_secret.return_value = make_secret("kubevirt-credentials", "openshift-machine-api", {"kubeconfig": KUBECONFIG})

    client = InfraClusterClient.from_tenant_secret(tenant)

    assert isinstance(client, InfraClusterClient)
    tenant.get_secret.assert_called_once_with("kubevirt-credentials", "openshift-machine-api")
    assert seen["config"]["current-context"] == "infra"


def test_from_tenant_secret_custom_name_needs_namespace():
    with pytest.raises(InvalidMachineConfiguration, match="Invalid empty namespace"):
        InfraClusterClient.from_tenant_secret(MagicMock(), "custom-secret", "")


def test_from_tenant_secret_not_found():
    tenant = MagicMock()
    tenant.get_secret.side_effect = not_found()

    with pytest.raises(InvalidMachineConfiguration, match="openshift-machine-api/kubevirt-credentials not found"):
        InfraClusterClient.from_tenant_secret(tenant)


def test_from_tenant_secret_other_api_error_propagates():
    tenant = MagicMock()
    tenant.get_secret.side_effect = ApiException(status=500, reason="Internal Server Error")

    with pytest.raises(ApiException):
        InfraClusterClient.from_tenant_secret(tenant, "custom-secret", "custom-namespace")


def test_from_tenant_secret_missing_key():
    tenant = MagicMock()
    tenant.get_secret.return_value = make_secret("kubevirt-credentials", "openshift-machine-api", {"other": b"x"})

    with pytest.raises(InvalidMachineConfiguration, match="did not contain key kubeconfig"):
        InfraClusterClient.from_tenant_secret(tenant)


def test_virtual_machine_calls(infra):
    vm = {"metadata": {"name": "vm-0", "namespace": "infra-ns"}}
    infra.custom_objects.list_namespaced_custom_object.return_value = {"items": [vm]}

    infra.create_virtual_machine("infra-ns", vm)
    infra.update_virtual_machine("infra-ns", vm)
    infra.delete_virtual_machine("infra-ns", "vm-0", 10)
    infra.get_virtual_machine_instance("infra-ns", "vm-0")

    assert infra.list_virtual_machines("infra-ns", "app=test") == [vm]
    infra.custom_objects.replace_namespaced_custom_object.assert_called_once_with(
        group="kubevirt.io", version="v1", namespace="infra-ns", plural="virtualmachines", name="vm-0", body=vm
    )
    infra.custom_objects.delete_namespaced_custom_object.assert_called_once_with(
        group="kubevirt.io",
        version="v1",
        namespace="infra-ns",
        plural="virtualmachines",
        name="vm-0",
        grace_period_seconds=10,
    )
    assert infra.custom_objects.get_namespaced_custom_object.call_args.kwargs["plural"] == "virtualmachineinstances"


def test_secret_calls(infra):
    secret = {"metadata": {"name": "vm-0-ignition", "namespace": "infra-ns"}}

    infra.create_secret("infra-ns", secret)
    infra.replace_secret("infra-ns", secret)

    infra.core_v1.create_namespaced_secret.assert_called_once_with(namespace="infra-ns", body=secret)
    infra.core_v1.replace_namespaced_secret.assert_called_once_with(name="vm-0-ignition", namespace="infra-ns", body=secret)
