"""
machinescope.py
---------------
Per-reconcile translation context between a ``Machine`` and its KubeVirt
``VirtualMachine``.

Key responsibilities
~~~~~~~~~~~~~~~~~~~~
* Decode the machine's provider spec once, failing fast on bad configuration.
* Build the desired ``VirtualMachine`` and ignition ``Secret`` bodies (pure).
* Gate status pushes (:meth:`MachineScope.update_allowed`).
* Fold an observed VM / VMI back into the machine (:meth:`MachineScope.sync_machine`).

The scope never talks to a cluster. It owns a deep copy of the machine it was
built from; callers diff that copy against their own snapshot to get the patch.
"""
from __future__ import annotations

import base64
import copy
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from kubernetes.utils import parse_quantity

from .config import (
    CDI_API_VERSION,
    DNS_RESOLVE_TIMEOUT_SECONDS,
    DNS_RESOLVER_WORKERS,
    KUBEVIRT_GROUP,
    KUBEVIRT_ID_ANNOTATION,
    KUBEVIRT_VERSION,
    KUBEVIRT_VM_KIND,
    MACHINE_CLUSTER_ID_LABEL,
    MACHINE_INSTANCE_STATE_ANNOTATION,
    MACHINE_INSTANCE_TYPE_LABEL,
)
from .errors import InvalidMachineConfiguration
from .providerid import format_provider_id
from .providerspec import KubevirtMachineProviderSpec, provider_spec_from_raw, raw_from_provider_status

LOG = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants ------------------------------------------------------------------
# ---------------------------------------------------------------------------
DEFAULT_REQUESTED_MEMORY = "2048M"
DEFAULT_REQUESTED_STORAGE = "35Gi"
DEFAULT_PERSISTENT_VOLUME_ACCESS_MODE = "ReadWriteMany"
PERSISTENT_VOLUME_ACCESS_MODES = ("ReadWriteMany", "ReadOnlyMany", "ReadWriteOnce")

DATA_VOLUME_DISK_NAME = "datavolumedisk1"
CLOUD_INIT_VOLUME_DISK_NAME = "cloudinitdisk"
BOOT_VOLUME_SUFFIX = "bootvolume"
IGNITION_SECRET_SUFFIX = "ignition"
IGNITION_SECRET_DATA_KEY = "userdata"
DEFAULT_BUS = "virtio"
MAIN_NETWORK_NAME = "main"
RUN_STRATEGY_ALWAYS = "Always"
TERMINATION_GRACE_PERIOD_SECONDS = 600

ADDRESS_INTERNAL_DNS = "InternalDNS"
ADDRESS_INTERNAL_IP = "InternalIP"


class MachineState(str, Enum):
    """Value of the instance-state annotation."""

    NOT_CREATED = "vmNotCreated"
    CREATED_NOT_READY = "vmWasCreatedButNotReady"
    CREATED_AND_READY = "vmWasCreatedAndReady"


def derive_machine_state(created: bool, ready: bool) -> MachineState:
    """Collapse the VM's ``created``/``ready`` flags into a :class:`MachineState`.

    ``ready`` is only looked at once the VM is created, so the impossible
    ``(created=False, ready=True)`` pair reads as ``vmNotCreated``.
    """
    if not created:
        return MachineState.NOT_CREATED
    if ready:
        return MachineState.CREATED_AND_READY
    return MachineState.CREATED_NOT_READY


def build_boot_volume_name(virtual_machine_name: str) -> str:
    return f"{virtual_machine_name}-{BOOT_VOLUME_SUFFIX}"


def build_ignition_secret_name(virtual_machine_name: str) -> str:
    return f"{virtual_machine_name}-{IGNITION_SECRET_SUFFIX}"


def build_labels(infra_id: str) -> Dict[str, str]:
    """Base labels stamped on everything the operator creates in the infra cluster."""
    return {f"kubernetes.io/cluster/{infra_id}": "owned"}


# ---------------------------------------------------------------------------
# Best-effort address resolution ---------------------------------------------
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Resolved:
    ips: Tuple[str, ...]


@dataclass(frozen=True)
class Unresolved:
    reason: str


Resolution = Union[Resolved, Unresolved]
Resolver = Callable[[str, float], Resolution]


# Shared by every reconcile; a hung lookup ties up at most one of these workers.
_RESOLVER_POOL = ThreadPoolExecutor(max_workers=DNS_RESOLVER_WORKERS, thread_name_prefix="resolve")


def resolve_ipv4(hostname: str, timeout: float = DNS_RESOLVE_TIMEOUT_SECONDS) -> Resolution:
    """Look up the IPv4 addresses of *hostname*, giving up after *timeout* seconds."""
    future = _RESOLVER_POOL.submit(socket.getaddrinfo, hostname, None, socket.AF_INET)
    try:
        infos = future.result(timeout=timeout)
    except FuturesTimeoutError:
        future.cancel()
        return Unresolved(f"lookup of {hostname!r} timed out after {timeout}s")
    except (OSError, UnicodeError) as exc:
        return Unresolved(f"lookup of {hostname!r} failed: {exc}")

    ips: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        if sockaddr[0] not in ips:
            ips.append(sockaddr[0])
    return Resolved(tuple(ips))


# ---------------------------------------------------------------------------
# Machine scope --------------------------------------------------------------
# ---------------------------------------------------------------------------
def _parse_timestamp(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MachineScope:
    """Everything one reconcile of one machine needs, built fresh per call."""

    def __init__(
        self,
        machine: Mapping[str, Any],
        infra_namespace: str,
        infra_id: str,
        *,
        logger: Optional[logging.Logger] = None,
        resolver: Resolver = resolve_ipv4,
        resolve_timeout: float = DNS_RESOLVE_TIMEOUT_SECONDS,
    ) -> None:
        self.logger = logger or LOG
        self.machine: Dict[str, Any] = copy.deepcopy(dict(machine))
        self.infra_namespace = infra_namespace
        self.infra_id = infra_id
        self._resolver = resolver
        self._resolve_timeout = resolve_timeout

        labels = self.machine.get("metadata", {}).get("labels") or {}
        if not labels.get(MACHINE_CLUSTER_ID_LABEL):
            raise InvalidMachineConfiguration(f'{self.machine_name}: missing "{MACHINE_CLUSTER_ID_LABEL}" label')

        raw_spec = (self.machine.get("spec", {}).get("providerSpec") or {}).get("value")
        try:
            self.provider_spec: KubevirtMachineProviderSpec = provider_spec_from_raw(raw_spec)
        except ValueError as exc:
            raise InvalidMachineConfiguration(f"failed to get machine config: {exc}") from exc

    # -- accessors ------------------------------------------------------------
    @property
    def machine_name(self) -> str:
        return self.machine.get("metadata", {}).get("name", "")

    @property
    def machine_namespace(self) -> str:
        return self.machine.get("metadata", {}).get("namespace", "")

    @property
    def ignition_secret_name(self) -> str:
        """Name of the tenant-side secret holding the raw ignition payload."""
        return self.provider_spec.ignition_secret_name

    @property
    def provider_id(self) -> Optional[str]:
        return self.machine.get("spec", {}).get("providerID")

    def _metadata_map(self, key: str) -> Dict[str, str]:
        metadata = self.machine.setdefault("metadata", {})
        if metadata.get(key) is None:
            metadata[key] = {}
        return metadata[key]

    # -- update gate ------------------------------------------------------------
    def update_allowed(self, min_interval: Union[int, float, timedelta], now: Optional[datetime] = None) -> bool:
        """Whether a status sync may run now.

        Never before the machine has a provider ID. Afterwards only when no sync
        was recorded yet or strictly more than *min_interval* has passed since
        ``status.lastUpdated``.
        """
        if not self.provider_id:
            return False
        last_updated = self.machine.get("status", {}).get("lastUpdated")
        if not last_updated:
            return True
        if not isinstance(min_interval, timedelta):
            min_interval = timedelta(seconds=min_interval)
        now = now or datetime.now(UTC)
        return now > _parse_timestamp(last_updated) + min_interval

    # -- desired state ----------------------------------------------------------
    def _assert_mandatory_params(self) -> None:
        spec = self.provider_spec
        for field, value in (
            ("SourcePvcName", spec.source_pvc_name),
            ("IgnitionSecretName", spec.ignition_secret_name),
            ("NetworkName", spec.network_name),
        ):
            if not value:
                raise InvalidMachineConfiguration(f"{self.machine_name}: missing value for {field}")

    def _persistent_volume_access_mode(self) -> str:
        access_mode = self.provider_spec.persistent_volume_access_mode
        if not access_mode:
            return DEFAULT_PERSISTENT_VOLUME_ACCESS_MODE
        if access_mode not in PERSISTENT_VOLUME_ACCESS_MODES:
            raise InvalidMachineConfiguration(
                f"{self.machine_name}: Value of PersistentVolumeAccessMode, can be only one of: "
                f"{', '.join(PERSISTENT_VOLUME_ACCESS_MODES)}"
            )
        return access_mode

    def _quantity(self, field: str, value: str) -> str:
        try:
            parse_quantity(value)
        except ValueError as exc:
            raise InvalidMachineConfiguration(f"{self.machine_name}: invalid quantity {value!r} for {field}") from exc
        return value

    def build_desired_virtual_machine(self) -> Dict[str, Any]:
        """Return the ``VirtualMachine`` body this machine should map to.

        Raises :class:`InvalidMachineConfiguration` before building anything when
        a mandatory provider spec field is empty or a value is out of range.
        """
        self._assert_mandatory_params()
        access_mode = self._persistent_volume_access_mode()
        storage = self._quantity("RequestedStorage", self.provider_spec.requested_storage or DEFAULT_REQUESTED_STORAGE)
        template = self._build_vmi_template()

        # Machine labels win over the base labels on key collision.
        labels = build_labels(self.infra_id)
        labels.update(self.machine.get("metadata", {}).get("labels") or {})
        annotations = dict(self.machine.get("metadata", {}).get("annotations") or {})

        return {
            "apiVersion": f"{KUBEVIRT_GROUP}/{KUBEVIRT_VERSION}",
            "kind": KUBEVIRT_VM_KIND,
            "metadata": {
                "name": self.machine_name,
                "namespace": self.infra_namespace,
                "labels": labels,
                "annotations": annotations,
            },
            "spec": {
                "runStrategy": RUN_STRATEGY_ALWAYS,
                "dataVolumeTemplates": [self._build_boot_volume_template(storage, access_mode)],
                "template": template,
            },
        }

    def _build_boot_volume_template(self, storage: str, access_mode: str) -> Dict[str, Any]:
        pvc_spec: Dict[str, Any] = {
            "accessModes": [access_mode],
            "resources": {"requests": {"storage": storage}},
        }
        if self.provider_spec.storage_class_name:
            pvc_spec["storageClassName"] = self.provider_spec.storage_class_name

        return {
            "apiVersion": CDI_API_VERSION,
            "kind": "DataVolume",
            "metadata": {
                "name": build_boot_volume_name(self.machine_name),
                "namespace": self.infra_namespace,
            },
            "spec": {
                "source": {"pvc": {"name": self.provider_spec.source_pvc_name, "namespace": self.infra_namespace}},
                "pvc": pvc_spec,
            },
        }

    def _build_vmi_template(self) -> Dict[str, Any]:
        vm_name = self.machine_name
        requests = {
            "memory": self._quantity("RequestedMemory", self.provider_spec.requested_memory or DEFAULT_REQUESTED_MEMORY),
        }
        if self.provider_spec.requested_cpu:
            requests["cpu"] = str(self.provider_spec.requested_cpu)

        return {
            "metadata": {"labels": {"kubevirt.io/vm": vm_name, "name": vm_name}},
            "spec": {
                "terminationGracePeriodSeconds": TERMINATION_GRACE_PERIOD_SECONDS,
                "domain": {
                    "resources": {"requests": requests},
                    "devices": {
                        "disks": [
                            {"name": DATA_VOLUME_DISK_NAME, "disk": {"bus": DEFAULT_BUS}},
                            {"name": CLOUD_INIT_VOLUME_DISK_NAME, "disk": {"bus": DEFAULT_BUS}},
                        ],
                        "interfaces": [{"name": MAIN_NETWORK_NAME, "bridge": {}}],
                    },
                },
                "networks": [
                    {"name": MAIN_NETWORK_NAME, "multus": {"networkName": self.provider_spec.network_name}},
                ],
                "volumes": [
                    {
                        "name": DATA_VOLUME_DISK_NAME,
                        "dataVolume": {"name": build_boot_volume_name(vm_name)},
                    },
                    {
                        "name": CLOUD_INIT_VOLUME_DISK_NAME,
                        "cloudInitConfigDrive": {
                            "secretRef": {"name": build_ignition_secret_name(vm_name)},
                        },
                    },
                ],
            },
        }

    def build_ignition_secret(self, user_data: bytes) -> Dict[str, Any]:
        """Secret body carrying *user_data* under ``userdata`` in the infra namespace."""
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {
                "name": build_ignition_secret_name(self.machine_name),
                "namespace": self.infra_namespace,
                "labels": build_labels(self.infra_id),
            },
            "data": {IGNITION_SECRET_DATA_KEY: base64.b64encode(user_data).decode("ascii")},
        }

    # -- status sync ------------------------------------------------------------
    def sync_machine(self, vm: Mapping[str, Any], vmi: Optional[Mapping[str, Any]] = None) -> None:
        """Fold the observed *vm* (and *vmi*, when it exists) into the machine copy.

        Raises :class:`InvalidMachineConfiguration` only when the VM status
        cannot be encoded as provider status.
        """
        self._sync_provider_id(vm)
        self._sync_annotations_and_labels(vm)
        self._sync_network_addresses(vm, vmi)
        self._sync_provider_status(vm)

    def _sync_provider_id(self, vm: Mapping[str, Any]) -> None:
        metadata = vm.get("metadata", {})
        provider_id = format_provider_id(metadata.get("namespace", ""), metadata.get("name", ""))
        if self.provider_id == provider_id:
            self.logger.info(f"{self.machine_name} - syncProviderID: already synced with providerID {provider_id}")
            return
        self.machine.setdefault("spec", {})["providerID"] = provider_id
        self.logger.info(f"{self.machine_name} - syncProviderID: successfully synced machine.spec.providerID to {provider_id}")

    def _sync_annotations_and_labels(self, vm: Mapping[str, Any]) -> None:
        labels = self._metadata_map("labels")
        annotations = self._metadata_map("annotations")
        status = vm.get("status") or {}
        state = derive_machine_state(bool(status.get("created")), bool(status.get("ready")))

        annotations[KUBEVIRT_ID_ANNOTATION] = vm.get("metadata", {}).get("uid", "")
        annotations[MACHINE_INSTANCE_STATE_ANNOTATION] = state.value

        # Without a template the label keeps whatever value it had before.
        template = (vm.get("spec") or {}).get("template")
        if template is not None:
            domain = (template.get("spec") or {}).get("domain") or {}
            labels[MACHINE_INSTANCE_TYPE_LABEL] = (domain.get("machine") or {}).get("type", "")
        self.logger.info(f"{self.machine_name} - syncMachineAnnotationsAndLabels: successfully synced (state={state.value})")

    def _sync_network_addresses(self, vm: Mapping[str, Any], vmi: Optional[Mapping[str, Any]]) -> None:
        source = vmi if vmi is not None else vm
        hostname = source.get("metadata", {}).get("name", "")
        addresses = [{"type": ADDRESS_INTERNAL_DNS, "address": hostname}]

        resolution = self._resolver(hostname, self._resolve_timeout)
        if isinstance(resolution, Resolved):
            addresses.extend({"type": ADDRESS_INTERNAL_IP, "address": ip} for ip in resolution.ips)
        else:
            self.logger.warning(f"{self.machine_name} - syncNetworkAddresses: keeping DNS name only, {resolution.reason}")

        self.machine.setdefault("status", {})["addresses"] = addresses
        self.logger.info(f"{self.machine_name} - syncNetworkAddresses: successfully synced machine.status.addresses to {addresses}")

    def _sync_provider_status(self, vm: Mapping[str, Any]) -> None:
        try:
            provider_status = raw_from_provider_status(vm.get("status") or {})
        except ValueError as exc:
            raise InvalidMachineConfiguration(f"failed to get machine provider status: {exc}") from exc
        self.machine.setdefault("status", {})["providerStatus"] = provider_status
        self.logger.info(f"{self.machine_name} - syncProviderStatus: successfully synced machine.status.providerStatus")
