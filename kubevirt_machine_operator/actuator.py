"""
actuator.py
-----------
Entry point for one reconcile of one machine.

The actuator wraps :class:`~kubevirt_machine_operator.vm_manager.VMManager`
with the concerns of the controller boundary:

* a deep copy of the machine taken before anything touches it,
* the two-phase patch (spec, then status) against that copy after every
  create/update, whether the VM call worked or not,
* classification of failures into ``kopf.PermanentError`` (bad configuration)
  and ``kopf.TemporaryError`` (everything else, requeued),
* Kubernetes events for every create/update/delete outcome.
"""
from __future__ import annotations

import copy
import logging
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, Optional, Protocol

import kopf

from .clients import TenantClusterClient
from .clients.tenantcluster import secret_value
from .config import (
    CONFIG_MAP_DATA_KEY,
    CONFIG_MAP_INFRA_ID_KEY,
    CONFIG_MAP_INFRA_NAMESPACE_KEY,
    CONFIG_MAP_NAME,
    CONFIG_MAP_NAMESPACE,
    REQUEUE_AFTER_SECONDS,
    USER_DATA_SECRET_KEY,
)
from .errors import (
    REMOTE_ERRORS,
    InvalidMachineConfiguration,
    MachineError,
    RemoteOperationError,
    describe,
    is_not_found,
    rewrap,
)
from .machinescope import MachineScope
from .vm_manager import VMManager

LOG = logging.getLogger(__name__)

VMS_FAIL_FMT = "{name}: kubevirt wrapper failed to {action} machine: {error}"
CREATE_EVENT_ACTION = "Create"
UPDATE_EVENT_ACTION = "Update"
DELETE_EVENT_ACTION = "Delete"
NO_EVENT_ACTION = ""

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class EventRecorder(Protocol):
    def event(self, obj: Mapping[str, Any], type: str, reason: str, message: str) -> None:
        ...


class KopfEventRecorder:
    """Posts events through kopf's event queue; only usable inside a running operator."""

    def event(self, obj: Mapping[str, Any], type: str, reason: str, message: str) -> None:
        kopf.event(obj, type=type, reason=reason, message=message)


ScopeFactory = Callable[..., MachineScope]


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class Actuator:
    """Performs machine reconciliation on behalf of the controller."""

    def __init__(
        self,
        vm_manager: VMManager,
        event_recorder: EventRecorder,
        tenant_client: TenantClusterClient,
        infra_namespace: str,
        infra_id: str,
        *,
        requeue_after: int = REQUEUE_AFTER_SECONDS,
        scope_factory: ScopeFactory = MachineScope,
    ) -> None:
        self.vm_manager = vm_manager
        self.event_recorder = event_recorder
        self.tenant_client = tenant_client
        self.infra_namespace = infra_namespace
        self.infra_id = infra_id
        self.requeue_after = requeue_after
        self.scope_factory = scope_factory

    @classmethod
    def from_config_map(
        cls,
        vm_manager: VMManager,
        event_recorder: EventRecorder,
        tenant_client: TenantClusterClient,
        **kwargs: Any,
    ) -> "Actuator":
        """Build an actuator with infra namespace / ID read from the tenant config map."""
        try:
            values = tenant_client.get_config_map_value(CONFIG_MAP_NAME, CONFIG_MAP_NAMESPACE, CONFIG_MAP_DATA_KEY)
        except REMOTE_ERRORS as exc:
            raise rewrap(exc, f"Actuator: failed to read configMap {CONFIG_MAP_NAMESPACE}/{CONFIG_MAP_NAME}: {describe(exc)}") from exc

        missing = [key for key in (CONFIG_MAP_INFRA_ID_KEY, CONFIG_MAP_INFRA_NAMESPACE_KEY) if key not in values]
        if missing:
            raise InvalidMachineConfiguration(
                f"Actuator: configMap {CONFIG_MAP_NAMESPACE}/{CONFIG_MAP_NAME}: The map extracted with key "
                f"{CONFIG_MAP_DATA_KEY} doesn't contain key {missing[0]}"
            )
        return cls(
            vm_manager,
            event_recorder,
            tenant_client,
            infra_namespace=str(values[CONFIG_MAP_INFRA_NAMESPACE_KEY]),
            infra_id=str(values[CONFIG_MAP_INFRA_ID_KEY]),
            **kwargs,
        )

    # -- helpers ----------------------------------------------------------------
    def _create_machine_scope(self, machine: Mapping[str, Any], logger: Optional[logging.Logger]) -> MachineScope:
        try:
            return self.scope_factory(machine, self.infra_namespace, self.infra_id, logger=logger)
        except InvalidMachineConfiguration as exc:
            name = machine.get("metadata", {}).get("name", "")
            (logger or LOG).error(f"{name}: failed to create scope for machine: {exc}")
            raise kopf.PermanentError(f"{name}: failed to create scope for machine: {exc}") from exc

    def _to_kopf_error(self, exc: MachineError, msg: str) -> kopf.PermanentError | kopf.TemporaryError:
        if isinstance(exc, InvalidMachineConfiguration):
            return kopf.PermanentError(msg)
        return kopf.TemporaryError(msg, delay=self.requeue_after)

    def _handle_machine_error(self, scope: MachineScope, exc: MachineError, action: str, verb: str) -> Exception:
        """Log, raise a warning event where a mutation was attempted, and classify."""
        msg = VMS_FAIL_FMT.format(name=scope.machine_name, action=verb, error=exc)
        scope.logger.error(f"{scope.machine_name} error: {msg}")
        if action != NO_EVENT_ACTION:
            self.event_recorder.event(scope.machine, EVENT_TYPE_WARNING, f"Failed{action}", msg)
        return self._to_kopf_error(exc, msg)

    def _get_user_data(self, scope: MachineScope) -> bytes:
        secret_name = scope.ignition_secret_name
        namespace = scope.machine_namespace
        if not secret_name:
            raise InvalidMachineConfiguration(f"{scope.machine_name}: missing value for IgnitionSecretName")
        try:
            secret = self.tenant_client.get_secret(secret_name, namespace)
        except REMOTE_ERRORS as exc:
            if is_not_found(exc):
                raise InvalidMachineConfiguration(f"Tenant-cluster credentials secret {namespace}/{secret_name} not found") from exc
            raise RemoteOperationError(f"failed to get secret {namespace}/{secret_name}: {describe(exc)}") from exc

        user_data = secret_value(secret, USER_DATA_SECRET_KEY)
        if user_data is None:
            raise InvalidMachineConfiguration(
                f"Tenant-cluster credentials secret {namespace}/{secret_name}: doesn't contain the key {USER_DATA_SECRET_KEY}"
            )
        return user_data

    def _patch_machine(self, scope: MachineScope, origin: Mapping[str, Any]) -> None:
        """Write the scope's machine back: spec first, then the status subresource."""
        machine = scope.machine
        scope.logger.debug(f"{scope.machine_name}: patching machine")
        if (machine.get("status") or {}) != (origin.get("status") or {}):
            machine.setdefault("status", {})["lastUpdated"] = _timestamp()

        try:
            self.tenant_client.patch_machine(machine, origin)
        except REMOTE_ERRORS as exc:
            scope.logger.error(f"Failed to patch machine {scope.machine_name!r}: {describe(exc)}")
            raise RemoteOperationError(f"failed to patch machine: {describe(exc)}") from exc
        try:
            self.tenant_client.status_patch_machine(machine, origin)
        except REMOTE_ERRORS as exc:
            scope.logger.error(f"Failed to patch machine status {scope.machine_name!r}: {describe(exc)}")
            raise RemoteOperationError(f"failed to patch machine status: {describe(exc)}") from exc

    # -- operations ---------------------------------------------------------------
    def create(self, machine: Mapping[str, Any], logger: Optional[logging.Logger] = None) -> None:
        """Create the VM for *machine* and patch the result back onto it."""
        origin = copy.deepcopy(dict(machine))
        scope = self._create_machine_scope(machine, logger)
        scope.logger.info(f"{scope.machine_name}: actuator creating machine")

        try:
            user_data = self._get_user_data(scope)
        except MachineError as exc:
            raise self._handle_machine_error(scope, exc, CREATE_EVENT_ACTION, CREATE_EVENT_ACTION) from exc

        error: Optional[MachineError] = None
        try:
            self.vm_manager.create(scope, user_data)
        except MachineError as exc:
            error = exc
        # The patch goes out even after a failure so partial progress is kept.
        try:
            self._patch_machine(scope, origin)
        except MachineError as exc:
            error = exc
        if error is not None:
            raise self._handle_machine_error(scope, error, CREATE_EVENT_ACTION, CREATE_EVENT_ACTION) from error

        self.event_recorder.event(scope.machine, EVENT_TYPE_NORMAL, CREATE_EVENT_ACTION, f"Created Machine {scope.machine_name}")

    def update(self, machine: Mapping[str, Any], logger: Optional[logging.Logger] = None) -> bool:
        """Sync *machine* with its existing VM; returns whether the VM changed."""
        origin = copy.deepcopy(dict(machine))
        scope = self._create_machine_scope(machine, logger)
        scope.logger.info(f"{scope.machine_name}: actuator updating machine")

        error: Optional[MachineError] = None
        was_updated = False
        try:
            was_updated = self.vm_manager.update(scope)
        except MachineError as exc:
            error = exc
        try:
            self._patch_machine(scope, origin)
        except MachineError as exc:
            error = exc
        if error is not None:
            raise self._handle_machine_error(scope, error, UPDATE_EVENT_ACTION, UPDATE_EVENT_ACTION) from error

        # Only a real change on the infra side is worth an event.
        if was_updated:
            self.event_recorder.event(scope.machine, EVENT_TYPE_NORMAL, UPDATE_EVENT_ACTION, f"Updated Machine {scope.machine_name}")
        return was_updated

    def delete(self, machine: Mapping[str, Any], logger: Optional[logging.Logger] = None) -> None:
        scope = self._create_machine_scope(machine, logger)
        scope.logger.info(f"{scope.machine_name}: actuator deleting machine")

        try:
            self.vm_manager.delete(scope)
        except MachineError as exc:
            raise self._handle_machine_error(scope, exc, DELETE_EVENT_ACTION, DELETE_EVENT_ACTION) from exc

        self.event_recorder.event(scope.machine, EVENT_TYPE_NORMAL, DELETE_EVENT_ACTION, f"Deleted machine {scope.machine_name}")

    def exists(self, machine: Mapping[str, Any], logger: Optional[logging.Logger] = None) -> bool:
        """Whether the machine's VM exists in the infra cluster."""
        scope = self._create_machine_scope(machine, logger)
        scope.logger.info(f"{scope.machine_name}: actuator checking if machine exists")

        try:
            return self.vm_manager.exists(scope)
        except MachineError as exc:
            raise self._handle_machine_error(scope, exc, NO_EVENT_ACTION, "Exists") from exc

    def update_allowed(self, machine: Mapping[str, Any], min_interval: int, logger: Optional[logging.Logger] = None) -> bool:
        return self._create_machine_scope(machine, logger).update_allowed(min_interval)
