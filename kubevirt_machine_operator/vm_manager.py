"""
vm_manager.py
-------------
Create / update / delete / exists for the KubeVirt VM behind one machine.

Each operation is a single synchronous pass: compute the desired VM through the
:class:`~kubevirt_machine_operator.machinescope.MachineScope`, call the infra
cluster, then fold the answer back into the scope. Nothing is retried and
nothing is cleaned up on failure; the next reconcile picks up where this one
stopped.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from .clients import InfraClusterClient
from .config import VM_DELETE_GRACE_PERIOD_SECONDS
from .errors import (
    REMOTE_ERRORS,
    InvalidMachineConfiguration,
    MachineError,
    describe,
    is_conflict,
    is_not_found,
    rewrap,
)
from .machinescope import MachineScope

HOSTNAME_FILE_PATH = "/etc/hostname"
HOSTNAME_FILE_MODE = 0o644


def add_hostname_to_user_data(src: bytes, hostname: str) -> bytes:
    """Append an ``/etc/hostname`` file entry to an ignition JSON document.

    The entry is appended unconditionally; feeding the result back in adds a
    second entry.
    """
    try:
        data = json.loads(src) if src and src.strip() else {}
    except ValueError as exc:
        raise InvalidMachineConfiguration(f"ignition user data is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidMachineConfiguration("ignition user data is not a JSON object")

    storage = data.setdefault("storage", {})
    if not isinstance(storage, dict) or not isinstance(storage.setdefault("files", []), list):
        raise InvalidMachineConfiguration("ignition user data has a malformed storage section")
    storage["files"].append(
        {
            "filesystem": "root",
            "path": HOSTNAME_FILE_PATH,
            "mode": HOSTNAME_FILE_MODE,
            "contents": {"source": f"data:,{hostname}"},
        }
    )
    return json.dumps(data).encode("utf-8")


class VMManager:
    """Reconciles one machine's VM in the infra cluster."""

    def __init__(
        self,
        infra_client: InfraClusterClient,
        grace_period_seconds: int = VM_DELETE_GRACE_PERIOD_SECONDS,
    ) -> None:
        self.infra_client = infra_client
        self.grace_period_seconds = grace_period_seconds

    @staticmethod
    def _fail(scope: MachineScope, operation: str, step: str, exc: BaseException) -> MachineError:
        msg = f"{scope.machine_name}: Error during {operation}: {step}, with error: {describe(exc)}"
        scope.logger.error(msg)
        return rewrap(exc, msg)

    def _build_desired_vm(self, scope: MachineScope, operation: str) -> Dict[str, Any]:
        try:
            return scope.build_desired_virtual_machine()
        except MachineError as exc:
            raise self._fail(scope, operation, "failed to build Virtual Machine struct", exc) from exc

    # -- create -----------------------------------------------------------------
    def create(self, scope: MachineScope, user_data: bytes) -> None:
        name = scope.machine_name
        try:
            full_user_data = add_hostname_to_user_data(user_data, name)
        except MachineError as exc:
            raise self._fail(scope, "Create", "failed to add hostname to ignition user data", exc) from exc

        # Built before any remote call so a bad provider spec leaves nothing behind.
        desired_vm = self._build_desired_vm(scope, "Create")
        self._apply_ignition_secret(scope, scope.build_ignition_secret(full_user_data))

        try:
            created_vm = self.infra_client.create_virtual_machine(scope.infra_namespace, desired_vm)
        except REMOTE_ERRORS as exc:
            raise self._fail(scope, "Create", "failed to create Virtual Machine in infraCluster", exc) from exc

        scope.logger.info(f"{name}: VirtualMachine was created in infracluster for the Machine")
        self._sync_machine(scope, created_vm, "Create")

    def _apply_ignition_secret(self, scope: MachineScope, secret: Dict[str, Any]) -> None:
        namespace = secret["metadata"]["namespace"]
        try:
            self.infra_client.create_secret(namespace, secret)
            return
        except REMOTE_ERRORS as exc:
            if not is_conflict(exc):
                raise self._fail(scope, "Create", "failed to create ignition secret in infraCluster", exc) from exc

        scope.logger.info(f"{scope.machine_name}: ignition secret {secret['metadata']['name']} already exists, replacing it")
        try:
            self.infra_client.replace_secret(namespace, secret)
        except REMOTE_ERRORS as exc:
            raise self._fail(scope, "Create", "failed to replace ignition secret in infraCluster", exc) from exc

    # -- delete -----------------------------------------------------------------
    def delete(self, scope: MachineScope) -> None:
        name = scope.machine_name
        desired_vm = self._build_desired_vm(scope, "Delete")
        metadata = desired_vm["metadata"]

        try:
            existing_vm = self.infra_client.get_virtual_machine(metadata["namespace"], metadata["name"])
        except REMOTE_ERRORS as exc:
            if is_not_found(exc):
                scope.logger.info(f"{name}: Virtual Machine does not exist (already deleted - return)")
                return
            raise self._fail(scope, "Delete", "failed to get Virtual Machine from infraCluster", exc) from exc

        existing = existing_vm["metadata"]
        try:
            self.infra_client.delete_virtual_machine(existing["namespace"], existing["name"], self.grace_period_seconds)
        except REMOTE_ERRORS as exc:
            raise self._fail(scope, "Delete", "failed to delete Virtual Machine in infraCluster", exc) from exc

        scope.logger.info(f"{name}: VirtualMachine was deleted in infracluster for the Machine")

    # -- update -----------------------------------------------------------------
    def update(self, scope: MachineScope) -> bool:
        """Push the desired VM over the existing one.

        Returns whether the infra cluster actually changed the object, judged by
        its resourceVersion before and after the call.
        """
        name = scope.machine_name
        desired_vm = self._build_desired_vm(scope, "Update")
        metadata = desired_vm["metadata"]

        try:
            existing_vm = self.infra_client.get_virtual_machine(metadata["namespace"], metadata["name"])
        except REMOTE_ERRORS as exc:
            raise self._fail(scope, "Update", "failed to get Virtual Machine from infraCluster", exc) from exc

        # Server-owned fields come from the live object, not from the desired one.
        previous_resource_version = existing_vm.get("metadata", {}).get("resourceVersion")
        metadata["resourceVersion"] = previous_resource_version
        existing_status = existing_vm.get("status") or {}
        desired_vm["status"] = {
            "created": bool(existing_status.get("created")),
            "ready": bool(existing_status.get("ready")),
        }

        try:
            updated_vm = self.infra_client.update_virtual_machine(metadata["namespace"], desired_vm)
        except REMOTE_ERRORS as exc:
            raise self._fail(scope, "Update", "failed to update Virtual Machine in infraCluster", exc) from exc

        scope.logger.info(f"{name}: VirtualMachine was updated in infracluster for the Machine")
        was_updated = previous_resource_version != updated_vm.get("metadata", {}).get("resourceVersion")
        self._sync_machine(scope, updated_vm, "Update")
        return was_updated

    # -- exists -----------------------------------------------------------------
    def exists(self, scope: MachineScope) -> bool:
        name = scope.machine_name
        scope.logger.info(f"{name}: check if machine exists")
        try:
            self.infra_client.get_virtual_machine(scope.infra_namespace, name)
        except REMOTE_ERRORS as exc:
            if is_not_found(exc):
                scope.logger.info(f"{name}: Virtual Machine of this Machine does not exist")
                return False
            raise self._fail(scope, "Exists", "failed to get vm of the Machine", exc) from exc
        return True

    # -- shared -----------------------------------------------------------------
    def _get_vmi(self, scope: MachineScope, vm: Mapping[str, Any], operation: str) -> Optional[Dict[str, Any]]:
        metadata = vm.get("metadata", {})
        try:
            return self.infra_client.get_virtual_machine_instance(metadata.get("namespace", ""), metadata.get("name", ""))
        except REMOTE_ERRORS as exc:
            if is_not_found(exc):
                scope.logger.info(f"{scope.machine_name}: VirtualMachineInstance does not exist yet")
                return None
            raise self._fail(scope, operation, "failed to get vmi of the Machine", exc) from exc

    def _sync_machine(self, scope: MachineScope, vm: Mapping[str, Any], operation: str) -> None:
        vmi = self._get_vmi(scope, vm, operation)
        try:
            scope.sync_machine(vm, vmi)
        except MachineError as exc:
            raise self._fail(scope, operation, "failed to sync the Machine", exc) from exc
