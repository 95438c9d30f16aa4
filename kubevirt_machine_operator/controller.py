"""
controller.py
-------------
Kopf-based controller that drives the :class:`~kubevirt_machine_operator.actuator.Actuator`
for OpenShift ``Machine`` objects backed by KubeVirt VMs.

Key responsibilities
~~~~~~~~~~~~~~~~~~~~
* Bootstrap: build the tenant and infra cluster clients and the actuator once,
  keep them in kopf's ``memo``.
* On create / resume / update of a Machine: create its VM if missing, else update it.
* Periodically resync status, gated by ``update_allowed``.
* On delete: remove the VM.

Retrying is kopf's job. The actuator raises ``kopf.TemporaryError`` (requeue
after a delay) or ``kopf.PermanentError`` (stop until the object changes).
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict

import kopf
from kopf import OperatorSettings

from .actuator import Actuator, KopfEventRecorder
from .clients import InfraClusterClient, TenantClusterClient
from .config import (
    INFRA_CREDENTIALS_SECRET_NAME,
    INFRA_CREDENTIALS_SECRET_NAMESPACE,
    MACHINE_GROUP,
    MACHINE_PLURAL,
    MACHINE_VERSION,
    REQUEUE_AFTER_FATAL_SECONDS,
    REQUEUE_AFTER_SECONDS,
)
from .errors import REMOTE_ERRORS, InvalidMachineConfiguration, MachineError, describe
from .vm_manager import VMManager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Bootstrap ------------------------------------------------------------------
# ---------------------------------------------------------------------------
def build_actuator() -> Actuator:
    """Wire clients, VM manager and actuator from the environment.

    A broken credentials secret or config map is retried after
    ``REQUEUE_AFTER_FATAL_SECONDS``, any other failure after ``REQUEUE_AFTER_SECONDS``.
    """
    tenant_client = TenantClusterClient.from_environment()
    try:
        infra_client = InfraClusterClient.from_tenant_secret(
            tenant_client, INFRA_CREDENTIALS_SECRET_NAME, INFRA_CREDENTIALS_SECRET_NAMESPACE
        )
        actuator = Actuator.from_config_map(VMManager(infra_client), KopfEventRecorder(), tenant_client)
    except InvalidMachineConfiguration as exc:
        logger.critical(f"Cannot configure the actuator, retrying in {REQUEUE_AFTER_FATAL_SECONDS}s: {exc}")
        raise kopf.TemporaryError(f"Actuator bootstrap failed: {exc}", delay=REQUEUE_AFTER_FATAL_SECONDS) from exc
    except (MachineError, *REMOTE_ERRORS) as exc:
        logger.error(f"Tenant cluster unavailable during bootstrap: {describe(exc)}")
        raise kopf.TemporaryError("Actuator bootstrap failed, retrying", delay=REQUEUE_AFTER_SECONDS) from exc

    logger.info(f"Actuator ready for infra namespace {actuator.infra_namespace} (infraID {actuator.infra_id})")
    return actuator


@kopf.on.startup()
def configure_kopf(settings: OperatorSettings, memo: kopf.Memo, **_: Dict[str, object]) -> None:
    """Tune watch timeouts and build the actuator."""
    settings.watching.server_timeout = 210  # seconds
    settings.posting.level = logging.INFO
    logger.info(f"Kopf watch server_timeout set to {settings.watching.server_timeout}")
    memo.actuator = build_actuator()
    memo.machine_locks = {}


# ---------------------------------------------------------------------------
# Kopf handlers --------------------------------------------------------------
# ---------------------------------------------------------------------------
_LOCKS_GUARD = threading.Lock()


def _lock_key(body: Dict[str, Any]) -> str:
    metadata = body["metadata"]
    return metadata.get("uid") or f"{metadata.get('namespace')}/{metadata['name']}"


def machine_lock(memo: kopf.Memo, body: Dict[str, Any]) -> threading.Lock:
    """Lock held by every handler of one Machine while it talks to the clusters.

    kopf runs timers as separate tasks and sync handlers in a thread pool; this
    lock keeps them to one at a time per Machine.
    """
    with _LOCKS_GUARD:
        locks = memo.setdefault("machine_locks", {})
        return locks.setdefault(_lock_key(body), threading.Lock())


def reconcile(actuator: Actuator, body: Dict[str, Any], logger: logging.Logger) -> str:
    """One pass for one machine: create the VM when missing, otherwise update it."""
    if actuator.exists(body, logger=logger):
        actuator.update(body, logger=logger)
        return "updated"
    actuator.create(body, logger=logger)
    return "created"


@kopf.on.resume(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL)
@kopf.on.create(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL)
@kopf.on.update(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL, field="spec")
def machine_reconcile(body: kopf.Body, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> str:
    """Reconcile a Machine whenever it appears or its spec changes."""
    name = body["metadata"]["name"]
    logger.info(f"Reconciling Machine '{name}'")
    with machine_lock(memo, body):
        return reconcile(memo.actuator, dict(body), logger)


@kopf.on.timer(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL, interval=REQUEUE_AFTER_SECONDS, idle=REQUEUE_AFTER_SECONDS)
def machine_resync(body: kopf.Body, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Periodic status sync; skipped until the machine is provisioned and the interval passed."""
    actuator: Actuator = memo.actuator
    machine = dict(body)
    if body.get("metadata", {}).get("deletionTimestamp"):
        return
    if not actuator.update_allowed(machine, REQUEUE_AFTER_SECONDS, logger=logger):
        logger.debug(f"Status sync for Machine '{body['metadata']['name']}' not due yet")
        return

    # Skipped, not queued, while another handler holds the Machine.
    lock = machine_lock(memo, body)
    if not lock.acquire(blocking=False):
        logger.debug(f"Machine '{body['metadata']['name']}' is being reconciled, skipping status sync")
        return
    try:
        actuator.update(machine, logger=logger)
    finally:
        lock.release()


@kopf.on.delete(MACHINE_GROUP, MACHINE_VERSION, MACHINE_PLURAL)
def machine_delete(body: kopf.Body, memo: kopf.Memo, logger: kopf.Logger, **_: Dict[str, object]) -> None:
    """Tear down the VM of a deleted Machine; a missing VM counts as done."""
    logger.info(f"Handling deletion for Machine '{body['metadata']['name']}'.")
    with machine_lock(memo, body):
        memo.actuator.delete(dict(body), logger=logger)
    with _LOCKS_GUARD:
        memo.get("machine_locks", {}).pop(_lock_key(body), None)
