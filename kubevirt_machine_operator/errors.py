"""Error taxonomy shared by the scope, the VM manager and the actuator."""
from __future__ import annotations

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError as TransportError

# What a call against a cluster can raise besides our own errors.
REMOTE_ERRORS = (ApiException, TransportError)


class MachineError(Exception):
    """Base class for every error raised while reconciling a machine."""


class InvalidMachineConfiguration(MachineError):
    """The machine cannot be reconciled as described; retrying will not help."""


class RemoteOperationError(MachineError):
    """A call against the infra or tenant cluster failed (assumed transient)."""


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def rewrap(exc: BaseException, msg: str) -> MachineError:
    """Return *msg* as an error of the same class as *exc*.

    Configuration errors stay fatal through every layer of wrapping; anything
    else becomes a :class:`RemoteOperationError`.
    """
    if isinstance(exc, InvalidMachineConfiguration):
        return InvalidMachineConfiguration(msg)
    return RemoteOperationError(msg)


def describe(exc: BaseException) -> str:
    """Short text for an exception, ``status reason`` for API errors."""
    if isinstance(exc, ApiException):
        return f"{exc.status} {exc.reason}"
    return str(exc)
