"""
providerspec.py
---------------
Versioned schema for the provider blobs embedded in a ``Machine``.

``spec.providerSpec.value`` and ``status.providerStatus`` are free-form JSON
on the Machine object. They are decoded into tagged pydantic models exactly
once per reconcile and encoded back the same way, so the rest of the operator
never touches an untyped intermediate.
"""
from __future__ import annotations

import json
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import PROVIDER_API_VERSION, PROVIDER_SPEC_KIND, PROVIDER_STATUS_KIND

RawExtension = Union[Mapping[str, Any], bytes, str, None]


class KubevirtMachineProviderSpec(BaseModel):
    """Desired VM configuration for one machine."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    api_version: str = Field(default=PROVIDER_API_VERSION, alias="apiVersion")
    kind: Literal["KubevirtMachineProviderSpec"] = PROVIDER_SPEC_KIND

    source_pvc_name: str = Field(default="", alias="sourcePvcName")
    ignition_secret_name: str = Field(default="", alias="ignitionSecretName")
    network_name: str = Field(default="", alias="networkName")
    requested_memory: str = Field(default="", alias="requestedMemory")
    requested_cpu: int = Field(default=0, ge=0, alias="requestedCPU")
    requested_storage: str = Field(default="", alias="requestedStorage")
    storage_class_name: str = Field(default="", alias="storageClassName")
    persistent_volume_access_mode: str = Field(default="", alias="persistentVolumeAccessMode")


class VirtualMachineStatus(BaseModel):
    """Observed ``VirtualMachine.status``; unknown fields are carried through."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    created: bool = False
    ready: bool = False


class KubevirtMachineProviderStatus(BaseModel):
    """What the operator records about the VM on ``Machine.status.providerStatus``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(default=PROVIDER_API_VERSION, alias="apiVersion")
    kind: Literal["KubevirtMachineProviderStatus"] = PROVIDER_STATUS_KIND
    virtual_machine_status: VirtualMachineStatus = Field(
        default_factory=VirtualMachineStatus, alias="virtualMachineStatus"
    )


def provider_spec_from_raw(raw: RawExtension) -> KubevirtMachineProviderSpec:
    """Decode ``spec.providerSpec.value``; an absent value yields an empty spec.

    Raises ``ValueError`` (pydantic's ``ValidationError`` or a JSON error) when
    the payload does not match the schema.
    """
    if raw is None:
        return KubevirtMachineProviderSpec()
    if isinstance(raw, (bytes, str)):
        return KubevirtMachineProviderSpec.model_validate_json(raw)
    return KubevirtMachineProviderSpec.model_validate(dict(raw) if isinstance(raw, Mapping) else raw)


def provider_status_from_raw(raw: RawExtension) -> Optional[KubevirtMachineProviderStatus]:
    if raw is None:
        return None
    if isinstance(raw, (bytes, str)):
        return KubevirtMachineProviderStatus.model_validate_json(raw)
    return KubevirtMachineProviderStatus.model_validate(dict(raw) if isinstance(raw, Mapping) else raw)


def raw_from_provider_spec(spec: KubevirtMachineProviderSpec) -> dict:
    return spec.model_dump(mode="json", by_alias=True)


def raw_from_provider_status(vm_status: Mapping[str, Any]) -> dict:
    """Wrap an observed VM status into an encoded provider status.

    Raises ``ValueError`` when *vm_status* cannot be represented.
    """
    try:
        status = KubevirtMachineProviderStatus(virtualMachineStatus=dict(vm_status or {}))
        encoded = status.model_dump(mode="json", by_alias=True, exclude_none=True)
        # Make sure the passthrough fields really are JSON before they hit the API.
        json.dumps(encoded)
    except (ValidationError, TypeError) as exc:
        raise ValueError(str(exc)) from exc
    return encoded
