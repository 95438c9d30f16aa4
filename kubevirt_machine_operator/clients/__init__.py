"""Thin wrappers over the Kubernetes API of the tenant and infra clusters."""
from .infracluster import InfraClusterClient
from .tenantcluster import TenantClusterClient, merge_patch

__all__ = ["InfraClusterClient", "TenantClusterClient", "merge_patch"]
