"""
Operator-wide constants and environment driven settings.

Everything here is read once at import time. ``load_dotenv`` runs *first* so a
local ``.env`` file can override the defaults during development.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Machine API ----------------------------------------------------------------
# ---------------------------------------------------------------------------
MACHINE_GROUP = "machine.openshift.io"
MACHINE_VERSION = "v1beta1"
MACHINE_PLURAL = "machines"

MACHINE_CLUSTER_ID_LABEL = "machine.openshift.io/cluster-api-cluster"
MACHINE_INSTANCE_TYPE_LABEL = "machine.openshift.io/instance-type"
MACHINE_INSTANCE_STATE_ANNOTATION = "machine.openshift.io/instance-state"
KUBEVIRT_ID_ANNOTATION = "VmId"

# ---------------------------------------------------------------------------
# KubeVirt / CDI ---------------------------------------------------------------
# ---------------------------------------------------------------------------
KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_VM_PLURAL = "virtualmachines"
KUBEVIRT_VMI_PLURAL = "virtualmachineinstances"
KUBEVIRT_VM_KIND = "VirtualMachine"

CDI_API_VERSION = "cdi.kubevirt.io/v1beta1"

PROVIDER_API_VERSION = "kubevirtproviderconfig.openshift.io/v1alpha1"
PROVIDER_SPEC_KIND = "KubevirtMachineProviderSpec"
PROVIDER_STATUS_KIND = "KubevirtMachineProviderStatus"
PROVIDER_ID_SCHEME = "kubevirt"

# ---------------------------------------------------------------------------
# Tenant cluster bootstrap config ---------------------------------------------
# ---------------------------------------------------------------------------
CONFIG_MAP_NAMESPACE = "openshift-config"
CONFIG_MAP_NAME = "cloud-provider-config"
CONFIG_MAP_DATA_KEY = "config"
CONFIG_MAP_INFRA_NAMESPACE_KEY = "namespace"
CONFIG_MAP_INFRA_ID_KEY = "infraID"

USER_DATA_SECRET_KEY = "userData"

INFRA_CREDENTIALS_KEY = "kubeconfig"
INFRA_CREDENTIALS_SECRET_NAME = os.getenv("INFRA_CREDENTIALS_SECRET_NAME", "")
INFRA_CREDENTIALS_SECRET_NAMESPACE = os.getenv("INFRA_CREDENTIALS_SECRET_NAMESPACE", "")
DEFAULT_INFRA_CREDENTIALS_SECRET_NAME = "kubevirt-credentials"
DEFAULT_INFRA_CREDENTIALS_SECRET_NAMESPACE = "openshift-machine-api"

# ---------------------------------------------------------------------------
# Reconcile tuning -------------------------------------------------------------
# ---------------------------------------------------------------------------
REQUEUE_AFTER_SECONDS = int(os.getenv("REQUEUE_AFTER_SECONDS", "20"))
REQUEUE_AFTER_FATAL_SECONDS = int(os.getenv("REQUEUE_AFTER_FATAL_SECONDS", "180"))
DNS_RESOLVE_TIMEOUT_SECONDS = float(os.getenv("DNS_RESOLVE_TIMEOUT_SECONDS", "2"))
DNS_RESOLVER_WORKERS = int(os.getenv("DNS_RESOLVER_WORKERS", "4"))
VM_DELETE_GRACE_PERIOD_SECONDS = 10

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
KOPF_PEERING = os.getenv("KOPF_PEERING", "kubevirt-machine-operator")
