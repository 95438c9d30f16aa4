"""KubeVirt machine operator: reconciles OpenShift Machines against KubeVirt VMs."""

__version__ = "0.1.0"
