"""
Provider baseline table.

Managed Kubernetes offerings install their own PodSecurityPolicies that the
control plane and system add-ons depend on. Those names must survive every
reconciliation even though no pspguard manifest declares them.
"""

from types import MappingProxyType
from typing import List

from . import config
from .models import ClusterIdentity

# Bare policy names, qualified with config.POLICY_RESOURCE on lookup.
REQUIRED_CLOUD_PSPS = MappingProxyType({
    ClusterIdentity.aks: ("privileged",),
    ClusterIdentity.eks: (),
    ClusterIdentity.gke: (
        "gce.event-exporter",
        "gce.fluentd-gcp",
        "gce.persistent-volume-binder",
        "gce.privileged",
        "gce.unprivileged-addon",
    ),
    ClusterIdentity.local: (),
})


def qualify(name: str, resource: str = config.POLICY_RESOURCE) -> str:
    """Turn a bare policy name into the ``<resource>/<name>`` listing form."""
    return f"{resource}/{name}"


def baseline_policies(identity: str) -> List[str]:
    """
    Return the provider-mandated policy names for a cluster identity.

    Unknown identities have no baseline.

    Args:
        identity: Cluster identity tag (e.g. "gke")

    Returns:
        Qualified policy names, in table order
    """
    return [qualify(name) for name in REQUIRED_CLOUD_PSPS.get(identity, ())]
