"""pspguard configuration - constants and defaults.

All tunables live here so the reconciler and cluster backends stay free of
magic strings. Override at runtime via environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Managed policy kind
# ---------------------------------------------------------------------------

MANAGED_KIND: str = "PodSecurityPolicy"
POLICY_API_VERSION: str = os.getenv("PSPGUARD_POLICY_API_VERSION", "policy/v1beta1")

# Prefix that ``kubectl get psp -o name`` puts in front of every policy name.
# Older clusters serve PSPs from the extensions group instead.
POLICY_RESOURCE: str = os.getenv("PSPGUARD_POLICY_RESOURCE", "podsecuritypolicy.policy")

# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

MANIFEST_DIR: Path = Path(
    os.getenv("PSPGUARD_MANIFEST_DIR", str(Path(__file__).parent / "psp"))
)

# ---------------------------------------------------------------------------
# Cluster backends
# ---------------------------------------------------------------------------

CLUSTER_BACKEND: str = os.getenv("PSPGUARD_BACKEND", "kubectl")  # kubectl | api
KUBECTL_BIN: str = os.getenv("PSPGUARD_KUBECTL", "kubectl")
KUBECTL_TIMEOUT: int = int(os.getenv("PSPGUARD_KUBECTL_TIMEOUT", "60"))

# ---------------------------------------------------------------------------
# Local orchestrator
# ---------------------------------------------------------------------------

STATE_DIR: str = os.getenv("PSPGUARD_STATE_DIR", ".pspguard/state")
MAX_WORKERS: int = int(os.getenv("PSPGUARD_MAX_WORKERS", "4"))
KUBECONFIG_ENV_TEMPLATE: str = "PSPGUARD_{identity}_KUBECONFIG"
