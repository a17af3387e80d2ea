"""
Manifest set loading.

Reads the static PSP documents shipped in ``pspguard/psp/`` and picks the set
that applies to a cluster identity. Every document is parsed at load time so a
broken manifest stops the cycle before anything touches the cluster.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from . import config
from .baseline import qualify
from .errors import ConfigurationError
from .models import ClusterIdentity, PolicyManifest

logger = logging.getLogger(__name__)

# Applied to every cluster, in order.
DEFAULT_MANIFESTS: Tuple[str, ...] = ("restrictive.yaml",)

# Appended for identities whose provider ships an over-permissive policy.
IDENTITY_MANIFESTS = {
    ClusterIdentity.eks: ("privileged.yaml",),
}


def load_manifest_set(
    identity: str,
    manifest_dir: Path = config.MANIFEST_DIR,
) -> List[PolicyManifest]:
    """
    Load the ordered manifest set for a cluster identity.

    Args:
        identity: Cluster identity tag
        manifest_dir: Directory holding the YAML documents

    Returns:
        Manifests in apply order

    Raises:
        ConfigurationError: If a document is missing or is not valid YAML
    """
    filenames = DEFAULT_MANIFESTS + IDENTITY_MANIFESTS.get(identity, ())
    manifests = [_read_manifest(Path(manifest_dir) / filename) for filename in filenames]
    logger.debug(f"Loaded {len(manifests)} manifest(s) for {identity}")
    return manifests


def _read_manifest(path: Path) -> PolicyManifest:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read manifest {path}: {e}") from e

    manifest = PolicyManifest(source=str(path), text=text)
    # Parse eagerly; documents() raises on bad YAML.
    documents(manifest)
    return manifest


def documents(manifest: PolicyManifest) -> List[Dict[str, Any]]:
    """Parse a manifest into its non-empty YAML documents."""
    try:
        docs = list(yaml.safe_load_all(manifest.text))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Manifest {manifest.source} is not valid YAML: {e}") from e

    result = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ConfigurationError(
                f"Manifest {manifest.source} contains a non-mapping document"
            )
        result.append(doc)
    return result


def extract_policy_name(
    manifest: PolicyManifest,
    kind: str = config.MANAGED_KIND,
    resource: str = config.POLICY_RESOURCE,
) -> str:
    """
    Return the qualified name of the first managed-kind object in a manifest.

    Raises:
        ConfigurationError: If the manifest declares no object of that kind,
            or the object has no metadata.name
    """
    for doc in documents(manifest):
        if doc.get("kind") != kind:
            continue
        name = (doc.get("metadata") or {}).get("name")
        if not name:
            raise ConfigurationError(f"{kind} in {manifest.source} has no metadata.name")
        return qualify(name, resource)

    raise ConfigurationError(f"Manifest {manifest.source} declares no {kind}")
