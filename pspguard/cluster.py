"""
Cluster state reader and writer.

Two interchangeable backends sit behind the PolicyReader / PolicyWriter
interfaces:

- KubectlClusterClient shells out to ``kubectl`` (the default). The kubeconfig
  is written to a private temp file for the duration of each call.
- ApiClusterClient talks to the API server through the official kubernetes
  client's dynamic API. The kubeconfig is only ever held in memory.

Both map failures onto the pspguard error taxonomy so the reconciler never
has to know which mechanism is in use.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import yaml
from kubernetes import config as k8s_config
from kubernetes import dynamic
from kubernetes.dynamic.exceptions import ConflictError, NotFoundError

from . import config
from .baseline import qualify
from .errors import (
    ApplyError,
    ClusterUnreachableError,
    ConfigurationError,
    DeleteError,
    PreflightError,
)
from .manifests import documents
from .models import PolicyManifest

logger = logging.getLogger(__name__)


class PolicyReader(ABC):
    """Reads the names of installed managed-kind policies."""

    @abstractmethod
    def list_policy_names(self, kubeconfig: str) -> Set[str]:
        """
        Return qualified names of every managed-kind object in the cluster.

        Raises:
            ClusterUnreachableError: If the listing cannot be completed
        """


class PolicyWriter(ABC):
    """Applies and deletes policy objects."""

    @abstractmethod
    def apply(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        """Create or update every object in the manifest. Raises ApplyError."""

    @abstractmethod
    def delete(self, name: str, kubeconfig: str) -> None:
        """Delete a qualified policy name. Absent objects are not an error."""

    @abstractmethod
    def delete_manifest(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        """Delete every object the manifest declares. Raises DeleteError."""


class ClusterClient(PolicyReader, PolicyWriter):
    """A backend that can both read and write cluster policy state."""


# ---------------------------------------------------------------------------
# Credential handling
# ---------------------------------------------------------------------------

@contextmanager
def materialized_kubeconfig(kubeconfig: str) -> Iterator[str]:
    """
    Write kubeconfig text to a private temp file and yield its path.

    The file is created with mode 0600 and removed on every exit path.
    """
    fd, path = tempfile.mkstemp(prefix="pspguard-", suffix=".kubeconfig")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(kubeconfig)
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


def ensure_kubectl(binary: str = config.KUBECTL_BIN) -> str:
    """Return the resolved kubectl path, or raise PreflightError."""
    path = shutil.which(binary)
    if path is None:
        raise PreflightError(f"Could not manage PodSecurityPolicies: {binary} is missing.")
    return path


# ---------------------------------------------------------------------------
# kubectl backend
# ---------------------------------------------------------------------------

class _CommandFailed(Exception):
    pass


class KubectlClusterClient(ClusterClient):
    """Reader/writer that drives the cluster through ``kubectl``."""

    def __init__(
        self,
        kubectl: str = config.KUBECTL_BIN,
        timeout: int = config.KUBECTL_TIMEOUT,
        resource: str = config.POLICY_RESOURCE,
    ):
        self.kubectl = ensure_kubectl(kubectl)
        self.timeout = timeout
        self.resource = resource

    def list_policy_names(self, kubeconfig: str) -> Set[str]:
        try:
            out = self._run(["get", self.resource, "-o", "name"], kubeconfig)
        except _CommandFailed as e:
            raise ClusterUnreachableError(f"Failed to list {self.resource}: {e}") from e

        names = {line.strip() for line in out.splitlines()}
        names.discard("")
        logger.debug(f"Cluster reports {len(names)} policies")
        return names

    def apply(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        try:
            self._run(["apply", "-f", "-"], kubeconfig, input_text=manifest.text)
        except _CommandFailed as e:
            raise ApplyError(manifest.source, str(e)) from e
        logger.info(f"Applied {manifest.source}")

    def delete(self, name: str, kubeconfig: str) -> None:
        try:
            self._run(["delete", name, "--ignore-not-found"], kubeconfig)
        except _CommandFailed as e:
            raise DeleteError(name, str(e)) from e
        logger.info(f"Deleted {name}")

    def delete_manifest(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        try:
            self._run(
                ["delete", "-f", "-", "--ignore-not-found"],
                kubeconfig,
                input_text=manifest.text,
            )
        except _CommandFailed as e:
            raise DeleteError(manifest.source, str(e)) from e
        logger.info(f"Deleted objects from {manifest.source}")

    def _run(self, args: List[str], kubeconfig: str, input_text: Optional[str] = None) -> str:
        """Run one kubectl subcommand against the cluster and return stdout."""
        logger.debug(f"Running: kubectl {' '.join(args)}")
        try:
            with materialized_kubeconfig(kubeconfig) as path:
                result = subprocess.run(
                    [self.kubectl, "--kubeconfig", path, *args],
                    input=input_text,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
        except subprocess.TimeoutExpired as e:
            raise _CommandFailed(f"kubectl {args[0]} timed out after {self.timeout}s") from e
        except OSError as e:
            raise _CommandFailed(str(e)) from e

        if result.returncode != 0:
            raise _CommandFailed(result.stderr.strip() or f"exit status {result.returncode}")
        return result.stdout


# ---------------------------------------------------------------------------
# Kubernetes API backend
# ---------------------------------------------------------------------------

def _dynamic_client(kubeconfig: str) -> dynamic.DynamicClient:
    """Build a dynamic client from kubeconfig text without touching disk."""
    api_client = k8s_config.new_client_from_config_dict(yaml.safe_load(kubeconfig))
    try:
        return dynamic.DynamicClient(api_client)
    except Exception:
        api_client.close()
        raise


class ApiClusterClient(ClusterClient):
    """Reader/writer that drives the cluster through the kubernetes client."""

    def __init__(
        self,
        client_factory: Optional[Callable[[str], Any]] = None,
        api_version: str = config.POLICY_API_VERSION,
        kind: str = config.MANAGED_KIND,
        resource: str = config.POLICY_RESOURCE,
    ):
        self._client_factory = client_factory or _dynamic_client
        self.api_version = api_version
        self.kind = kind
        self.resource = resource

    @contextmanager
    def _session(self, kubeconfig: str) -> Iterator[Any]:
        dyn = self._client_factory(kubeconfig)
        try:
            yield dyn
        finally:
            dyn.client.close()

    def list_policy_names(self, kubeconfig: str) -> Set[str]:
        try:
            with self._session(kubeconfig) as dyn:
                api = dyn.resources.get(api_version=self.api_version, kind=self.kind)
                items = api.get().items
        except Exception as e:
            raise ClusterUnreachableError(f"Failed to list {self.kind} objects: {e}") from e

        return {qualify(item.metadata.name, self.resource) for item in items}

    def apply(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        try:
            docs = documents(manifest)
        except ConfigurationError as e:
            raise ApplyError(manifest.source, str(e)) from e

        try:
            with self._session(kubeconfig) as dyn:
                for doc in docs:
                    self._apply_object(dyn, doc)
        except Exception as e:
            raise ApplyError(manifest.source, str(e)) from e
        logger.info(f"Applied {manifest.source}")

    def _apply_object(self, dyn: Any, doc: Dict[str, Any]) -> None:
        api = dyn.resources.get(api_version=doc["apiVersion"], kind=doc["kind"])
        metadata = doc.get("metadata") or {}
        namespace = metadata.get("namespace", "default") if api.namespaced else None
        try:
            api.create(body=doc, namespace=namespace)
        except ConflictError:
            api.patch(
                body=doc,
                name=metadata.get("name"),
                namespace=namespace,
                content_type="application/merge-patch+json",
            )

    def delete(self, name: str, kubeconfig: str) -> None:
        bare_name = name.split("/", 1)[-1]
        try:
            with self._session(kubeconfig) as dyn:
                api = dyn.resources.get(api_version=self.api_version, kind=self.kind)
                api.delete(name=bare_name)
        except NotFoundError:
            logger.debug(f"{name} already absent")
            return
        except Exception as e:
            raise DeleteError(name, str(e)) from e
        logger.info(f"Deleted {name}")

    def delete_manifest(self, manifest: PolicyManifest, kubeconfig: str) -> None:
        try:
            docs = documents(manifest)
            with self._session(kubeconfig) as dyn:
                for doc in docs:
                    api = dyn.resources.get(api_version=doc["apiVersion"], kind=doc["kind"])
                    metadata = doc.get("metadata") or {}
                    namespace = metadata.get("namespace", "default") if api.namespaced else None
                    try:
                        api.delete(name=metadata.get("name"), namespace=namespace)
                    except NotFoundError:
                        continue
        except Exception as e:
            raise DeleteError(manifest.source, str(e)) from e
        logger.info(f"Deleted objects from {manifest.source}")


def build_cluster_client(backend: str = config.CLUSTER_BACKEND) -> ClusterClient:
    """Return the configured backend (``kubectl`` or ``api``)."""
    if backend == "kubectl":
        return KubectlClusterClient()
    if backend == "api":
        return ApiClusterClient()
    raise ConfigurationError(f"Unknown cluster backend: {backend!r}")
