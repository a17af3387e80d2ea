"""
Local orchestrator - drives the reconciler lifecycle for named clusters.

Plays the part of a declarative provisioning framework: loads persisted
state, calls create on first sight, otherwise diff and (when needed) update,
then saves the new state. Multiple clusters run concurrently, each with its
own reconciler, client and state; nothing mutable is shared between them.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from . import config
from .cluster import ClusterClient
from .errors import ConfigurationError, PolicyGuardError
from .models import (
    ClusterIdentity,
    ClusterRun,
    DiffResult,
    LifecycleAction,
    ReconciliationInputs,
)
from .reconciler import PodSecurityPolicyReconciler, resolve_identity
from .state import StateStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], ClusterClient]


def reconcile_cluster(
    identity: str,
    kubeconfig: str,
    store: StateStore,
    client: Optional[ClusterClient] = None,
) -> ClusterRun:
    """
    Run one lifecycle pass for a cluster.

    Args:
        identity: Cluster identity tag
        kubeconfig: Kubeconfig text for the cluster
        store: Where prior state is loaded from and saved to
        client: Cluster backend (defaults to the configured one)

    Returns:
        ClusterRun describing the action taken

    Raises:
        PolicyGuardError: Any fatal reconciliation error
    """
    identity = resolve_identity(identity).value
    reconciler = PodSecurityPolicyReconciler(identity, client=client)
    inputs = ReconciliationInputs(kubeconfig=kubeconfig)

    prior = store.load(identity)
    checked = reconciler.check(prior[1] if prior else None, inputs)
    if checked.failures:
        raise ConfigurationError(f"Invalid inputs for {identity}: {'; '.join(checked.failures)}")

    if prior is None:
        logger.info(f"[{identity}] No prior state, creating")
        created = reconciler.create(inputs)
        store.save(identity, created.id, created.outs)
        return ClusterRun(
            identity=identity,
            action=LifecycleAction.created,
            resource_id=created.id,
            report=created.report,
        )

    resource_id, state = prior
    state = _refreshed(identity, state, kubeconfig)

    if not reconciler.diff(resource_id, state, inputs).changes:
        store.save(identity, resource_id, state)
        return ClusterRun(
            identity=identity,
            action=LifecycleAction.unchanged,
            resource_id=resource_id,
        )

    updated = reconciler.update(resource_id, state, inputs)
    store.save(identity, resource_id, updated.outs)
    return ClusterRun(
        identity=identity,
        action=LifecycleAction.updated,
        resource_id=resource_id,
        report=updated.report,
    )


def diff_cluster(
    identity: str,
    kubeconfig: str,
    store: StateStore,
    client: Optional[ClusterClient] = None,
) -> DiffResult:
    """Report required policies missing from a cluster without changing it."""
    identity = resolve_identity(identity).value
    reconciler = PodSecurityPolicyReconciler(identity, client=client)
    inputs = ReconciliationInputs(kubeconfig=kubeconfig)
    prior = store.load(identity)
    if prior is None:
        return reconciler.diff("", inputs, inputs)
    resource_id, state = prior
    return reconciler.diff(resource_id, _refreshed(identity, state, kubeconfig), inputs)


def teardown_cluster(
    identity: str,
    store: StateStore,
    client: Optional[ClusterClient] = None,
) -> ClusterRun:
    """
    Delete the managed policy set from a cluster.

    State is forgotten only after a clean teardown, so a degraded run is
    retried on the next call.
    """
    identity = resolve_identity(identity).value
    prior = store.load(identity)
    if prior is None:
        logger.info(f"[{identity}] Nothing to tear down")
        return ClusterRun(identity=identity, action=LifecycleAction.unchanged)

    resource_id, state = prior
    reconciler = PodSecurityPolicyReconciler(identity, client=client)
    report = reconciler.delete(resource_id, state)
    if report.degraded:
        logger.warning(f"[{identity}] Teardown incomplete, keeping state for retry")
    else:
        store.remove(identity)
    return ClusterRun(
        identity=identity,
        action=LifecycleAction.deleted,
        resource_id=resource_id,
        report=report,
    )


def _refreshed(identity: str, state: ReconciliationInputs, kubeconfig: str) -> ReconciliationInputs:
    # Credentials are acquired outside pspguard; always use the freshest.
    if state.kubeconfig == kubeconfig:
        return state
    logger.info(f"[{identity}] Kubeconfig changed since last run, refreshing stored state")
    return state.model_copy(update={"kubeconfig": kubeconfig})


def discover_clusters(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Find clusters whose kubeconfig path is set in the environment.

    Looks up ``PSPGUARD_<IDENTITY>_KUBECONFIG`` for every known identity and
    reads the referenced file.

    Returns:
        Mapping of identity -> kubeconfig text

    Raises:
        ConfigurationError: If a referenced kubeconfig file cannot be read
    """
    environ = os.environ if environ is None else environ
    clusters: Dict[str, str] = {}
    for identity in ClusterIdentity:
        var = config.KUBECONFIG_ENV_TEMPLATE.format(identity=identity.value.upper())
        path = environ.get(var)
        if not path:
            continue
        try:
            clusters[identity.value] = Path(path).expanduser().read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read kubeconfig from ${var} ({path}): {e}") from e
    logger.info(f"Discovered {len(clusters)} cluster(s): {sorted(clusters)}")
    return clusters


def reconcile_clusters(
    clusters: Mapping[str, str],
    store: StateStore,
    max_workers: int = config.MAX_WORKERS,
    client_factory: Optional[ClientFactory] = None,
) -> List[ClusterRun]:
    """
    Reconcile several clusters concurrently.

    A fatal error on one cluster is recorded in its ClusterRun and does not
    stop the others. Results come back in the order of ``clusters``.
    """

    def _run(identity: str, kubeconfig: str) -> ClusterRun:
        try:
            client = client_factory(identity) if client_factory else None
            return reconcile_cluster(identity, kubeconfig, store, client=client)
        except PolicyGuardError as e:
            logger.error(f"[{identity}] Reconciliation failed: {e}")
            return ClusterRun(identity=identity, action=LifecycleAction.failed, error=str(e))

    if not clusters:
        return []

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(clusters)))) as pool:
        futures = [pool.submit(_run, identity, kubeconfig) for identity, kubeconfig in clusters.items()]
        return [future.result() for future in futures]
