"""
PodSecurityPolicy reconciler - lifecycle hooks for one cluster.

Exposes check/diff/create/update/delete for an external orchestrator that
persists ReconciliationInputs between calls. State is never trusted: every
cycle recomputes the desired policy set and re-reads the live cluster.

PSP semantics require that policies are created before any are deleted,
otherwise pods can be rejected while no policy admits them. Convergence
therefore applies every manifest before it removes anything.
"""

import logging
import secrets
from typing import List, Optional, Set

from .baseline import baseline_policies
from .cluster import ClusterClient, build_cluster_client
from .errors import ConfigurationError, DeleteError
from .manifests import extract_policy_name, load_manifest_set
from .models import (
    CheckResult,
    ClusterIdentity,
    ConvergenceReport,
    CreateResult,
    DiffResult,
    PolicyManifest,
    ReconciliationInputs,
    TeardownReport,
    UpdateResult,
)

logger = logging.getLogger(__name__)


def resolve_identity(identity: str) -> ClusterIdentity:
    """Map an identity tag to a ClusterIdentity, rejecting unknown tags."""
    try:
        return ClusterIdentity(identity)
    except ValueError:
        known = ", ".join(i.value for i in ClusterIdentity)
        raise ConfigurationError(
            f"Unknown cluster identity {identity!r}; expected one of: {known}"
        ) from None


class PodSecurityPolicyReconciler:
    """
    Manages the PSP baseline of a single cluster.

    The managed set is the required cloud provider PSPs for the identity plus
    every PSP declared by the identity's manifest set.
    """

    def __init__(
        self,
        identity: str,
        client: Optional[ClusterClient] = None,
        manifests: Optional[List[PolicyManifest]] = None,
    ):
        # Case sensitive: "GKE" is not gke and would get an empty baseline.
        self.identity = resolve_identity(identity).value
        # Manifests first: a broken manifest must fail before the kubectl preflight.
        self.manifests = manifests if manifests is not None else load_manifest_set(self.identity)
        self.client = client if client is not None else build_cluster_client()

    def desired_policy_names(self) -> Set[str]:
        """Declared manifest policies plus the provider baseline."""
        declared = [extract_policy_name(m) for m in self.manifests]
        return set(declared) | set(baseline_policies(self.identity))

    def check(
        self, prior: Optional[ReconciliationInputs], inputs: ReconciliationInputs
    ) -> CheckResult:
        """Validate inputs without contacting the cluster."""
        failures = []
        if not inputs.kubeconfig.strip():
            failures.append("kubeconfig must not be empty")
        return CheckResult(inputs=inputs, failures=failures)

    def diff(
        self,
        resource_id: str,
        prior: ReconciliationInputs,
        inputs: Optional[ReconciliationInputs] = None,
    ) -> DiffResult:
        """
        Report whether any required policy is missing from the cluster.

        Args:
            resource_id: Identifier returned by create (unused for addressing)
            prior: Persisted state; its kubeconfig is used for the query
            inputs: Newly requested inputs

        Returns:
            DiffResult with changes=True iff a desired policy is absent

        Raises:
            ClusterUnreachableError: If the live listing fails
        """
        desired = self.desired_policy_names()
        live = self.client.list_policy_names(prior.kubeconfig)

        missing = sorted(desired - live)
        if missing:
            logger.info(f"[{self.identity}] {len(missing)} required policies missing: {missing}")
        else:
            logger.info(f"[{self.identity}] All {len(desired)} required policies present")
        return DiffResult(changes=bool(missing), missing=missing)

    def create(self, inputs: ReconciliationInputs) -> CreateResult:
        """Converge a cluster for the first time and mint a resource id."""
        state = inputs.model_copy(update={"required_psps": [], "required_cloud_psps": []})
        report = self._converge(state)
        resource_id = secrets.token_hex(8)
        logger.info(f"[{self.identity}] Created policy baseline {resource_id}")
        return CreateResult(id=resource_id, outs=report.state, report=report)

    def update(
        self,
        resource_id: str,
        prior: ReconciliationInputs,
        inputs: Optional[ReconciliationInputs] = None,
    ) -> UpdateResult:
        """
        Fully re-reconcile from the prior state.

        Requested inputs are not merged in; the accumulators are recomputed
        from the manifest set and baseline table regardless.
        """
        if inputs is not None and inputs.kubeconfig != prior.kubeconfig:
            logger.warning(
                f"[{self.identity}] Requested kubeconfig differs from stored state; "
                f"update uses the stored kubeconfig"
            )
        report = self._converge(prior.model_copy(deep=True))
        return UpdateResult(outs=report.state, report=report)

    def delete(self, resource_id: str, state: ReconciliationInputs) -> TeardownReport:
        """Remove every object in the manifest set, best effort."""
        report = TeardownReport()
        for manifest in self.manifests:
            try:
                self.client.delete_manifest(manifest, state.kubeconfig)
            except DeleteError as e:
                logger.warning(f"[{self.identity}] {e}")
                report.failed[manifest.source] = e.detail
                continue
            report.deleted.append(manifest.source)

        logger.info(
            f"[{self.identity}] Teardown of {resource_id}: "
            f"{len(report.deleted)} removed, {len(report.failed)} failed"
        )
        return report

    def _converge(self, state: ReconciliationInputs) -> ConvergenceReport:
        """Apply required policies, then delete everything else."""
        state.required_psps = [extract_policy_name(m) for m in self.manifests]
        state.required_cloud_psps = baseline_policies(self.identity)
        required = set(state.required())

        current = self.client.list_policy_names(state.kubeconfig)
        to_delete = sorted(name for name in current - required if name)

        report = ConvergenceReport(state=state)

        # Create before delete; see module docstring.
        for manifest in self.manifests:
            self.client.apply(manifest, state.kubeconfig)
            report.applied.append(manifest.source)

        for name in to_delete:
            try:
                self.client.delete(name, state.kubeconfig)
            except DeleteError as e:
                logger.warning(f"[{self.identity}] {e}")
                report.failed_deletes[name] = e.detail
                continue
            report.deleted.append(name)

        logger.info(
            f"[{self.identity}] Converged: {len(report.applied)} applied, "
            f"{len(report.deleted)} deleted, {len(report.failed_deletes)} delete failures"
        )
        return report
