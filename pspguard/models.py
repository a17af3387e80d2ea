"""Shared Pydantic models for pspguard.

The reconciler, cluster backends and local orchestrator all import from here
so the persisted state shape is defined exactly once.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ClusterIdentity(str, Enum):
    """Provider variants with known PSP baselines."""
    aks = "aks"
    eks = "eks"
    gke = "gke"
    local = "local"


class LifecycleAction(str, Enum):
    """What the local orchestrator did for a cluster."""
    created = "created"
    updated = "updated"
    unchanged = "unchanged"
    deleted = "deleted"
    failed = "failed"


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

class PolicyManifest(BaseModel):
    """A YAML document stream and the location it was loaded from."""
    source: str = Field(..., description="File path the text was read from")
    text: str


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

class ReconciliationInputs(BaseModel):
    """State carried between lifecycle calls and persisted by the orchestrator.

    ``required_psps`` and ``required_cloud_psps`` are recomputed and
    overwritten on every convergence cycle.
    """
    kubeconfig: str = Field(..., repr=False)
    required_psps: list[str] = Field(default_factory=list)
    required_cloud_psps: list[str] = Field(default_factory=list)

    def required(self) -> list[str]:
        """User-supplied names followed by provider baseline names."""
        return [*self.required_psps, *self.required_cloud_psps]


# ---------------------------------------------------------------------------
# Lifecycle results
# ---------------------------------------------------------------------------

class ConvergenceReport(BaseModel):
    """Outcome of one create/update convergence cycle."""
    state: ReconciliationInputs
    applied: list[str] = Field(default_factory=list, description="Manifest sources applied")
    deleted: list[str] = Field(default_factory=list, description="Extraneous policy names removed")
    failed_deletes: dict[str, str] = Field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """Converged, but some extraneous policies are still in the cluster."""
        return bool(self.failed_deletes)


class TeardownReport(BaseModel):
    """Outcome of deleting the managed manifest set from a cluster."""
    deleted: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.failed)


class CheckResult(BaseModel):
    inputs: ReconciliationInputs
    failures: list[str] = Field(default_factory=list)


class DiffResult(BaseModel):
    changes: bool = False
    missing: list[str] = Field(default_factory=list)


class CreateResult(BaseModel):
    id: str
    outs: ReconciliationInputs
    report: ConvergenceReport


class UpdateResult(BaseModel):
    outs: ReconciliationInputs
    report: ConvergenceReport


class ClusterRun(BaseModel):
    """Per-cluster result of a local orchestrator pass."""
    identity: str
    action: LifecycleAction
    resource_id: str = ""
    report: ConvergenceReport | TeardownReport | None = None
    error: str = ""

    @property
    def degraded(self) -> bool:
        return self.report is not None and self.report.degraded
