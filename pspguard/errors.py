"""
Exception hierarchy for pspguard.

Every error derives from PolicyGuardError, itself a RuntimeError, so callers
that only know about RuntimeError still see failures surface.

Fatal (abort the lifecycle call):
    - ConfigurationError: manifest missing or unparseable
    - PreflightError: cluster tooling unavailable
    - ClusterUnreachableError: live policy listing failed
    - ApplyError: a required policy document was rejected

Non-fatal (collected into the convergence report):
    - DeleteError: an extraneous policy could not be removed
"""


class PolicyGuardError(RuntimeError):
    """Base class for all pspguard errors."""


class ConfigurationError(PolicyGuardError):
    """A manifest document is missing, unparseable, or declares no policy."""


class PreflightError(PolicyGuardError):
    """Required cluster tooling is not installed."""


class ClusterUnreachableError(PolicyGuardError):
    """The live policy listing could not be read from the cluster."""


class ApplyError(PolicyGuardError):
    """A manifest document failed to apply."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"Failed to apply {source}: {detail}")


class DeleteError(PolicyGuardError):
    """A policy object (or a manifest's objects) failed to delete."""

    def __init__(self, target: str, detail: str):
        self.target = target
        self.detail = detail
        super().__init__(f"Failed to delete {target}: {detail}")
