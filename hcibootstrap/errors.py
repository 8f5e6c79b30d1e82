"""Error taxonomy for the bootstrap run.

Every failure that ends a run derives from :class:`BootstrapError`; its message
is what the dashboard shows next to the ``error`` phase.
"""
from typing import List, Optional


class BootstrapError(RuntimeError):
    """Base class for failures that end a bootstrap run."""


class ConfigValidationError(BootstrapError):
    """Raised when cluster.yaml is missing, unparsable or semantically invalid."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        summary = f"{len(self.errors)} error(s) in cluster config"
        if self.errors:
            summary += ": " + "; ".join(self.errors)
        super().__init__(summary)


class RenderError(BootstrapError):
    """Raised when a template or the ignition transpile step fails."""


class ServiceStartError(BootstrapError):
    """Raised when a PXE service fails to start or exits unexpectedly."""


class WaitTimeout(BootstrapError):
    """Raised when the control plane or node readiness deadline is exceeded."""


class CredentialError(BootstrapError):
    """Raised when the cluster kubeconfig is required but has not been retrieved."""


class ApplyError(BootstrapError):
    """Raised when applying manifests against the cluster fails."""


class RolloutTimeout(BootstrapError):
    """Raised when a workload does not finish rolling out within its bound."""


class ProbeFailure(BootstrapError):
    """Raised when an add-on readiness probe does not pass within its bound."""


class Interrupted(BootstrapError):
    """Raised from the signal handler when the run is asked to stop."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Bootstrap interrupted by signal {signum}")
