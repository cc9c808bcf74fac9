"""Error taxonomy for job orchestration."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class ValidationError(OrchestratorError):
    """Malformed job request; raised before any resource is touched."""


class JobNotFound(OrchestratorError):  # noqa: N818
    """Unknown job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class NotRunning(OrchestratorError):  # noqa: N818
    """Cancel requested for a job that has no live process."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job is not running: {job_id}")
        self.job_id = job_id


class SpawnError(OrchestratorError):
    """The external tool could not be started."""


class ProcessExitError(OrchestratorError):
    """The external tool exited with a non-zero status."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Process exited with code {exit_code}")
        self.exit_code = exit_code


class JobCancelled(OrchestratorError):  # noqa: N818
    """Base for cancellation causes; ``reason`` is stored in job metadata."""

    reason = "cancelled"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or f"Job cancelled ({self.reason})")


class CancelledByUser(JobCancelled):
    reason = "user"


class CancelledByDisconnect(JobCancelled):
    reason = "disconnect"


class SyncError(OrchestratorError):
    """Object store or archive failure during artifact synchronization."""


class PathTraversalError(SyncError):
    """Archive entry would escape the extraction directory."""
