"""Error taxonomy for the phase workflow."""

from uuid import UUID


class WorkflowError(Exception):
    """Base exception for workflow operations."""


class ProjectNotFoundError(WorkflowError):
    """Project does not exist or has no phase tracking. Caller error; not retried."""

    def __init__(self, project_id: UUID, message: str | None = None):
        self.project_id = project_id
        super().__init__(message or f"Project {project_id} not found")


class InvalidServiceError(WorkflowError):
    """A service code (or a phase it references) has no catalog entry.

    Configuration error, surfaced to the operator editing catalog data.
    """

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        super().__init__(message or f"Unknown service code: {code}")


class PhaseNotInSetError(WorkflowError):
    """Requested phase is not part of the project's phase set."""

    def __init__(self, project_id: UUID, phase_key: str):
        self.project_id = project_id
        self.phase_key = phase_key
        super().__init__(f"Phase {phase_key} is not in the phase set of project {project_id}")


class TransientStoreError(WorkflowError):
    """Database timeout or connectivity failure. Safe to retry."""


class ConcurrentUpdateError(WorkflowError):
    """Tracking row changed between read and write; the caller may retry."""

    def __init__(self, project_id: UUID):
        self.project_id = project_id
        super().__init__(f"Phase tracking for {project_id} changed concurrently; retry")
