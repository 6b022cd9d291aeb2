"""Custom exception hierarchy for the workflow engine core layer."""

from __future__ import annotations

__all__ = [
    "CollaboratorError",
    "ConcurrentModificationError",
    "DefinitionError",
    "EnrollmentError",
    "NotFoundError",
    "ParticipantNotFoundError",
    "ParticipantRepositoryError",
    "RepositoryError",
    "WorkflowEngineError",
    "WorkflowNotFoundError",
    "WorkflowRepositoryError",
]


class WorkflowEngineError(RuntimeError):
    """Base error for all workflow engine components."""


class DefinitionError(WorkflowEngineError):
    """Raised when a workflow graph or its configuration is invalid."""

    def __init__(self, problems: list[str] | str) -> None:
        self.problems: list[str] = [problems] if isinstance(problems, str) else list(problems)
        super().__init__("; ".join(self.problems))


class NotFoundError(WorkflowEngineError):
    """Raised when a referenced record no longer exists."""


class WorkflowNotFoundError(NotFoundError):
    """Raised when a workflow definition cannot be located."""


class ParticipantNotFoundError(NotFoundError):
    """Raised when a participant record cannot be located."""


class EnrollmentError(WorkflowEngineError):
    """Raised when a lead cannot be enrolled into a workflow."""


class CollaboratorError(WorkflowEngineError):
    """Raised when an outbound collaborator (lead store, email, webhook) fails."""


class ConcurrentModificationError(WorkflowEngineError):
    """Raised when an optimistic write loses against a concurrent writer."""


class RepositoryError(WorkflowEngineError):
    """Raised when persistence operations fail."""


class WorkflowRepositoryError(RepositoryError):
    """Raised when persistence operations for workflows fail."""


class ParticipantRepositoryError(RepositoryError):
    """Raised when persistence operations for participants fail."""
