"""Error hierarchy for the planning engine."""

from __future__ import annotations

from typing import Any


class PlanningError(Exception):
    """Base planning error carrying a stable machine-readable code."""

    code = "planning-error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class PlanRequestError(PlanningError):
    """Raised when a top-level planning request is malformed."""

    code = "plan-request-invalid"


class NoCandidatesError(PlanningError):
    """Raised when an algorithm is handed an empty candidate set."""

    code = "no-candidates"


class WorkspaceConflictError(PlanningError):
    """Raised when a context key already owns an active workspace."""

    code = "workspace-conflict"

    def __init__(self, context_key: str, session_id: str) -> None:
        super().__init__(
            f"An active planning session already exists for key: {context_key}",
            {"context_key": context_key, "session_id": session_id},
        )
        self.session_id = session_id


class WorkspaceNotFoundError(PlanningError):
    """Raised when a session id is unknown or already reclaimed."""

    code = "workspace-not-found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Planning session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class ReferenceDataError(PlanningError):
    """Raised when an external reference-data lookup fails or times out."""

    code = "reference-data-error"
