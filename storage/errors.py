"""
storage/errors.py

Exception hierarchy for the report lifecycle and review workflow.

Every error carries a machine-readable ``code``, structured ``details`` and a
short ``user_message`` the presentation layer can show verbatim instead of a
generic failure.
"""

from __future__ import annotations

from typing import Any


class ReviewEngineError(Exception):
    """Base exception for all engine errors."""

    user_message = "The request could not be completed."

    def __init__(
        self,
        message: str,
        code: str = "ENGINE_ERROR",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }


class ValidationError(ReviewEngineError):
    """Malformed input: missing required field, empty remarks, bad page size."""

    user_message = "Some of the information provided is missing or invalid."

    def __init__(self, message: str, field: str = "unknown", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field": field, **(details or {})},
        )
        self.field = field


class NotFoundError(ReviewEngineError):
    user_message = "This report could not be found."

    def __init__(self, report_id: str):
        super().__init__(
            message=f"Report '{report_id}' not found.",
            code="NOT_FOUND",
            details={"report_id": report_id},
        )
        self.report_id = report_id


class InvalidStateError(ReviewEngineError):
    """Operation not legal in the report's current status or review state."""

    user_message = "This report can no longer be reviewed or changed."

    def __init__(self, message: str, state: str = "unknown", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="INVALID_STATE",
            details={"state": state, **(details or {})},
        )
        self.state = state


class InvalidTransitionError(ReviewEngineError):
    """The requested status edge is not in the allowed table."""

    user_message = "This report cannot be moved to the requested status."

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            message=f"Transition {from_status} -> {to_status} is not allowed.",
            code="INVALID_TRANSITION",
            details={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ForbiddenError(ReviewEngineError):
    user_message = "You do not have permission to perform this action."

    def __init__(self, message: str, role: str = "unknown", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="FORBIDDEN",
            details={"role": role, **(details or {})},
        )
        self.role = role


class ConflictError(ReviewEngineError):
    """A concurrent write won the race; re-read the report and retry."""

    user_message = "This report was changed by someone else. Refresh and try again."

    def __init__(self, report_id: str, expected_version: int | None = None):
        super().__init__(
            message=f"Report '{report_id}' was modified concurrently (expected version {expected_version}).",
            code="CONFLICT",
            details={"report_id": report_id, "expected_version": expected_version},
        )
        self.report_id = report_id
        self.expected_version = expected_version
