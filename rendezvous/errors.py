"""Standardized errors for rendezvous.

Business outcomes of matching (missing event, deadline passed, quorum not
reached, no common dates) are returned as ``MatchDecision`` values and never
raised. The classes here cover caller mistakes and storage failures.

Usage:
    from rendezvous.errors import NotFoundError

    if event is None:
        raise NotFoundError(detail="Event not found", resource_id=event_id)
"""

from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error payload for the external layer."""

    error: str
    detail: str | None = None
    error_code: str | None = None
    context: dict[str, Any] | None = None


class RendezvousError(Exception):
    """Base class for rendezvous errors."""

    error: str = "internal_error"
    detail: str = "An unexpected error occurred"

    def __init__(
        self,
        detail: str | None = None,
        error_code: str | None = None,
        **context: Any,
    ) -> None:
        self.detail = detail or self.__class__.detail
        self.error_code = error_code
        self.context = context if context else None
        super().__init__(self.detail)

    def to_response(self) -> ErrorResponse:
        """Convert exception to error response model."""
        return ErrorResponse(
            error=self.error,
            detail=self.detail,
            error_code=self.error_code,
            context=self.context,
        )


class NotFoundError(RendezvousError):
    """Resource not found."""

    error = "not_found"
    detail = "Resource not found"


class BadRequestError(RendezvousError):
    """Caller supplied invalid input."""

    error = "bad_request"
    detail = "Invalid request"


class ConflictError(RendezvousError):
    """Mutation conflicts with the resource's current state."""

    error = "conflict"
    detail = "Resource state does not allow this change"


class StorageError(RendezvousError):
    """Underlying storage failed; never retried internally."""

    error = "storage_error"
    detail = "Storage operation failed"
