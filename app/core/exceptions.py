"""
Application error hierarchy.

Service code raises these; the service layer turns them into a failed
ServiceResult and the API layer into a JSON body plus HTTP status. Each
error carries:

    message     text for logs and API clients
    error_code  stable identifier clients can branch on
    details     structured context (ids, current status, gateway detail)

Hierarchy:
    BaseApplicationError
        ValidationError        input rejected before any side effect
        NotFoundError          referenced record does not exist
        PermissionDeniedError  known caller, not allowed to do this
        ConflictError          record is in the wrong state for the request
        ExternalServiceError   a remote dependency failed

Domain apps subclass these and only override default_error_code:

    class TransactionNotFoundError(NotFoundError):
        default_error_code = "TRANSACTION_NOT_FOUND"

Request-shape problems stay with DRF serializers; these are for rules
that only the service layer can check.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """Root of every error the service layer knows how to report."""

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Payload for an API error body.

        {"error": "...", "error_code": "...", "details": {...}}; details is
        left out when empty.
        """
        payload: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, "
            f"error_code={self.error_code!r}, details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """Bad amount, percentage or identifier."""

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    default_error_code: str = "NOT_FOUND"


class PermissionDeniedError(BaseApplicationError):
    """
    The caller is identified but may not act on this record.

    Authentication failures are DRF's concern and never reach here.
    """

    default_error_code: str = "PERMISSION_DENIED"


class ConflictError(BaseApplicationError):
    """
    The record's current state forbids the request.

    Covers illegal status transitions and writes lost to a concurrent
    writer; APIs answer these with 409.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    A remote dependency failed or refused the call.

    details may hold the remote's own error data for support tickets;
    keep credentials and raw payloads out of it.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
