"""
Service-layer result type and base class.

Services report expected failures (business rules, gateway refusals) as a
failed ServiceResult instead of raising, so views and Celery tasks handle
every outcome with one code path. Unexpected errors (database outages,
bugs) still raise.

Usage:
    from core.services import BaseService, ServiceResult

    class SettlementOrchestrator(BaseService):
        def refund(self, transaction_id):
            try:
                return ServiceResult.success(self._refund(transaction_id))
            except BaseApplicationError as exc:
                return self.handle_exception(exc, "refund")

    result = orchestrator.refund(transaction_id)
    if not result:
        return Response(result.to_response(), status=409)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from core.exceptions import BaseApplicationError

if TYPE_CHECKING:
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of a service call.

    On success only data is set. On failure error and error_code are set,
    and details carries the structured context of the originating
    BaseApplicationError (current status, gateway issue, ...).

    A result is truthy exactly when it succeeded.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code, details=details)

    @classmethod
    def from_exception(cls, exc: Exception) -> ServiceResult[T]:
        """
        Failed result for exc.

        Application errors keep their message, code and details. Anything
        else is reported under its upper-cased class name.
        """
        if isinstance(exc, BaseApplicationError):
            return cls.failure(exc.message, exc.error_code, dict(exc.details) or None)
        return cls.failure(str(exc), type(exc).__name__.upper())

    def to_response(self) -> dict[str, Any]:
        """JSON body for an API response."""
        if self.success:
            return {"success": True, "data": self.data}

        body: dict[str, Any] = {"success": False, "error": self.error}
        if self.error_code:
            body["error_code"] = self.error_code
        if self.details:
            body["details"] = self.details
        return body

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """Shared helpers for service classes: a per-class logger and error reporting."""

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log exc and turn it into a failed ServiceResult.

        Application error details are logged as detail_<key> extras so log
        search can filter on transaction_id, current_status and the like.
        """
        extra: dict[str, Any] = {
            "operation": context or None,
            "error_code": getattr(exc, "error_code", None),
        }
        if isinstance(exc, BaseApplicationError):
            for key, value in exc.details.items():
                extra[f"detail_{key}"] = value
        cls.get_logger().log(
            log_level, f"{context}: {exc}" if context else str(exc), extra=extra
        )
        return ServiceResult.from_exception(exc)
