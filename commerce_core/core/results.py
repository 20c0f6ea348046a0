"""Typed results returned by every action call."""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from .exceptions import CommerceError, ErrorCategory

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of an action call.

    success=True carries data; success=False carries an error message with its
    category and code so the caller can decide between retrying, showing the
    error to a user, or paging an operator. An idempotent replay is a success
    with replayed=True.
    """

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_code: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)
    replayed: bool = False

    @classmethod
    def ok(cls, data: Dict[str, Any], replayed: bool = False) -> "ActionResult":
        return cls(success=True, data=data, replayed=replayed)

    @classmethod
    def failure(cls, exc: CommerceError) -> "ActionResult":
        if exc.category is ErrorCategory.INCONSISTENCY:
            logger.critical(
                "inconsistency_detected",
                error_code=exc.code,
                error=exc.message,
                **exc.details,
            )
        return cls(
            success=False,
            error=exc.message,
            error_category=exc.category,
            error_code=exc.code,
            error_details=exc.details,
        )

    @property
    def is_retryable(self) -> bool:
        return self.error_category is ErrorCategory.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data, "replayed": self.replayed}
        return {
            "success": False,
            "error": {
                "message": self.error,
                "category": self.error_category.value if self.error_category else None,
                "code": self.error_code,
                "details": self.error_details,
            },
        }


@dataclass(frozen=True)
class OperationOutcome:
    """Data produced by a component operation, and whether it was replayed."""

    data: Dict[str, Any]
    replayed: bool = False
