"""
Error taxonomy for the commerce core.

Every error carries a category that tells the caller what to do with it:
- validation: rejected synchronously, never retried, shown to the caller as is
- transient: safe to retry later (with the same idempotency key)
- inconsistency: an invariant is broken; abort and page an operator
"""
from enum import Enum
from typing import Any, Dict


class ErrorCategory(str, Enum):
    """How a failed operation should be handled by its caller."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    INCONSISTENCY = "inconsistency"


class CommerceError(Exception):
    """Base exception for all commerce core errors."""

    category: ErrorCategory = ErrorCategory.VALIDATION
    code: str = "commerce_error"

    def __init__(self, message: str, **details: Any):
        """
        Initialize error.

        Args:
            message: Human readable message, surfaced verbatim
            **details: Structured context (ids, amounts) for logs and API payloads
        """
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(CommerceError):
    """Request is invalid for the current state of the system."""

    code = "validation_error"


class NotFoundError(ValidationError):
    code = "not_found"


class InsufficientStock(ValidationError):
    """Available stock (quantity - reserved) is lower than requested."""

    code = "insufficient_stock"


class RefundExceedsBalance(ValidationError):
    """Refund amount is not within (0, remaining refundable balance]."""

    code = "refund_exceeds_balance"


class IllegalTransition(ValidationError):
    """Status change is not in the transition table."""

    code = "illegal_transition"


class PaymentDeclined(ValidationError):
    """Gateway permanently rejected the operation."""

    code = "payment_declined"


class RetryLimitExceeded(ValidationError):
    code = "retry_limit_exceeded"


class InvalidSignature(ValidationError):
    """Inbound notification is unsigned or its signature does not match."""

    code = "invalid_signature"


class TransientError(CommerceError):
    """Temporary failure; retrying with the same idempotency key is safe."""

    category = ErrorCategory.TRANSIENT
    code = "transient_error"


class GatewayUnavailable(TransientError):
    code = "gateway_unavailable"


class GatewayTimeout(TransientError):
    """Gateway did not answer in time; its outcome is unknown until reconciled."""

    code = "gateway_timeout"


class OperationInProgress(TransientError):
    """Another caller holds the idempotency key for this operation."""

    code = "operation_in_progress"


class ConcurrentModification(TransientError):
    """Optimistic version check failed; reload and retry."""

    code = "concurrent_modification"


class InconsistencyError(CommerceError):
    """An invariant is violated. Never corrected automatically."""

    category = ErrorCategory.INCONSISTENCY
    code = "inconsistency"


class TotalsInvariantViolation(InconsistencyError):
    code = "totals_invariant_violation"


class LedgerMismatch(InconsistencyError):
    code = "ledger_mismatch"

