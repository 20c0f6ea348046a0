"""Order, payment, inventory and delivery logic."""
from .exceptions import (
    CommerceError,
    ConcurrentModification,
    ErrorCategory,
    GatewayTimeout,
    GatewayUnavailable,
    IllegalTransition,
    InconsistencyError,
    InsufficientStock,
    InvalidSignature,
    LedgerMismatch,
    NotFoundError,
    OperationInProgress,
    PaymentDeclined,
    RefundExceedsBalance,
    RetryLimitExceeded,
    TotalsInvariantViolation,
    TransientError,
    ValidationError,
)
from .results import ActionResult, OperationOutcome

__all__ = [
    "ActionResult",
    "CommerceError",
    "ConcurrentModification",
    "ErrorCategory",
    "GatewayTimeout",
    "GatewayUnavailable",
    "IllegalTransition",
    "InconsistencyError",
    "InsufficientStock",
    "InvalidSignature",
    "LedgerMismatch",
    "NotFoundError",
    "OperationInProgress",
    "OperationOutcome",
    "PaymentDeclined",
    "RefundExceedsBalance",
    "RetryLimitExceeded",
    "TotalsInvariantViolation",
    "TransientError",
    "ValidationError",
]
