"""Closed status vocabularies persisted as plain strings."""
import enum
from typing import List, Type


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class OrderPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, enum.Enum):
    UNFULFILLED = "unfulfilled"
    PARTIAL = "partial"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class FinancialStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    VOIDED = "voided"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class RefundReason(str, enum.Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    OTHER = "other"


class RefundTargetType(str, enum.Enum):
    GATEWAY = "gateway"
    GIFT_CARD = "gift_card"
    STORE_CREDIT = "store_credit"


class AdjustmentType(str, enum.Enum):
    RECEIVED = "received"
    SOLD = "sold"
    RETURNED = "returned"
    DAMAGED = "damaged"
    LOST = "lost"
    CORRECTION = "correction"
    TRANSFER = "transfer"


class ReferenceType(str, enum.Enum):
    ORDER = "order"
    RETURN = "return"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StatusType(str, enum.Enum):
    ORDER = "order"
    PAYMENT = "payment"
    FULFILLMENT = "fulfillment"


class GiftCardStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    DISABLED = "disabled"


class GiftCardTransactionType(str, enum.Enum):
    ISSUED = "issued"
    USED = "used"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class IdempotencyStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


def enum_values(enum_cls: Type[enum.Enum]) -> List[str]:
    """Return the persisted string values of an enum, in declaration order."""
    return [member.value for member in enum_cls]


def check_in(column: str, enum_cls: Type[enum.Enum]) -> str:
    """Build a CHECK constraint expression restricting a column to an enum's values."""
    values = ", ".join(f"'{value}'" for value in enum_values(enum_cls))
    return f"{column} IN ({values})"
