"""SQLAlchemy database models for the order, payment and inventory core."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from .enums import (
    AdjustmentType,
    DeliveryStatus,
    FinancialStatus,
    FulfillmentStatus,
    GiftCardStatus,
    GiftCardTransactionType,
    IdempotencyStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
    ReferenceType,
    RefundReason,
    RefundStatus,
    StatusType,
    check_in,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns
LedgerId = BigInteger().with_variant(Integer(), "sqlite")

CAPTURED_PAYMENT_STATUSES = (
    PaymentStatus.CAPTURED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
)


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    Holds the five monetary fields and the three independent status axes.
    Totals always satisfy total = subtotal - discount + tax + shipping; rows
    are soft-cancelled, never deleted. The version column serializes
    concurrent writers of the same order.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    subtotal_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_codes: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    shipping_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    billing_address: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    shipping_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=OrderPaymentStatus.PENDING.value
    )
    fulfillment_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=FulfillmentStatus.UNFULFILLED.value
    )
    financial_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=FinancialStatus.PENDING.value
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "total_amount = subtotal_amount - discount_amount + tax_amount + shipping_amount",
            name="order_totals_balance",
        ),
        CheckConstraint(
            "subtotal_amount >= 0 AND discount_amount >= 0 AND tax_amount >= 0 "
            "AND shipping_amount >= 0",
            name="order_amounts_non_negative",
        ),
        CheckConstraint(check_in("status", OrderStatus), name="valid_order_status"),
        CheckConstraint(
            check_in("payment_status", OrderPaymentStatus), name="valid_order_payment_status"
        ),
        CheckConstraint(
            check_in("fulfillment_status", FulfillmentStatus), name="valid_fulfillment_status"
        ),
        CheckConstraint(
            check_in("financial_status", FinancialStatus), name="valid_financial_status"
        ),
        Index("idx_orders_status_payment", "status", "payment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, total={self.total_amount}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class OrderItem(Base):
    """
    Order line items with a denormalized product/variant snapshot.

    fulfillment_quantity never exceeds quantity.
    """

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_title: Mapped[str] = mapped_column(String(500), nullable=False)
    product_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    variant_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fulfillment_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=FulfillmentStatus.UNFULFILLED.value
    )
    fulfillment_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_item_quantity"),
        CheckConstraint("price >= 0", name="non_negative_item_price"),
        CheckConstraint(
            "fulfillment_quantity >= 0 AND fulfillment_quantity <= quantity",
            name="fulfillment_within_quantity",
        ),
        CheckConstraint(
            "total = subtotal - discount_amount + tax_amount", name="item_totals_balance"
        ),
    )

    @property
    def unfulfilled_quantity(self) -> int:
        return self.quantity - self.fulfillment_quantity

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return (
            f"<OrderItem(id={self.id}, variant={self.variant_id}, qty={self.quantity}, "
            f"fulfilled={self.fulfillment_quantity})>"
        )


class Payment(Base):
    """
    Payment records table.

    One row per payment attempt against an order. The unique idempotency key
    makes creation at-most-once for a client-supplied key; retries of a failed
    payment are new rows chained through parent_payment_id.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    instrument_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=True
    )
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    authorized_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payment_amount"),
        CheckConstraint("attempt_number >= 1", name="positive_attempt_number"),
        CheckConstraint(check_in("status", PaymentStatus), name="valid_payment_status"),
        CheckConstraint("length(currency) = 3", name="valid_payment_currency"),
        Index("idx_payments_order_status", "order_id", "status"),
    )

    @validates("amount")
    def _validate_amount(self, key: str, value: int) -> int:
        if self.status in CAPTURED_PAYMENT_STATUSES and value != self.amount:
            raise ValueError("Payment amount is immutable once captured")
        return value

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Refund(Base):
    """
    Refunds table.

    A pending row reserves its amount against the payment's refundable
    balance until the refund target reports an outcome.
    """

    __tablename__ = "refunds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payments.id"), nullable=True, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    reason: Mapped[str] = mapped_column(
        String(50), nullable=False, default=RefundReason.REQUESTED_BY_CUSTOMER.value
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=RefundStatus.PENDING.value, index=True
    )
    target: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_refund_amount"),
        CheckConstraint(check_in("status", RefundStatus), name="valid_refund_status"),
        CheckConstraint(check_in("reason", RefundReason), name="valid_refund_reason"),
    )

    def __repr__(self) -> str:
        """String representation of Refund."""
        return (
            f"<Refund(id={self.id}, payment_id={self.payment_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class OrderStatusHistory(Base):
    """
    Append-only audit of every write to an order's status axes.

    Never mutated or deleted.
    """

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=False, index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    status_type: Mapped[str] = mapped_column(String(50), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(check_in("status_type", StatusType), name="valid_status_type"),
    )

    def __repr__(self) -> str:
        """String representation of OrderStatusHistory."""
        return (
            f"<OrderStatusHistory(order_id={self.order_id}, type={self.status_type}, "
            f"{self.from_status}->{self.to_status})>"
        )


class StockLevel(Base):
    """
    Stock per (variant, location).

    quantity is on hand, reserved_quantity is held for open orders.
    All writes go through conditional updates that keep
    0 <= reserved_quantity <= quantity.
    """

    __tablename__ = "stock_levels"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location_id: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    incoming_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_point: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reorder_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_restocked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sold_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        UniqueConstraint("variant_id", "location_id", name="uq_stock_variant_location"),
        CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="reserved_within_on_hand",
        ),
    )

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    def __repr__(self) -> str:
        """String representation of StockLevel."""
        return (
            f"<StockLevel(variant={self.variant_id}, location={self.location_id}, "
            f"quantity={self.quantity}, reserved={self.reserved_quantity})>"
        )


class InventoryAdjustment(Base):
    """
    Immutable inventory ledger.

    Every on-hand quantity delta is one row; replaying the rows for a
    variant/location from zero reproduces StockLevel.quantity.
    """

    __tablename__ = "inventory_adjustments"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    variant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    location_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(check_in("type", AdjustmentType), name="valid_adjustment_type"),
        CheckConstraint(
            f"reference_type IS NULL OR {check_in('reference_type', ReferenceType)}",
            name="valid_adjustment_reference_type",
        ),
        Index("idx_adjustments_variant_location", "variant_id", "location_id"),
        Index("idx_adjustments_reference", "reference_type", "reference_id"),
    )

    def __repr__(self) -> str:
        """String representation of InventoryAdjustment."""
        return (
            f"<InventoryAdjustment(variant={self.variant_id}, location={self.location_id}, "
            f"type={self.type}, quantity={self.quantity})>"
        )


class Webhook(Base):
    """Outbound webhook subscriptions, configured externally."""

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    events: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    headers: Mapped[Optional[Dict[str, str]]] = mapped_column(JSONType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    total_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_delivery_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_success_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        CheckConstraint("max_retries >= 1", name="positive_max_retries"),
        CheckConstraint("timeout_seconds > 0", name="positive_timeout"),
    )

    def subscribes_to(self, event_type: str) -> bool:
        return "*" in self.events or event_type in self.events

    def __repr__(self) -> str:
        """String representation of Webhook."""
        return f"<Webhook(id={self.id}, name={self.name}, active={self.is_active})>"


class WebhookDelivery(Base):
    """
    One row per (subscription, event) delivery.

    attempts counts HTTP attempts made. claimed_by/claimed_until is the lease a
    sweeping worker takes through a conditional update before dispatching.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("webhooks.id"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    http_method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    headers: Mapped[Optional[Dict[str, str]]] = mapped_column(JSONType, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[Optional[Dict[str, str]]] = mapped_column(JSONType, nullable=True)
    response_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DeliveryStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_delivery_webhook_event"),
        CheckConstraint(check_in("status", DeliveryStatus), name="valid_delivery_status"),
        CheckConstraint("attempts >= 0 AND attempts <= max_retries", name="attempts_within_budget"),
        Index("webhook_deliveries_next_retry_idx", "status", "next_retry_at"),
    )

    @property
    def is_dead_lettered(self) -> bool:
        return self.status == DeliveryStatus.FAILED.value and self.attempts >= self.max_retries

    def __repr__(self) -> str:
        """String representation of WebhookDelivery."""
        return (
            f"<WebhookDelivery(id={self.id}, event={self.event_type}, "
            f"status={self.status}, attempts={self.attempts})>"
        )


class IdempotencyKey(Base):
    """
    Claimed idempotency keys and their stored results.

    A pending row is an operation in flight (or one whose external outcome is
    unknown); success/error rows are replayed verbatim.
    """

    __tablename__ = "idempotency_keys"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=IdempotencyStatus.PENDING.value
    )
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint(check_in("status", IdempotencyStatus), name="valid_idempotency_status"),
        Index("idx_idempotency_status_locked", "status", "locked_until"),
    )

    def __repr__(self) -> str:
        """String representation of IdempotencyKey."""
        return f"<IdempotencyKey(key={self.key}, operation={self.operation}, status={self.status})>"


class GiftCard(Base):
    """Gift cards; current_amount is the running balance of the transaction chain."""

    __tablename__ = "gift_cards"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    initial_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    current_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=GiftCardStatus.ACTIVE.value
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    __table_args__ = (
        CheckConstraint("current_amount >= 0", name="non_negative_gift_card_balance"),
        CheckConstraint(check_in("status", GiftCardStatus), name="valid_gift_card_status"),
    )

    def __repr__(self) -> str:
        """String representation of GiftCard."""
        return f"<GiftCard(code={self.code}, balance={self.current_amount}, status={self.status})>"


class GiftCardTransaction(Base):
    """Append-only gift card balance chain."""

    __tablename__ = "gift_card_transactions"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    gift_card_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("gift_cards.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    refund_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            check_in("type", GiftCardTransactionType), name="valid_gift_card_transaction_type"
        ),
        CheckConstraint("balance_after >= 0", name="non_negative_balance_after"),
    )

    def __repr__(self) -> str:
        """String representation of GiftCardTransaction."""
        return (
            f"<GiftCardTransaction(card={self.gift_card_id}, type={self.type}, "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )


class StoreCreditTransaction(Base):
    """
    Append-only store credit ledger.

    sequence is gapless per customer; two writers racing for the same next
    sequence collide on the unique constraint, so balance_after never forks.
    """

    __tablename__ = "store_credit_transactions"

    id: Mapped[int] = mapped_column(LedgerId, primary_key=True, autoincrement=True)
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    refund_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, unique=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("customer_id", "sequence", name="uq_store_credit_sequence"),
        CheckConstraint("balance_after >= 0", name="non_negative_store_credit"),
    )

    def __repr__(self) -> str:
        """String representation of StoreCreditTransaction."""
        return (
            f"<StoreCreditTransaction(customer={self.customer_id}, amount={self.amount}, "
            f"balance_after={self.balance_after})>"
        )
