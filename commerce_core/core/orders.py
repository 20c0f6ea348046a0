"""
Order state machine: create, fulfil, cancel, and shipping status updates.

Each operation runs in one transaction that locks the order row. Stock is
reserved when the order is created, committed as sold when items are
fulfilled and released when the order is cancelled, always in the same
transaction as the order change. The version column turns a write based on a
stale read into StaleDataError, which callers surface as
ConcurrentModification.
"""
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from ..database import Database
from ..database.enums import (
    FinancialStatus,
    FulfillmentStatus,
    IdempotencyStatus,
    OrderPaymentStatus,
    OrderStatus,
    RefundReason,
    StatusType,
)
from ..database.models import Order, OrderItem, utc_now
from ..monitoring.metrics import metrics
from . import events
from .events import EventPublisher
from .exceptions import (
    CommerceError,
    ConcurrentModification,
    IllegalTransition,
    NotFoundError,
    ValidationError,
)
from .idempotency import IdempotencyManager
from .inventory import InventoryLedger, StockLine
from .payment_processor import PaymentProcessor
from .pricing import OrderLineInput, PricingEngine, assert_totals
from .refunds import RefundEngine
from .results import OperationOutcome
from .serializers import history_to_dict, order_to_dict
from .status_history import StatusHistoryRecorder

logger = structlog.get_logger(__name__)

CREATE_OPERATION = "order.create"
ORDER_NUMBER_ATTEMPTS = 3
CANCELLABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
# Moves made through update_status; cancel and refund have their own paths
MANUAL_STATUSES = frozenset(
    {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}
)


@event.listens_for(Session, "before_flush")
def _check_order_totals(session: Session, flush_context: Any, instances: Any) -> None:
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Order):
            assert_totals(obj)


def generate_order_number() -> str:
    """ORD-YYYYMMDD-XXXXXX with six random hex digits."""
    return f"ORD-{utc_now():%Y%m%d}-{secrets.token_hex(3).upper()}"


@dataclass(frozen=True)
class OrderDraft:
    """Everything needed to price and place an order."""

    email: str
    items: Sequence[OrderLineInput]
    customer_id: Optional[str] = None
    phone: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_method: Optional[str] = None
    discount_codes: Sequence[str] = field(default_factory=tuple)
    currency: Optional[str] = None
    notes: Optional[str] = None


class OrderStateMachine:
    """Owns the order's own status axis and its fulfillment axis."""

    def __init__(
        self,
        db: Database,
        inventory: InventoryLedger,
        pricing: PricingEngine,
        idempotency: IdempotencyManager,
        recorder: StatusHistoryRecorder,
        publisher: EventPublisher,
        payments: PaymentProcessor,
        refunds: RefundEngine,
        default_currency: str = "INR",
    ):
        self.db = db
        self.inventory = inventory
        self.pricing = pricing
        self.idempotency = idempotency
        self.recorder = recorder
        self.publisher = publisher
        self.payments = payments
        self.refunds = refunds
        self.default_currency = default_currency

    async def get_order(self, order_id: uuid.UUID) -> Dict[str, Any]:
        async with self.db.session() as session:
            return order_to_dict(await self._load_order(session, order_id))

    async def get_order_by_number(self, order_number: str) -> Dict[str, Any]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Order).where(Order.order_number == order_number)
            )
            order = result.scalar_one_or_none()
            if order is None:
                raise NotFoundError(
                    f"Order {order_number} not found", order_number=order_number
                )
            return order_to_dict(order)

    async def history(
        self, order_id: uuid.UUID, public_only: bool = False
    ) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            await self._load_order(session, order_id)
            rows = await self.recorder.list_for_order(session, order_id, public_only)
            return [history_to_dict(row) for row in rows]

    async def create_order(
        self,
        draft: OrderDraft,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Price an order, reserve its stock and persist it in one transaction.

        Either the order, its items, every reservation, its initial history
        and its order.created event all commit, or none of them do.

        Args:
            draft: Customer, lines and checkout choices
            idempotency_key: Optional client key; a repeat returns the same order
            actor: Who placed the order

        Returns:
            OperationOutcome: The serialized order

        Raises:
            ValidationError: Invalid draft, unknown discount code or shipping method
            InsufficientStock: A line cannot be reserved
            NotFoundError: A variant is not stocked at its location
        """
        if not draft.email or "@" not in draft.email:
            raise ValidationError("A valid email is required", email=draft.email)
        totals = self.pricing.price(draft.items, draft.discount_codes, draft.shipping_method)

        async with self.db.transaction() as session:
            if idempotency_key is not None:
                claim = await self.idempotency.claim(session, idempotency_key, CREATE_OPERATION)
                if claim.is_replay:
                    if claim.status is IdempotencyStatus.ERROR:
                        raise ValidationError(
                            claim.error or "Order creation failed",
                            idempotency_key=idempotency_key,
                        )
                    logger.info("order_create_replayed", idempotency_key=idempotency_key)
                    return OperationOutcome(claim.result or {}, replayed=True)

            order = await self._insert_order(session, draft, totals)
            await self.inventory.reserve_many(
                session,
                [
                    StockLine(line.variant_id, line.location_id, line.quantity)
                    for line in draft.items
                ],
            )
            self.recorder.record_initial(session, order, actor)

            data = order_to_dict(order)
            await self.publisher.emit(session, events.ORDER_CREATED, data)
            if idempotency_key is not None:
                await self.idempotency.complete(session, idempotency_key, data)

        metrics.record_order_created(order.total_amount)
        logger.info(
            "order_created",
            order_id=data["id"],
            order_number=order.order_number,
            total_amount=order.total_amount,
            items=len(draft.items),
            actor=actor,
        )
        return OperationOutcome(data)

    async def _insert_order(
        self, session: AsyncSession, draft: OrderDraft, totals: Any
    ) -> Order:
        # The random suffix can collide; each attempt runs in its own savepoint
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            order = Order(
                id=uuid.uuid4(),
                order_number=generate_order_number(),
                customer_id=draft.customer_id,
                email=draft.email,
                phone=draft.phone,
                currency=draft.currency or self.default_currency,
                subtotal_amount=totals.subtotal,
                discount_amount=totals.discount,
                tax_amount=totals.tax,
                shipping_amount=totals.shipping,
                total_amount=totals.total,
                discount_codes=[code.upper() for code in draft.discount_codes] or None,
                shipping_address=draft.shipping_address,
                billing_address=draft.billing_address,
                shipping_method=draft.shipping_method,
                status=OrderStatus.PENDING.value,
                payment_status=OrderPaymentStatus.PENDING.value,
                fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
                financial_status=FinancialStatus.PENDING.value,
                notes=draft.notes,
            )
            order.items = [
                OrderItem(
                    id=uuid.uuid4(),
                    position=position,
                    variant_id=priced.line.variant_id,
                    location_id=priced.line.location_id,
                    product_id=priced.line.product_id,
                    product_title=priced.line.product_title,
                    product_handle=priced.line.product_handle,
                    variant_title=priced.line.variant_title,
                    sku=priced.line.sku,
                    quantity=priced.line.quantity,
                    price=priced.line.price,
                    discount_amount=priced.discount_amount,
                    tax_amount=priced.tax_amount,
                    subtotal=priced.subtotal,
                    total=priced.total,
                    fulfillment_status=FulfillmentStatus.UNFULFILLED.value,
                    fulfillment_quantity=0,
                )
                for position, priced in enumerate(totals.lines)
            ]
            try:
                async with session.begin_nested():
                    session.add(order)
                    await session.flush()
                return order
            except IntegrityError:
                taken = await session.scalar(
                    select(Order.id).where(Order.order_number == order.order_number)
                )
                if taken is None:
                    raise
                logger.warning(
                    "order_number_collision",
                    order_number=order.order_number,
                    attempt=attempt + 1,
                )

        raise ConcurrentModification("Could not allocate a unique order number")

    async def mark_fulfilled(
        self,
        order_id: uuid.UUID,
        item_quantities: Optional[Mapping[str, int]] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Fulfil some or all outstanding item quantities.

        Args:
            order_id: Order to fulfil
            item_quantities: Item id -> units to fulfil now; None fulfils
                everything outstanding
            actor: Who shipped the goods

        Raises:
            IllegalTransition: The order is cancelled, refunded or already fulfilled
            ValidationError: Unknown item, non-positive or over-fulfilled quantity
        """
        async with self.db.transaction() as session:
            order = await self._load_order(session, order_id, lock=True)
            if order.status not in (
                OrderStatus.PENDING.value,
                OrderStatus.PROCESSING.value,
                OrderStatus.SHIPPED.value,
            ) or order.fulfillment_status in (
                FulfillmentStatus.FULFILLED.value,
                FulfillmentStatus.CANCELLED.value,
            ):
                raise IllegalTransition(
                    f"Order {order.order_number} cannot be fulfilled "
                    f"(status {order.status}, fulfillment {order.fulfillment_status})",
                    axis=StatusType.FULFILLMENT.value,
                    order_id=str(order.id),
                    from_status=order.fulfillment_status,
                )

            plan = self._fulfillment_plan(order, item_quantities)
            for item, quantity in sorted(
                plan, key=lambda pair: (pair[0].variant_id, pair[0].location_id)
            ):
                await self.inventory.commit_reservation(
                    session,
                    item.variant_id,
                    item.location_id,
                    quantity,
                    reference_id=str(order.id),
                    created_by=actor,
                )
                item.fulfillment_quantity += quantity
                item.fulfillment_status = (
                    FulfillmentStatus.FULFILLED.value
                    if item.unfulfilled_quantity == 0
                    else FulfillmentStatus.PARTIAL.value
                )

            complete = all(item.unfulfilled_quantity == 0 for item in order.items)
            target = FulfillmentStatus.FULFILLED if complete else FulfillmentStatus.PARTIAL
            await self.recorder.transition(
                session,
                order,
                StatusType.FULFILLMENT,
                target,
                actor,
                notes=", ".join(f"{item.sku or item.variant_id} x{qty}" for item, qty in plan),
                is_public=True,
            )
            data = order_to_dict(order)
            await self.publisher.emit(
                session,
                events.ORDER_FULFILLED if complete else events.ORDER_PARTIALLY_FULFILLED,
                data,
            )

        logger.info(
            "order_fulfilled",
            order_id=str(order_id),
            fulfillment_status=target.value,
            units=sum(qty for _, qty in plan),
            actor=actor,
        )
        return OperationOutcome(data)

    @staticmethod
    def _fulfillment_plan(
        order: Order, item_quantities: Optional[Mapping[str, int]]
    ) -> List[tuple]:
        if item_quantities is None:
            plan = [
                (item, item.unfulfilled_quantity)
                for item in order.items
                if item.unfulfilled_quantity > 0
            ]
        else:
            items = {str(item.id): item for item in order.items}
            plan = []
            for item_id, quantity in item_quantities.items():
                item = items.get(str(item_id))
                if item is None:
                    raise ValidationError(
                        f"Item {item_id} is not part of order {order.order_number}",
                        item_id=str(item_id),
                    )
                if quantity <= 0:
                    raise ValidationError(
                        "Fulfilment quantity must be positive",
                        item_id=str(item_id),
                        quantity=quantity,
                    )
                if quantity > item.unfulfilled_quantity:
                    raise ValidationError(
                        f"Cannot fulfil {quantity} of item {item_id}: "
                        f"{item.unfulfilled_quantity} outstanding",
                        item_id=str(item_id),
                        requested=quantity,
                        outstanding=item.unfulfilled_quantity,
                    )
                plan.append((item, quantity))

        if not plan:
            raise ValidationError(
                f"Order {order.order_number} has nothing left to fulfil",
                order_id=str(order.id),
            )
        return plan

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        refund_captured: bool = False,
    ) -> OperationOutcome:
        """
        Cancel an order that has not shipped.

        In one transaction: release unfulfilled reservations, cancel pending
        payments, close the fulfillment axis and mark the order cancelled.
        After commit, authorized payments are voided at the gateway. Captured
        money is only refunded when refund_captured is set; otherwise the
        result reports refund_required and outstanding_refund_amount.

        A repeated cancel of an already cancelled order replays its state.

        Raises:
            IllegalTransition: The order has shipped, been delivered or refunded
        """
        async with self.db.transaction() as session:
            order = await self._load_order(session, order_id, lock=True)
            if order.status == OrderStatus.CANCELLED.value:
                return OperationOutcome(
                    self._cancellation_data(order_to_dict(order), [], [], 0, False, []),
                    replayed=True,
                )
            if order.status not in CANCELLABLE_STATUSES:
                raise IllegalTransition(
                    f"Order {order.order_number} cannot be cancelled in status {order.status}",
                    axis=StatusType.ORDER.value,
                    order_id=str(order.id),
                    from_status=order.status,
                    to_status=OrderStatus.CANCELLED.value,
                )

            released = 0
            for item in sorted(order.items, key=lambda i: (i.variant_id, i.location_id)):
                if item.unfulfilled_quantity > 0:
                    await self.inventory.release(
                        session,
                        item.variant_id,
                        item.location_id,
                        item.unfulfilled_quantity,
                        reference_id=str(order.id),
                        created_by=actor,
                    )
                    released += item.unfulfilled_quantity

            to_void, captured = await self.payments.cancel_open_payments(session, order, actor)
            outstanding_refund = 0
            for payment in captured:
                outstanding_refund += await self.refunds.refundable_in(session, payment)
            captured_ids = [payment.id for payment in captured]

            await self.recorder.transition(
                session, order, StatusType.FULFILLMENT, FulfillmentStatus.CANCELLED, actor
            )
            if order.payment_status == OrderPaymentStatus.PENDING.value:
                await self.recorder.transition(
                    session, order, StatusType.PAYMENT, OrderPaymentStatus.CANCELLED, actor
                )
            await self.recorder.transition(
                session,
                order,
                StatusType.ORDER,
                OrderStatus.CANCELLED,
                actor,
                notes=reason,
                is_public=True,
            )
            order.cancelled_at = utc_now()
            order.cancel_reason = reason
            order.cancelled_by = actor
            await self.publisher.emit(session, events.ORDER_CANCELLED, order_to_dict(order))

        logger.info(
            "order_cancelled",
            order_id=str(order_id),
            reason=reason,
            released_units=released,
            authorized_payments=len(to_void),
            captured_payments=len(captured_ids),
            actor=actor,
        )

        errors: List[Dict[str, Any]] = []
        voided = []
        for payment_id in to_void:
            try:
                await self.payments.void_payment(payment_id, actor=actor)
                voided.append(str(payment_id))
            except CommerceError as e:
                logger.error(
                    "order_cancel_void_failed",
                    order_id=str(order_id),
                    payment_id=str(payment_id),
                    error=e.message,
                )
                errors.append({"payment_id": str(payment_id), "operation": "void", **e.to_dict()})

        refunds = []
        if refund_captured:
            for payment_id in captured_ids:
                try:
                    outcome = await self.refunds.process_refund(
                        payment_id,
                        reason=RefundReason.REQUESTED_BY_CUSTOMER.value,
                        notes=f"Order cancelled: {reason}" if reason else "Order cancelled",
                        actor=actor,
                        idempotency_key=f"refund:cancel:{order_id}:{payment_id}",
                    )
                    refunds.append(outcome.data)
                    outstanding_refund -= outcome.data["amount"]
                except CommerceError as e:
                    logger.error(
                        "order_cancel_refund_failed",
                        order_id=str(order_id),
                        payment_id=str(payment_id),
                        error=e.message,
                    )
                    errors.append(
                        {"payment_id": str(payment_id), "operation": "refund", **e.to_dict()}
                    )

        data = self._cancellation_data(
            await self.get_order(order_id),
            voided,
            refunds,
            outstanding_refund,
            outstanding_refund > 0,
            errors,
        )
        return OperationOutcome(data)

    @staticmethod
    def _cancellation_data(
        order: Dict[str, Any],
        voided: List[str],
        refunds: List[Dict[str, Any]],
        outstanding_refund: int,
        refund_required: bool,
        errors: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            **order,
            "voided_payments": voided,
            "refunds": refunds,
            "refund_required": refund_required,
            "outstanding_refund_amount": outstanding_refund,
            "errors": errors,
        }

    async def update_status(
        self,
        order_id: uuid.UUID,
        to_status: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Move an order to processing, shipped or delivered.

        Raises:
            ValidationError: Unknown status, or one with its own operation
            IllegalTransition: The move is not allowed from the current status
        """
        try:
            target = OrderStatus(to_status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {to_status}", status=to_status)
        if target not in MANUAL_STATUSES:
            raise ValidationError(
                f"Orders move to {target.value} through their own operation",
                status=target.value,
            )

        async with self.db.transaction() as session:
            order = await self._load_order(session, order_id, lock=True)
            previous = await self.recorder.transition(
                session, order, StatusType.ORDER, target, actor, notes=notes, is_public=True
            )
            if previous is None:
                return OperationOutcome(order_to_dict(order), replayed=True)
            if target is OrderStatus.PROCESSING:
                order.processed_at = utc_now()
            elif target is OrderStatus.DELIVERED:
                order.closed_at = utc_now()
            data = order_to_dict(order)
            await self.publisher.emit(
                session,
                events.ORDER_STATUS_CHANGED,
                {**data, "previous_status": previous},
            )
        return OperationOutcome(data)

    async def _load_order(
        self, session: AsyncSession, order_id: uuid.UUID, lock: bool = False
    ) -> Order:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return order
