"""
Refund engine.

A refund reserves its amount first: a pending Refund row is committed while
the payment is locked, so concurrent refunds of the same payment can never
exceed what was captured. The money then moves through the refund target
chosen by how the payment was funded, and a second transaction records the
outcome and rolls it up into the payment and order statuses.

Targets:
- GatewayRefundTarget: refund through the payment gateway, same idempotency key
- GiftCardRefundTarget: credit the gift card's transaction chain
- StoreCreditRefundTarget: credit the customer's store credit ledger
"""
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import Database
from ..database.enums import (
    IdempotencyStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
    RefundReason,
    RefundStatus,
    RefundTargetType,
    StatusType,
)
from ..database.models import CAPTURED_PAYMENT_STATUSES, Order, Payment, Refund, utc_now
from ..monitoring.metrics import metrics
from . import events
from .balances import BalanceLedger
from .events import EventPublisher
from .exceptions import (
    CommerceError,
    GatewayTimeout,
    GatewayUnavailable,
    InconsistencyError,
    NotFoundError,
    PaymentDeclined,
    RefundExceedsBalance,
    ValidationError,
)
from .idempotency import IdempotencyManager
from .payment_processor import PaymentProcessor, record_reconcile_failure
from .results import OperationOutcome
from .serializers import order_to_dict, refund_to_dict
from .status_history import StatusHistoryRecorder
from .statuses import assert_payment_transition, derive_financial_status

logger = structlog.get_logger(__name__)

REFUND_OPERATION = "refund.process"
RESERVING_REFUND_STATUSES = (RefundStatus.SUCCESS.value, RefundStatus.PENDING.value)
REFUNDABLE_PAYMENT_STATUSES = (
    PaymentStatus.CAPTURED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
)


@dataclass(frozen=True)
class RefundExecution:
    """What a target reports after moving the money."""

    reference: Optional[str]
    raw_response: Dict[str, Any] = field(default_factory=dict)


class RefundTarget(ABC):
    """Where refunded money goes. Every target must be idempotent per refund."""

    target_type: RefundTargetType

    @abstractmethod
    async def execute(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> RefundExecution:
        """
        Move refund.amount back to the payer.

        Raises:
            PaymentDeclined: The target refused the refund
            GatewayTimeout: Outcome unknown
            GatewayUnavailable: Target could not be reached
        """

    async def lookup(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> Optional[RefundExecution]:
        """
        Report the outcome of an earlier execute(), or None if it never happened.

        Balance targets are idempotent per refund id, so re-running execute is
        their lookup.
        """
        return await self.execute(payment, refund, idempotency_key)


class GatewayRefundTarget(RefundTarget):
    target_type = RefundTargetType.GATEWAY

    def __init__(self, processor: PaymentProcessor):
        self.processor = processor

    async def execute(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> RefundExecution:
        if not payment.gateway_transaction_id:
            raise InconsistencyError(
                f"Captured payment {payment.id} has no gateway reference",
                payment_id=str(payment.id),
            )
        result = await self.processor.refund_through_gateway(
            payment.gateway_transaction_id,
            refund.amount,
            refund.currency,
            idempotency_key,
            reason=refund.reason,
        )
        return RefundExecution(reference=result.gateway_ref, raw_response=result.raw_response)

    async def lookup(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> Optional[RefundExecution]:
        outcome = await self.processor.lookup_outcome(idempotency_key)
        if outcome is None:
            return None
        if not outcome.succeeded or outcome.result is None:
            raise PaymentDeclined(
                outcome.failure_message or "refund declined", refund_id=str(refund.id)
            )
        return RefundExecution(
            reference=outcome.result.gateway_ref, raw_response=outcome.result.raw_response
        )


class GiftCardRefundTarget(RefundTarget):
    target_type = RefundTargetType.GIFT_CARD

    def __init__(self, db: Database, balances: BalanceLedger):
        self.db = db
        self.balances = balances

    async def execute(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> RefundExecution:
        async with self.db.transaction() as session:
            transaction = await self.balances.credit_gift_card(
                session,
                payment.instrument_reference,
                refund.amount,
                refund_id=refund.id,
                order_id=payment.order_id,
            )
            return RefundExecution(
                reference=f"gift_card_transaction:{transaction.id}",
                raw_response={
                    "gift_card": payment.instrument_reference,
                    "balance_after": transaction.balance_after,
                },
            )


class StoreCreditRefundTarget(RefundTarget):
    target_type = RefundTargetType.STORE_CREDIT

    def __init__(self, db: Database, balances: BalanceLedger):
        self.db = db
        self.balances = balances

    async def execute(
        self, payment: Payment, refund: Refund, idempotency_key: str
    ) -> RefundExecution:
        async with self.db.transaction() as session:
            transaction = await self.balances.credit_store_credit(
                session,
                payment.instrument_reference,
                refund.amount,
                refund.currency,
                refund_id=refund.id,
                order_id=payment.order_id,
                notes="Refund credit",
            )
            return RefundExecution(
                reference=f"store_credit_transaction:{transaction.id}",
                raw_response={
                    "customer_id": payment.instrument_reference,
                    "balance_after": transaction.balance_after,
                },
            )


def target_type_for(payment: Payment) -> RefundTargetType:
    """Refunds go back the way the payment came in."""
    try:
        return RefundTargetType(payment.gateway)
    except ValueError:
        return RefundTargetType.GATEWAY


class RefundEngine:
    """Validates, reserves, executes and settles refunds."""

    def __init__(
        self,
        db: Database,
        idempotency: IdempotencyManager,
        recorder: StatusHistoryRecorder,
        publisher: EventPublisher,
        targets: Mapping[RefundTargetType, RefundTarget],
    ):
        self.db = db
        self.idempotency = idempotency
        self.recorder = recorder
        self.publisher = publisher
        self.targets = dict(targets)

    async def refundable_balance(self, payment_id: uuid.UUID) -> int:
        async with self.db.session() as session:
            payment = await self._load_payment(session, payment_id)
            return await self.refundable_in(session, payment)

    async def list_refunds(self, order_id: uuid.UUID) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at)
            )
            return [refund_to_dict(r) for r in result.scalars().all()]

    async def get_refund(self, refund_id: uuid.UUID) -> Dict[str, Any]:
        async with self.db.session() as session:
            refund = await self._load_refund(session, refund_id)
            return refund_to_dict(refund)

    async def process_refund(
        self,
        payment_id: uuid.UUID,
        amount: Optional[int] = None,
        reason: str = RefundReason.REQUESTED_BY_CUSTOMER.value,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Refund (part of) a captured payment.

        Args:
            payment_id: Captured payment to refund
            amount: Minor units; defaults to the whole remaining balance
            reason: One of RefundReason
            notes: Free-form note
            actor: Who requested it
            idempotency_key: Client key; the same key replays the same refund

        Raises:
            RefundExceedsBalance: amount is not within (0, refundable]
            ValidationError: Payment is not captured or the reason is unknown
            PaymentDeclined: The target refused the refund
            GatewayTimeout: Outcome unknown; retry with the same key
        """
        try:
            reason = RefundReason(reason).value
        except ValueError:
            raise ValidationError(f"Unknown refund reason: {reason}", reason=reason)

        # Transaction A: reserve the amount
        async with self.db.transaction() as session:
            payment = await self._load_payment(session, payment_id, lock=True)
            key = idempotency_key or IdempotencyManager.generate_key(
                "refund", "create", payment.id, uuid.uuid4().hex
            )
            claim = await self.idempotency.claim(session, key, REFUND_OPERATION, str(payment.id))
            if claim.is_replay:
                if claim.status is IdempotencyStatus.ERROR:
                    raise PaymentDeclined(
                        claim.error or "refund declined", idempotency_key=key, replayed=True
                    )
                return OperationOutcome(claim.result or {}, replayed=True)

            if claim.resumed:
                refund = await self._refund_by_key(session, key)
                if refund is None:
                    raise InconsistencyError(
                        f"Refund claim {key} has no refund row", idempotency_key=key
                    )
            else:
                refund = await self._reserve(
                    session, payment, amount, reason, notes, actor, key
                )

        target_type = RefundTargetType(refund.target)
        target = self.targets[target_type]
        logger.info(
            "refund_started",
            refund_id=str(refund.id),
            payment_id=str(payment_id),
            amount=refund.amount,
            target=target_type.value,
            resumed=claim.resumed,
        )

        try:
            execution = await target.execute(payment, refund, key)
        except PaymentDeclined as e:
            await self._settle_failure(refund.id, key, e.message)
            metrics.record_refund(target_type.value, "failure", refund.amount)
            raise PaymentDeclined(
                e.message, refund_id=str(refund.id), payment_id=str(payment_id)
            )
        except (GatewayTimeout, GatewayUnavailable):
            async with self.db.transaction() as session:
                await self.idempotency.release(session, key)
            metrics.record_refund(target_type.value, "unknown", refund.amount)
            logger.warning("refund_outcome_unknown", refund_id=str(refund.id), idempotency_key=key)
            raise

        data = await self.settle_success(refund.id, execution, actor)
        metrics.record_refund(target_type.value, "success", refund.amount)
        return OperationOutcome(data)

    async def _reserve(
        self,
        session: AsyncSession,
        payment: Payment,
        amount: Optional[int],
        reason: str,
        notes: Optional[str],
        actor: Optional[str],
        key: str,
    ) -> Refund:
        if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
            raise ValidationError(
                f"Cannot refund payment in status {payment.status}",
                payment_id=str(payment.id),
                status=payment.status,
            )
        refundable = await self.refundable_in(session, payment)
        amount = refundable if amount is None else amount
        if amount <= 0 or amount > refundable:
            raise RefundExceedsBalance(
                f"Refund amount {amount} must be within (0, {refundable}]",
                payment_id=str(payment.id),
                amount=amount,
                refundable=refundable,
            )

        refund = Refund(
            id=uuid.uuid4(),
            order_id=payment.order_id,
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            reason=reason,
            notes=notes,
            status=RefundStatus.PENDING.value,
            target=target_type_for(payment).value,
            idempotency_key=key,
            created_by=actor,
        )
        session.add(refund)
        await session.flush()
        await self.publisher.emit(session, events.REFUND_CREATED, refund_to_dict(refund))
        return refund

    async def settle_success(
        self,
        refund_id: uuid.UUID,
        execution: RefundExecution,
        actor: Optional[str],
    ) -> Dict[str, Any]:
        """
        Record a completed refund and roll it up into payment and order statuses.

        Repeating it for an already successful refund only returns its data.
        """
        async with self.db.transaction() as session:
            # lock order: order, refund, payment
            order_id = (await self._load_refund(session, refund_id)).order_id
            order = await self._load_order(session, order_id)
            refund = await self._load_refund(session, refund_id, lock=True)
            payment = await self._load_payment(session, refund.payment_id, lock=True)
            if refund.status == RefundStatus.SUCCESS.value:
                data = await self._result(session, refund, payment)
                await self.idempotency.complete(session, refund.idempotency_key, data)
                return data
            if refund.status != RefundStatus.PENDING.value:
                metrics.record_inconsistency("refund_state_diverged")
                raise InconsistencyError(
                    f"Refund {refund.id} succeeded externally but is {refund.status} locally",
                    refund_id=str(refund.id),
                    status=refund.status,
                )

            refund.status = RefundStatus.SUCCESS.value
            refund.gateway_refund_id = execution.reference
            refund.gateway_response = execution.raw_response
            refund.processed_at = utc_now()
            await session.flush()

            refunded = await self._refunded_total(session, payment.id)
            new_status = (
                PaymentStatus.REFUNDED
                if refunded >= payment.amount
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            payment.status = assert_payment_transition(payment.status, new_status).value
            await session.flush()
            await self._roll_up_order(session, order, actor)

            data = await self._result(session, refund, payment)
            await self.publisher.emit(session, events.REFUND_PROCESSED, data)
            await self.idempotency.complete(session, refund.idempotency_key, data)

        logger.info(
            "refund_completed",
            refund_id=str(refund_id),
            amount=data["amount"],
            payment_status=data["payment_status"],
        )
        return data

    async def _settle_failure(self, refund_id: uuid.UUID, key: str, message: str) -> None:
        async with self.db.transaction() as session:
            refund = await self._load_refund(session, refund_id, lock=True)
            if refund.status == RefundStatus.SUCCESS.value:
                metrics.record_inconsistency("refund_state_diverged")
                raise InconsistencyError(
                    f"Refund {refund.id} failed externally but succeeded locally",
                    refund_id=str(refund.id),
                    failure_message=message,
                )
            if refund.status != RefundStatus.PENDING.value:
                return
            refund.status = RefundStatus.FAILURE.value
            refund.failure_message = message
            refund.processed_at = utc_now()
            await self.publisher.emit(session, events.REFUND_FAILED, refund_to_dict(refund))
            await self.idempotency.fail(session, key, message, refund_to_dict(refund))
        logger.warning("refund_declined", refund_id=str(refund_id), failure_message=message)

    async def settle_failure(self, refund_id: uuid.UUID, message: str) -> None:
        """Record a refund the target reported as failed (e.g. via a callback)."""
        async with self.db.session() as session:
            refund = await self._load_refund(session, refund_id)
            key = refund.idempotency_key
        await self._settle_failure(refund_id, key, message)

    async def _cancel(self, refund_id: uuid.UUID, key: str) -> None:
        """Drop a pending refund that never reached its target; frees its amount."""
        async with self.db.transaction() as session:
            refund = await self._load_refund(session, refund_id, lock=True)
            if refund.status == RefundStatus.PENDING.value:
                refund.status = RefundStatus.CANCELLED.value
                refund.processed_at = utc_now()
            await self.idempotency.abandon(session, key)
        logger.info("refund_cancelled", refund_id=str(refund_id), idempotency_key=key)

    async def _roll_up_order(
        self, session: AsyncSession, order: Order, actor: Optional[str]
    ) -> None:
        result = await session.execute(
            select(Payment.status).where(
                Payment.order_id == order.id, Payment.status.in_(CAPTURED_PAYMENT_STATUSES)
            )
        )
        statuses = list(result.scalars().all())
        fully_refunded = bool(statuses) and all(
            status == PaymentStatus.REFUNDED.value for status in statuses
        )
        # A partly paid order never reached paid, so refunding its tender leaves it open
        was_paid = order.payment_status in (
            OrderPaymentStatus.PAID.value,
            OrderPaymentStatus.PARTIALLY_REFUNDED.value,
        )

        if was_paid:
            await self.recorder.transition(
                session,
                order,
                StatusType.PAYMENT,
                (
                    OrderPaymentStatus.REFUNDED
                    if fully_refunded
                    else OrderPaymentStatus.PARTIALLY_REFUNDED
                ),
                actor,
                notes="Refund processed",
                is_public=True,
            )
        elif fully_refunded:
            # nothing captured remains
            order.financial_status = derive_financial_status(order.payment_status).value
        if was_paid and fully_refunded and order.status != OrderStatus.REFUNDED.value:
            await self.recorder.transition(
                session,
                order,
                StatusType.ORDER,
                OrderStatus.REFUNDED,
                actor,
                notes="All payments refunded",
                is_public=True,
            )
            await self.publisher.emit(
                session, events.ORDER_REFUNDED, order_to_dict(order, include_items=False)
            )

    async def reconcile_pending(self, key: str) -> str:
        """
        Resolve a refund whose outcome was never recorded.

        Returns:
            str: applied, declined, abandoned or unknown
        """
        async with self.db.session() as session:
            refund = await self._refund_by_key(session, key)
            if refund is not None:
                payment = await self._load_payment(session, refund.payment_id)

        if refund is None:
            async with self.db.transaction() as session:
                await self.idempotency.abandon(session, key)
            return "abandoned"

        target = self.targets[RefundTargetType(refund.target)]
        try:
            execution = await target.lookup(payment, refund, key)
        except PaymentDeclined as e:
            await self._settle_failure(refund.id, key, e.message)
            return "declined"
        except (GatewayUnavailable, GatewayTimeout) as e:
            logger.warning("refund_reconcile_lookup_failed", idempotency_key=key, error=e.message)
            return "unknown"

        if execution is None:
            await self._cancel(refund.id, key)
            return "abandoned"
        await self.settle_success(refund.id, execution, "reconciliation")
        return "applied"

    async def reconcile_pending_operations(
        self, limit: int = 100, failures: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, int]:
        async with self.db.session() as session:
            pending = await self.idempotency.stale_pending(session, [REFUND_OPERATION], limit)
            keys = [p.key for p in pending]

        counts: Dict[str, int] = {}
        for key in keys:
            try:
                resolution = await self.reconcile_pending(key)
            except CommerceError as e:
                resolution = record_reconcile_failure("refund", key, REFUND_OPERATION, e, failures)
            counts[resolution] = counts.get(resolution, 0) + 1
        return counts

    async def _result(
        self, session: AsyncSession, refund: Refund, payment: Payment
    ) -> Dict[str, Any]:
        return {
            **refund_to_dict(refund),
            "payment_status": payment.status,
            "refundable_balance": await self.refundable_in(session, payment),
        }

    async def refundable_in(self, session: AsyncSession, payment: Payment) -> int:
        reserved = await session.scalar(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.payment_id == payment.id, Refund.status.in_(RESERVING_REFUND_STATUSES)
            )
        )
        return payment.amount - int(reserved or 0)

    async def _refunded_total(self, session: AsyncSession, payment_id: uuid.UUID) -> int:
        total = await session.scalar(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.payment_id == payment_id, Refund.status == RefundStatus.SUCCESS.value
            )
        )
        return int(total or 0)

    async def _refund_by_key(self, session: AsyncSession, key: str) -> Optional[Refund]:
        result = await session.execute(
            select(Refund)
            .where(Refund.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_refund(
        self, session: AsyncSession, refund_id: uuid.UUID, lock: bool = False
    ) -> Refund:
        stmt = (
            select(Refund)
            .where(Refund.id == refund_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        refund = (await session.execute(stmt)).scalar_one_or_none()
        if refund is None:
            raise NotFoundError(f"Refund {refund_id} not found", refund_id=str(refund_id))
        return refund

    async def _load_payment(
        self, session: AsyncSession, payment_id: uuid.UUID, lock: bool = False
    ) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        payment = (await session.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found", payment_id=str(payment_id))
        return payment

    async def _load_order(self, session: AsyncSession, order_id: uuid.UUID) -> Order:
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return order
