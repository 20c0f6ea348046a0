"""
Payment lifecycle: create, authorize, capture, void, retry.

No database transaction is open while the gateway is called. Every gateway
operation runs in three steps:
1. Transaction A: lock the payment, validate the transition, claim the
   idempotency key, commit
2. Gateway call with an explicit timeout, same key
3. Transaction B: lock again, apply the outcome, store it under the key,
   record status history and events, commit

A timeout leaves the payment untouched and the key pending without a lease.
Retrying with the same key re-sends it (the gateway deduplicates), and
reconciliation resolves it by asking the gateway what happened.

Gift card and store credit payments settle at checkout in one transaction and
never reach the gateway.
"""
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..database import Database
from ..database.enums import (
    FinancialStatus,
    IdempotencyStatus,
    OrderPaymentStatus,
    OrderStatus,
    PaymentStatus,
    RefundTargetType,
    StatusType,
)
from ..database.models import CAPTURED_PAYMENT_STATUSES, Order, Payment, utc_now
from ..integrations.gateway import GatewayClient, GatewayOutcome, GatewayResult
from ..monitoring.metrics import metrics
from . import events
from .balances import BalanceLedger
from .events import EventPublisher
from .exceptions import (
    CommerceError,
    ErrorCategory,
    GatewayTimeout,
    GatewayUnavailable,
    IllegalTransition,
    InconsistencyError,
    NotFoundError,
    PaymentDeclined,
    RetryLimitExceeded,
    ValidationError,
)
from .idempotency import IdempotencyClaim, IdempotencyManager
from .results import OperationOutcome
from .serializers import order_to_dict, payment_to_dict
from .status_history import StatusHistoryRecorder
from .statuses import assert_payment_transition

logger = structlog.get_logger(__name__)

BALANCE_GATEWAYS = frozenset(
    {RefundTargetType.GIFT_CARD.value, RefundTargetType.STORE_CREDIT.value}
)
# Payments that still count toward what an order owes
OPEN_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.AUTHORIZED.value,
    *CAPTURED_PAYMENT_STATUSES,
)
CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value)
# Order payment statuses a new authorization moves back to authorized
REAUTHORIZABLE_ORDER_STATUSES = (
    OrderPaymentStatus.PENDING.value,
    OrderPaymentStatus.FAILED.value,
    OrderPaymentStatus.CANCELLED.value,
)


@dataclass(frozen=True)
class GatewayStep:
    operation: str
    from_status: PaymentStatus
    to_status: PaymentStatus

    @property
    def idempotency_operation(self) -> str:
        return f"payment.{self.operation}"


AUTHORIZE = GatewayStep("authorize", PaymentStatus.PENDING, PaymentStatus.AUTHORIZED)
CAPTURE = GatewayStep("capture", PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED)
VOID = GatewayStep("void", PaymentStatus.AUTHORIZED, PaymentStatus.CANCELLED)

STEPS = {step.idempotency_operation: step for step in (AUTHORIZE, CAPTURE, VOID)}


def record_reconcile_failure(
    kind: str,
    key: str,
    operation: str,
    error: CommerceError,
    failures: Optional[List[Dict[str, Any]]],
) -> str:
    """Log a pending operation reconciliation could not resolve; returns its resolution."""
    if error.category is ErrorCategory.TRANSIENT:
        logger.warning(
            "reconcile_operation_deferred",
            kind=kind,
            idempotency_key=key,
            operation=operation,
            error=error.message,
        )
        return "unknown"
    metrics.record_inconsistency(error.code)
    logger.critical(
        "reconcile_operation_failed",
        kind=kind,
        idempotency_key=key,
        operation=operation,
        error_code=error.code,
        error=error.message,
        details=error.details,
    )
    if failures is not None:
        failures.append(
            {
                "kind": kind,
                "idempotency_key": key,
                "operation": operation,
                "error_code": error.code,
                "error": error.message,
            }
        )
    return "error"


@dataclass(frozen=True)
class _GatewayRequest:
    payment_id: uuid.UUID
    order_id: uuid.UUID
    amount: int
    currency: str
    gateway_ref: Optional[str]


class PaymentProcessor:
    """
    Payment orchestrator.

    Owns every write to payments.status and the payment axis of the orders it
    touches. Money-moving calls are idempotent end to end: the same key is
    claimed locally and sent to the gateway.
    """

    def __init__(
        self,
        db: Database,
        gateway: GatewayClient,
        idempotency: IdempotencyManager,
        recorder: StatusHistoryRecorder,
        publisher: EventPublisher,
        balances: BalanceLedger,
        max_retry_attempts: int = 3,
        retry_delay_minutes: int = 30,
    ):
        """
        Initialize payment processor.

        Args:
            db: Database handle
            gateway: Gateway client wrapping the configured adapter
            idempotency: Idempotency key manager
            recorder: Status history recorder for order axis writes
            publisher: Outbox for payment events
            balances: Gift card / store credit ledger
            max_retry_attempts: Retries allowed after the first failed attempt
            retry_delay_minutes: Minimum age of a failure before the sweep retries it
        """
        self.db = db
        self.gateway = gateway
        self.idempotency = idempotency
        self.recorder = recorder
        self.publisher = publisher
        self.balances = balances
        self.max_retry_attempts = max_retry_attempts
        self.retry_delay_minutes = retry_delay_minutes

        logger.info("payment_processor_initialized", gateway=gateway.name)

    @staticmethod
    def operation_key(operation: str, payment: Payment) -> str:
        """Default key for a gateway step: payment:{operation}:{payment_id}:{order_id}."""
        return IdempotencyManager.generate_key("payment", operation, payment.id, payment.order_id)

    async def get_payment(self, payment_id: uuid.UUID) -> Dict[str, Any]:
        async with self.db.session() as session:
            payment = await self._load_payment(session, payment_id)
            return payment_to_dict(payment)

    async def list_payments(self, order_id: uuid.UUID) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at)
            )
            return [payment_to_dict(p) for p in result.scalars().all()]

    async def create_payment(
        self,
        order_id: uuid.UUID,
        amount: Optional[int] = None,
        payment_method: Optional[str] = None,
        gateway: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        instrument_reference: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Create a pending payment for an order.

        The payment's idempotency key is unique: the first writer wins and a
        concurrent or repeated call with the same key gets the existing row.

        Args:
            order_id: Order to pay
            amount: Amount in minor units; defaults to what the order still owes
            payment_method: Method label (card, upi, ...)
            gateway: Gateway name; must be the configured gateway
            idempotency_key: Client key; generated when omitted
            instrument_reference: Opaque reference to the payment instrument

        Raises:
            NotFoundError: Order does not exist
            ValidationError: Order is closed or the amount is out of range
        """
        gateway = gateway or self.gateway.name
        if gateway in BALANCE_GATEWAYS:
            raise ValidationError(
                f"{gateway} payments are settled with pay_with_{gateway}", gateway=gateway
            )
        if gateway != self.gateway.name:
            raise ValidationError(
                f"Unknown payment gateway: {gateway}", gateway=gateway, configured=self.gateway.name
            )
        key = idempotency_key or IdempotencyManager.generate_key(
            "payment", "create", order_id, uuid.uuid4().hex
        )

        async with self.db.transaction() as session:
            existing = await self._payment_by_key(session, key)
            if existing is not None:
                return self._creation_replay(existing, order_id)

            order = await self._load_order(session, order_id, lock=True)
            self._ensure_payable(order)
            outstanding = await self._outstanding_amount(session, order)
            amount = outstanding if amount is None else amount
            self._check_amount(order, amount, outstanding)

            payment = Payment(
                id=uuid.uuid4(),
                order_id=order.id,
                amount=amount,
                currency=order.currency,
                status=PaymentStatus.PENDING.value,
                gateway=gateway,
                payment_method=payment_method,
                instrument_reference=instrument_reference,
                idempotency_key=key,
                attempt_number=1,
            )
            try:
                async with session.begin_nested():
                    session.add(payment)
                    await session.flush()
            except IntegrityError:
                existing = await self._payment_by_key(session, key)
                if existing is None:
                    raise
                return self._creation_replay(existing, order_id)

            data = payment_to_dict(payment)

        metrics.record_payment_operation("create", "success")
        logger.info(
            "payment_created",
            payment_id=data["id"],
            order_id=str(order_id),
            amount=amount,
            idempotency_key=key,
        )
        return OperationOutcome(data)

    async def authorize_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """Authorize a pending payment (pending -> authorized)."""
        return await self._run_step(AUTHORIZE, payment_id, idempotency_key, actor)

    async def capture_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Capture an authorized payment.

        Success moves the payment to captured and the order to paid/processing
        once captured payments cover its total. A decline marks the payment
        failed with the gateway's message; it is never retried automatically.

        Raises:
            IllegalTransition: Payment is not authorized
            PaymentDeclined: Gateway declined (replayed for the same key)
            GatewayTimeout: Outcome unknown; retry with the same key
            OperationInProgress: Another caller holds the key
        """
        return await self._run_step(CAPTURE, payment_id, idempotency_key, actor)

    async def void_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """Release an authorization (authorized -> cancelled)."""
        return await self._run_step(VOID, payment_id, idempotency_key, actor)

    async def _run_step(
        self,
        step: GatewayStep,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str],
        actor: Optional[str],
    ) -> OperationOutcome:
        # Transaction A: validate and claim
        async with self.db.transaction() as session:
            payment = await self._load_payment(session, payment_id, lock=True)
            key = idempotency_key or self.operation_key(step.operation, payment)
            claim = await self.idempotency.claim(
                session, key, step.idempotency_operation, str(payment.id)
            )
            if claim.is_replay:
                return self._replay(claim)

            if payment.gateway in BALANCE_GATEWAYS:
                raise ValidationError(
                    f"{payment.gateway} payments settle at checkout",
                    payment_id=str(payment.id),
                )
            if payment.status != step.from_status.value:
                raise IllegalTransition(
                    f"Cannot {step.operation} payment in status {payment.status}",
                    axis="payment",
                    payment_id=str(payment.id),
                    from_status=payment.status,
                    to_status=step.to_status.value,
                )
            if step is not VOID:
                order = await self._load_order(session, payment.order_id)
                self._ensure_payable(order)

            request = _GatewayRequest(
                payment_id=payment.id,
                order_id=payment.order_id,
                amount=payment.amount,
                currency=payment.currency,
                gateway_ref=payment.gateway_transaction_id,
            )

        logger.info(
            "payment_operation_started",
            operation=step.operation,
            payment_id=str(payment_id),
            idempotency_key=key,
            resumed=claim.resumed,
        )

        # Gateway call, outside any transaction
        try:
            result = await self._call_gateway(step, request, key)
        except PaymentDeclined as e:
            await self._settle(step, payment_id, key, None, e.message, actor)
            metrics.record_payment_operation(step.operation, "declined")
            raise PaymentDeclined(
                e.message,
                operation=step.operation,
                payment_id=str(payment_id),
                idempotency_key=key,
            )
        except (GatewayTimeout, GatewayUnavailable):
            async with self.db.transaction() as session:
                await self.idempotency.release(session, key)
            metrics.record_payment_operation(step.operation, "unknown")
            logger.warning(
                "payment_outcome_unknown",
                operation=step.operation,
                payment_id=str(payment_id),
                idempotency_key=key,
            )
            raise

        # Transaction B: apply
        data = await self._settle(step, payment_id, key, result, None, actor)
        metrics.record_payment_operation(step.operation, "success")
        logger.info(
            "payment_operation_completed",
            operation=step.operation,
            payment_id=str(payment_id),
            status=data["status"],
        )
        return OperationOutcome(data)

    async def _call_gateway(
        self, step: GatewayStep, request: _GatewayRequest, key: str
    ) -> GatewayResult:
        if step is AUTHORIZE:
            return await self.gateway.authorize(
                request.amount,
                request.currency,
                key,
                metadata={"payment_id": str(request.payment_id), "order_id": str(request.order_id)},
            )
        if not request.gateway_ref:
            raise InconsistencyError(
                f"Authorized payment {request.payment_id} has no gateway reference",
                payment_id=str(request.payment_id),
            )
        if step is CAPTURE:
            return await self.gateway.capture(
                request.gateway_ref, request.amount, request.currency, key
            )
        return await self.gateway.void(request.gateway_ref, key)

    async def _settle(
        self,
        step: GatewayStep,
        payment_id: uuid.UUID,
        key: str,
        result: Optional[GatewayResult],
        failure_message: Optional[str],
        actor: Optional[str],
    ) -> Dict[str, Any]:
        """Apply a gateway outcome and store it under the key, in one transaction."""
        async with self.db.transaction() as session:
            payment, order = await self._lock_order_and_payment(session, payment_id)
            if result is not None:
                await self._apply_success(session, step, payment, order, result, actor)
                data = payment_to_dict(payment)
                await self.idempotency.complete(session, key, data)
            else:
                await self._apply_failure(session, step, payment, order, failure_message, actor)
                data = payment_to_dict(payment)
                await self.idempotency.fail(session, key, failure_message or "declined", data)
        return data

    async def _apply_success(
        self,
        session: AsyncSession,
        step: GatewayStep,
        payment: Payment,
        order: Order,
        result: GatewayResult,
        actor: Optional[str],
    ) -> None:
        if payment.status == step.to_status.value:
            # A gateway callback got here first
            return
        if payment.status != step.from_status.value:
            metrics.record_inconsistency("payment_state_diverged")
            raise InconsistencyError(
                f"Gateway {step.operation} succeeded for payment {payment.id} "
                f"but it is {payment.status} locally",
                payment_id=str(payment.id),
                operation=step.operation,
                status=payment.status,
            )

        now = utc_now()
        payment.status = step.to_status.value
        payment.gateway_transaction_id = result.gateway_ref
        payment.gateway_response = {
            **(payment.gateway_response or {}),
            step.operation: result.raw_response,
        }

        if step is AUTHORIZE:
            payment.authorized_at = now
            if order.payment_status in REAUTHORIZABLE_ORDER_STATUSES:
                await self._follow_gateway(
                    session,
                    payment,
                    order,
                    OrderPaymentStatus.AUTHORIZED,
                    actor,
                    notes=f"Payment {payment.id} authorized",
                )
            await self.publisher.emit(
                session, events.PAYMENT_AUTHORIZED, self._event_payload(payment, order)
            )
        elif step is CAPTURE:
            payment.captured_at = now
            await self._after_capture(session, payment, order, actor, after_gateway=True)
        else:
            payment.cancelled_at = now
            await session.flush()
            others = await self._has_other_live_payments(session, order, payment)
            if order.payment_status == OrderPaymentStatus.AUTHORIZED.value and not others:
                await self._follow_gateway(
                    session,
                    payment,
                    order,
                    OrderPaymentStatus.CANCELLED,
                    actor,
                    notes=f"Payment {payment.id} voided",
                )
            await self.publisher.emit(
                session, events.PAYMENT_VOIDED, self._event_payload(payment, order)
            )

    async def _apply_failure(
        self,
        session: AsyncSession,
        step: GatewayStep,
        payment: Payment,
        order: Order,
        failure_message: Optional[str],
        actor: Optional[str],
    ) -> None:
        if step is VOID or payment.status != step.from_status.value:
            # A declined void leaves the authorization in place
            return

        payment.status = PaymentStatus.FAILED.value
        payment.failure_message = failure_message
        payment.failed_at = utc_now()
        if order.payment_status in (
            OrderPaymentStatus.PENDING.value,
            OrderPaymentStatus.AUTHORIZED.value,
        ):
            await self.recorder.transition(
                session,
                order,
                StatusType.PAYMENT,
                OrderPaymentStatus.FAILED,
                actor,
                notes=f"Payment {payment.id} {step.operation} declined: {failure_message}",
            )
        await self.publisher.emit(
            session, events.PAYMENT_FAILED, self._event_payload(payment, order)
        )
        logger.warning(
            "payment_declined",
            operation=step.operation,
            payment_id=str(payment.id),
            order_id=str(order.id),
            failure_message=failure_message,
        )

    async def _follow_gateway(
        self,
        session: AsyncSession,
        payment: Payment,
        order: Order,
        to_status: OrderPaymentStatus,
        actor: Optional[str],
        notes: Optional[str] = None,
        is_public: bool = False,
    ) -> bool:
        """
        Move the order payment axis after the gateway has already moved money.

        The gateway outcome is kept on the payment whatever the order says, so
        an order that cannot follow is flagged and left where it is.

        Returns:
            bool: Whether the order moved
        """
        try:
            await self.recorder.transition(
                session,
                order,
                StatusType.PAYMENT,
                to_status,
                actor,
                notes=notes,
                is_public=is_public,
            )
        except IllegalTransition as e:
            error = InconsistencyError(
                f"Order {order.id} cannot follow payment {payment.id}: {e.message}",
                order_id=str(order.id),
                payment_id=str(payment.id),
                **e.details,
            )
            metrics.record_inconsistency("order_payment_status_diverged")
            logger.critical("order_payment_status_diverged", **error.to_dict())
            return False
        return True

    async def _after_capture(
        self,
        session: AsyncSession,
        payment: Payment,
        order: Order,
        actor: Optional[str],
        after_gateway: bool = False,
    ) -> None:
        """
        Move the order to paid once captured payments cover its total.

        Balance tenders roll back on an illegal move. A gateway capture has
        already happened, so there the move is flagged instead.
        """
        await session.flush()
        captured_total = await self._captured_total(session, order.id)
        if captured_total >= order.total_amount:
            if after_gateway:
                if order.payment_status in REAUTHORIZABLE_ORDER_STATUSES:
                    await self._follow_gateway(
                        session, payment, order, OrderPaymentStatus.AUTHORIZED, actor
                    )
                moved = await self._follow_gateway(
                    session,
                    payment,
                    order,
                    OrderPaymentStatus.PAID,
                    actor,
                    notes=f"Payment {payment.id} captured",
                    is_public=True,
                )
            else:
                if order.payment_status in REAUTHORIZABLE_ORDER_STATUSES:
                    await self.recorder.transition(
                        session, order, StatusType.PAYMENT, OrderPaymentStatus.AUTHORIZED, actor
                    )
                await self.recorder.transition(
                    session,
                    order,
                    StatusType.PAYMENT,
                    OrderPaymentStatus.PAID,
                    actor,
                    notes=f"Payment {payment.id} captured",
                    is_public=True,
                )
                moved = True
            if moved and order.status == OrderStatus.PENDING.value:
                await self.recorder.transition(
                    session,
                    order,
                    StatusType.ORDER,
                    OrderStatus.PROCESSING,
                    actor,
                    notes="Payment received",
                    is_public=True,
                )
                order.processed_at = utc_now()
            if moved:
                await self.publisher.emit(
                    session, events.ORDER_PAID, order_to_dict(order, include_items=False)
                )
        else:
            order.financial_status = FinancialStatus.PARTIALLY_PAID.value

        await self.publisher.emit(
            session, events.PAYMENT_CAPTURED, self._event_payload(payment, order)
        )

    async def cancel_open_payments(
        self, session: AsyncSession, order: Order, actor: Optional[str]
    ) -> Tuple[List[uuid.UUID], List[Payment]]:
        """
        Cancel an order's pending payments inside the caller's transaction.

        Authorized payments need a gateway void, which must not run inside a
        transaction, so their ids are returned for the caller to void after
        commit. Captured payments are returned untouched.

        Returns:
            Tuple of (authorized payment ids, captured payments)
        """
        result = await session.execute(
            select(Payment)
            .where(Payment.order_id == order.id)
            .order_by(Payment.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        to_void: List[uuid.UUID] = []
        captured: List[Payment] = []
        now = utc_now()
        for payment in result.scalars().all():
            if payment.status == PaymentStatus.PENDING.value:
                assert_payment_transition(payment.status, PaymentStatus.CANCELLED)
                payment.status = PaymentStatus.CANCELLED.value
                payment.cancelled_at = now
                logger.info(
                    "payment_cancelled",
                    payment_id=str(payment.id),
                    order_id=str(order.id),
                    actor=actor,
                )
            elif payment.status == PaymentStatus.AUTHORIZED.value:
                to_void.append(payment.id)
            elif payment.status in CAPTURED_PAYMENT_STATUSES:
                captured.append(payment)
        return to_void, captured

    async def pay_with_gift_card(
        self,
        order_id: uuid.UUID,
        code: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """
        Settle (part of) an order from a gift card balance.

        Debits the card and records a captured payment in one transaction.
        """
        key = idempotency_key or IdempotencyManager.generate_key(
            "payment", RefundTargetType.GIFT_CARD.value, order_id, code
        )
        async with self.db.transaction() as session:
            existing = await self._payment_by_key(session, key)
            if existing is not None:
                return self._creation_replay(existing, order_id)

            order = await self._load_order(session, order_id, lock=True)
            self._ensure_payable(order)
            card = await self.balances.get_gift_card(session, code)
            if card.currency != order.currency:
                raise ValidationError(
                    f"Gift card {code} is in {card.currency}, order is in {order.currency}",
                    code=code,
                )
            outstanding = await self._outstanding_amount(session, order)
            amount = min(outstanding, card.current_amount) if amount is None else amount
            self._check_amount(order, amount, outstanding)

            payment, created = await self._insert_settled_payment(
                session, order, amount, RefundTargetType.GIFT_CARD.value, code, key
            )
            if not created:
                return self._creation_replay(payment, order_id)
            await self.balances.redeem_gift_card(session, code, amount, order.id)
            await self._after_capture(session, payment, order, actor)
            data = payment_to_dict(payment)

        metrics.record_payment_operation("gift_card", "success")
        logger.info("gift_card_payment_settled", order_id=str(order_id), amount=amount)
        return OperationOutcome(data)

    async def pay_with_store_credit(
        self,
        order_id: uuid.UUID,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OperationOutcome:
        """Settle (part of) an order from the customer's store credit."""
        key = idempotency_key or IdempotencyManager.generate_key(
            "payment", RefundTargetType.STORE_CREDIT.value, order_id
        )
        async with self.db.transaction() as session:
            existing = await self._payment_by_key(session, key)
            if existing is not None:
                return self._creation_replay(existing, order_id)

            order = await self._load_order(session, order_id, lock=True)
            self._ensure_payable(order)
            if not order.customer_id:
                raise ValidationError(
                    "Store credit requires an order placed by a customer", order_id=str(order_id)
                )
            outstanding = await self._outstanding_amount(session, order)
            if amount is None:
                balance = await self.balances.store_credit_balance(session, order.customer_id)
                amount = min(outstanding, balance)
            self._check_amount(order, amount, outstanding)

            payment, created = await self._insert_settled_payment(
                session,
                order,
                amount,
                RefundTargetType.STORE_CREDIT.value,
                order.customer_id,
                key,
            )
            if not created:
                return self._creation_replay(payment, order_id)
            await self.balances.debit_store_credit(
                session, order.customer_id, amount, order.currency, order.id
            )
            await self._after_capture(session, payment, order, actor)
            data = payment_to_dict(payment)

        metrics.record_payment_operation("store_credit", "success")
        logger.info("store_credit_payment_settled", order_id=str(order_id), amount=amount)
        return OperationOutcome(data)

    async def _insert_settled_payment(
        self,
        session: AsyncSession,
        order: Order,
        amount: int,
        source: str,
        reference: str,
        key: str,
    ) -> Tuple[Payment, bool]:
        now = utc_now()
        payment = Payment(
            id=uuid.uuid4(),
            order_id=order.id,
            amount=amount,
            currency=order.currency,
            status=PaymentStatus.CAPTURED.value,
            gateway=source,
            payment_method=source,
            instrument_reference=reference,
            idempotency_key=key,
            attempt_number=1,
            authorized_at=now,
            captured_at=now,
        )
        try:
            async with session.begin_nested():
                session.add(payment)
                await session.flush()
        except IntegrityError:
            existing = await self._payment_by_key(session, key)
            if existing is None:
                raise
            return existing, False
        return payment, True

    async def retry_failed_payment(
        self, payment_id: uuid.UUID, actor: Optional[str] = None
    ) -> OperationOutcome:
        """
        Retry a failed payment as a new attempt.

        The attempt is a new payment row chained to the first one, created
        under the key payment:retry:{root_payment_id}:{attempt}; authorize and
        capture use keys derived from it, so repeating the retry replays it.

        Raises:
            IllegalTransition: Payment is not failed
            RetryLimitExceeded: The attempt budget is used up
        """
        async with self.db.transaction() as session:
            failed = await self._load_payment(session, payment_id, lock=True)
            if failed.status != PaymentStatus.FAILED.value:
                raise IllegalTransition(
                    f"Only failed payments can be retried; payment is {failed.status}",
                    axis="payment",
                    payment_id=str(payment_id),
                    from_status=failed.status,
                )
            if failed.gateway in BALANCE_GATEWAYS:
                raise ValidationError(
                    f"{failed.gateway} payments cannot be retried", payment_id=str(payment_id)
                )
            order = await self._load_order(session, failed.order_id)
            self._ensure_payable(order)
            if failed.attempt_number > self.max_retry_attempts:
                raise RetryLimitExceeded(
                    f"Payment {payment_id} already used {self.max_retry_attempts} retries",
                    payment_id=str(payment_id),
                    attempts=failed.attempt_number,
                    max_retry_attempts=self.max_retry_attempts,
                )

            root_id = failed.parent_payment_id or failed.id
            attempt = failed.attempt_number + 1
            key = IdempotencyManager.generate_key("payment", "retry", root_id, attempt)

            retry = await self._payment_by_key(session, key)
            if retry is None:
                retry = Payment(
                    id=uuid.uuid4(),
                    order_id=failed.order_id,
                    amount=failed.amount,
                    currency=failed.currency,
                    status=PaymentStatus.PENDING.value,
                    gateway=failed.gateway,
                    payment_method=failed.payment_method,
                    instrument_reference=failed.instrument_reference,
                    idempotency_key=key,
                    attempt_number=attempt,
                    parent_payment_id=root_id,
                )
                try:
                    async with session.begin_nested():
                        session.add(retry)
                        await session.flush()
                except IntegrityError:
                    retry = await self._payment_by_key(session, key)
                    if retry is None:
                        raise
            retry_id = retry.id

        logger.info(
            "payment_retry_started",
            payment_id=str(payment_id),
            retry_payment_id=str(retry_id),
            attempt=attempt,
            idempotency_key=key,
        )
        await self.authorize_payment(retry_id, idempotency_key=f"{key}:authorize", actor=actor)
        outcome = await self.capture_payment(
            retry_id, idempotency_key=f"{key}:capture", actor=actor
        )
        metrics.record_payment_operation("retry", "success")
        return OperationOutcome({**outcome.data, "retry_attempt": attempt}, outcome.replayed)

    async def retry_failed_payments(
        self, older_than_minutes: Optional[int] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """
        Retry failed payments whose order is still waiting for money.

        Only the latest attempt of each chain is picked, only once it is older
        than the retry delay and only while the attempt budget lasts.
        """
        delay = self.retry_delay_minutes if older_than_minutes is None else older_than_minutes
        cutoff = utc_now() - timedelta(minutes=delay)
        later = aliased(Payment)

        async with self.db.session() as session:
            stmt = (
                select(Payment.id)
                .join(Order, Order.id == Payment.order_id)
                .where(
                    Payment.status == PaymentStatus.FAILED.value,
                    Payment.gateway == self.gateway.name,
                    Payment.failed_at <= cutoff,
                    Payment.attempt_number <= self.max_retry_attempts,
                    Order.payment_status == OrderPaymentStatus.FAILED.value,
                    Order.status.not_in(CLOSED_ORDER_STATUSES),
                    ~exists().where(
                        later.parent_payment_id
                        == func.coalesce(Payment.parent_payment_id, Payment.id),
                        later.attempt_number > Payment.attempt_number,
                    ),
                )
                .order_by(Payment.failed_at)
                .limit(limit)
            )
            candidates = list((await session.execute(stmt)).scalars().all())

        results = []
        for candidate_id in candidates:
            try:
                outcome = await self.retry_failed_payment(candidate_id, actor="payment_retry_job")
                results.append({"payment_id": str(candidate_id), "success": True, **outcome.data})
            except CommerceError as e:
                logger.warning(
                    "payment_retry_failed",
                    payment_id=str(candidate_id),
                    error_code=e.code,
                    error=e.message,
                )
                results.append(
                    {"payment_id": str(candidate_id), "success": False, "error": e.to_dict()}
                )

        logger.info(
            "payment_retry_sweep_completed",
            candidates=len(candidates),
            succeeded=len([r for r in results if r["success"]]),
        )
        return results

    async def refund_through_gateway(
        self,
        gateway_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        return await self.gateway.refund(gateway_ref, amount, currency, idempotency_key, reason)

    async def lookup_outcome(self, idempotency_key: str) -> Optional[GatewayOutcome]:
        return await self.gateway.lookup(idempotency_key)

    async def apply_gateway_notification(
        self,
        payment_id: uuid.UUID,
        operation: str,
        result: Optional[GatewayResult],
        failure_message: Optional[str] = None,
        actor: Optional[str] = "gateway_callback",
    ) -> str:
        """
        Apply an outcome the gateway pushed to us.

        The outcome is only applied while the payment is still in the step's
        source status, so a repeated or late notification changes nothing.

        Returns:
            str: applied, duplicate or ignored
        """
        step = STEPS[f"payment.{operation}"]
        async with self.db.transaction() as session:
            payment, order = await self._lock_order_and_payment(session, payment_id)
            if payment.gateway in BALANCE_GATEWAYS:
                raise ValidationError(
                    f"{payment.gateway} payments have no gateway notifications",
                    payment_id=str(payment.id),
                )
            if result is not None and payment.status == step.to_status.value:
                return "duplicate"
            if payment.status != step.from_status.value:
                logger.warning(
                    "gateway_notification_ignored",
                    payment_id=str(payment.id),
                    operation=operation,
                    status=payment.status,
                )
                return "ignored"

            if result is not None:
                await self._apply_success(session, step, payment, order, result, actor)
            else:
                await self._apply_failure(session, step, payment, order, failure_message, actor)

        metrics.record_payment_operation(operation, "notified")
        logger.info(
            "gateway_notification_applied",
            payment_id=str(payment_id),
            operation=operation,
            succeeded=result is not None,
        )
        return "applied"

    async def reconcile_pending(self, key: str, operation: str, payment_id: uuid.UUID) -> str:
        """
        Resolve a gateway operation whose outcome was never recorded.

        Returns:
            str: applied, declined, abandoned (the gateway never saw the key)
                or unknown (the gateway could not be asked)
        """
        step = STEPS[operation]
        try:
            outcome = await self.lookup_outcome(key)
        except (GatewayUnavailable, GatewayTimeout) as e:
            logger.warning("payment_reconcile_lookup_failed", idempotency_key=key, error=e.message)
            return "unknown"

        if outcome is None:
            async with self.db.transaction() as session:
                await self.idempotency.abandon(session, key)
            logger.info("payment_operation_abandoned", idempotency_key=key, operation=operation)
            return "abandoned"

        actor = "reconciliation"
        if outcome.succeeded and outcome.result is not None:
            await self._settle(step, payment_id, key, outcome.result, None, actor)
            resolution = "applied"
        else:
            await self._settle(step, payment_id, key, None, outcome.failure_message, actor)
            resolution = "declined"
        logger.info(
            "payment_operation_reconciled",
            idempotency_key=key,
            operation=operation,
            resolution=resolution,
        )
        return resolution

    async def reconcile_pending_operations(
        self, limit: int = 100, failures: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, int]:
        """
        Resolve every stale pending payment operation.

        One key that cannot be resolved does not stop the others: a transient
        failure counts as unknown, anything else as error and is appended to
        failures.
        """
        async with self.db.session() as session:
            pending = await self.idempotency.stale_pending(session, list(STEPS), limit)
            work = [(p.key, p.operation, uuid.UUID(p.resource_id)) for p in pending]

        counts: Dict[str, int] = {}
        for key, operation, payment_id in work:
            try:
                resolution = await self.reconcile_pending(key, operation, payment_id)
            except CommerceError as e:
                resolution = record_reconcile_failure("payment", key, operation, e, failures)
            counts[resolution] = counts.get(resolution, 0) + 1
        return counts

    def _replay(self, claim: IdempotencyClaim) -> OperationOutcome:
        logger.info(
            "payment_operation_replayed",
            operation=claim.operation,
            idempotency_key=claim.key,
            status=claim.status.value,
        )
        if claim.status is IdempotencyStatus.ERROR:
            raise PaymentDeclined(
                claim.error or "declined",
                idempotency_key=claim.key,
                operation=claim.operation,
                replayed=True,
            )
        return OperationOutcome(claim.result or {}, replayed=True)

    @staticmethod
    def _creation_replay(payment: Payment, order_id: uuid.UUID) -> OperationOutcome:
        if payment.order_id != order_id:
            raise ValidationError(
                f"Idempotency key {payment.idempotency_key} belongs to another order",
                idempotency_key=payment.idempotency_key,
            )
        metrics.record_idempotent_replay("payment.create", "database")
        return OperationOutcome(payment_to_dict(payment), replayed=True)

    @staticmethod
    def _ensure_payable(order: Order) -> None:
        if order.status in CLOSED_ORDER_STATUSES:
            raise ValidationError(
                f"Order {order.order_number} is {order.status}",
                order_id=str(order.id),
                status=order.status,
            )

    @staticmethod
    def _check_amount(order: Order, amount: int, outstanding: int) -> None:
        if amount <= 0 or amount > outstanding:
            raise ValidationError(
                f"Payment amount must be within (0, {outstanding}]",
                order_id=str(order.id),
                amount=amount,
                outstanding=outstanding,
            )

    @staticmethod
    def _event_payload(payment: Payment, order: Order) -> Dict[str, Any]:
        return {
            "payment": payment_to_dict(payment),
            "order_id": str(order.id),
            "order_number": order.order_number,
            "order_payment_status": order.payment_status,
        }

    async def _outstanding_amount(self, session: AsyncSession, order: Order) -> int:
        committed = await session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.order_id == order.id, Payment.status.in_(OPEN_PAYMENT_STATUSES)
            )
        )
        return order.total_amount - int(committed or 0)

    async def _captured_total(self, session: AsyncSession, order_id: uuid.UUID) -> int:
        total = await session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.order_id == order_id, Payment.status.in_(CAPTURED_PAYMENT_STATUSES)
            )
        )
        return int(total or 0)

    async def _has_other_live_payments(
        self, session: AsyncSession, order: Order, payment: Payment
    ) -> bool:
        other = await session.scalar(
            select(Payment.id).where(
                Payment.order_id == order.id,
                Payment.id != payment.id,
                Payment.status.in_(
                    (PaymentStatus.AUTHORIZED.value, *CAPTURED_PAYMENT_STATUSES)
                ),
            ).limit(1)
        )
        return other is not None

    async def _payment_by_key(self, session: AsyncSession, key: str) -> Optional[Payment]:
        result = await session.execute(select(Payment).where(Payment.idempotency_key == key))
        return result.scalar_one_or_none()

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

    async def _lock_order_and_payment(
        self, session: AsyncSession, payment_id: uuid.UUID
    ) -> Tuple[Payment, Order]:
        """
        Lock a payment together with its order.

        Every writer that needs both takes the order lock first, the same way
        cancel_order does before it touches the order's payments.
        """
        payment = await self._load_payment(session, payment_id)
        order = await self._load_order(session, payment.order_id, lock=True)
        payment = await self._load_payment(session, payment_id, lock=True)
        return payment, order
