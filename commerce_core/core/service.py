"""
Commerce service: the action surface over the core components.

Builds every component from settings around one Database handle and turns
each call into an ActionResult. Component errors become typed failures;
anything else propagates.
"""
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..config import Settings
from ..database import Database, DatabaseUnavailable
from ..database.enums import AdjustmentType, ReferenceType, RefundTargetType
from ..integrations.gateway import GatewayClient, PaymentGateway
from ..integrations.gateway_callbacks import GatewayCallbackHandler
from ..monitoring.logging import action_context
from ..monitoring.metrics import metrics
from .balances import BalanceLedger
from .events import EventPublisher
from .exceptions import CommerceError, ConcurrentModification, TransientError, ValidationError
from .idempotency import IdempotencyManager
from .inventory import InventoryLedger, StockAdjustment
from .orders import OrderDraft, OrderStateMachine
from .payment_processor import PaymentProcessor
from .pricing import CodeTableDiscount, DiscountRule, FlatRateTax, FlatTableShipping, PricingEngine
from .reconciliation import ReconciliationEngine
from .refunds import (
    GatewayRefundTarget,
    GiftCardRefundTarget,
    RefundEngine,
    StoreCreditRefundTarget,
)
from .results import ActionResult, OperationOutcome
from .serializers import (
    adjustment_to_dict,
    gift_card_to_dict,
    gift_card_transaction_to_dict,
    stock_level_to_dict,
    store_credit_transaction_to_dict,
)
from .status_history import StatusHistoryRecorder
from .webhooks import WebhookDeliveryEngine

logger = structlog.get_logger(__name__)


def _adjustment_type(value: str) -> AdjustmentType:
    try:
        return AdjustmentType(value)
    except ValueError:
        raise ValidationError(f"Unknown adjustment type: {value}", adjustment_type=value)


class CommerceService:
    """
    Entry point used by the API and the workers.

    Every public coroutine returns an ActionResult: success with data (and
    replayed=True for an idempotent repeat), or failure carrying the error
    category and code.
    """

    def __init__(
        self,
        db: Database,
        settings: Settings,
        gateway_adapter: Optional[PaymentGateway] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        redis_client: Optional[aioredis.Redis] = None,
        worker_id: Optional[str] = None,
    ):
        """
        Wire the components.

        Args:
            db: Database handle shared by every component
            settings: Application settings
            gateway_adapter: Adapter instance; loaded from settings when omitted
            http_client: Client for webhook deliveries
            redis_client: Client for the idempotency cache tier
            worker_id: Name recorded on claimed webhook deliveries
        """
        self.db = db
        self.settings = settings
        self.gateway = GatewayClient.from_settings(settings, adapter=gateway_adapter)
        self.idempotency = IdempotencyManager.from_settings(settings, redis_client=redis_client)
        self.recorder = StatusHistoryRecorder()
        self.publisher = EventPublisher()
        self.balances = BalanceLedger()
        self.inventory = InventoryLedger()
        self.pricing = PricingEngine(
            CodeTableDiscount(
                {code: DiscountRule(**rule) for code, rule in settings.discount_rules.items()}
            ),
            FlatRateTax(settings.tax_rate_bps),
            FlatTableShipping(settings.shipping_rates),
        )
        self.payments = PaymentProcessor(
            db,
            self.gateway,
            self.idempotency,
            self.recorder,
            self.publisher,
            self.balances,
            max_retry_attempts=settings.payment_retry_max_attempts,
            retry_delay_minutes=settings.payment_retry_delay_minutes,
        )
        self.refunds = RefundEngine(
            db,
            self.idempotency,
            self.recorder,
            self.publisher,
            {
                RefundTargetType.GATEWAY: GatewayRefundTarget(self.payments),
                RefundTargetType.GIFT_CARD: GiftCardRefundTarget(db, self.balances),
                RefundTargetType.STORE_CREDIT: StoreCreditRefundTarget(db, self.balances),
            },
        )
        self.orders = OrderStateMachine(
            db,
            self.inventory,
            self.pricing,
            self.idempotency,
            self.recorder,
            self.publisher,
            self.payments,
            self.refunds,
            default_currency=settings.default_currency,
        )
        self.webhooks = WebhookDeliveryEngine.from_settings(
            db, settings, http_client=http_client, worker_id=worker_id
        )
        self.reconciliation = ReconciliationEngine(
            db, self.inventory, self.payments, self.refunds, self.idempotency
        )
        self.callbacks = GatewayCallbackHandler(
            db, self.idempotency, self.payments, self.refunds, settings.gateway_callback_secret
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "CommerceService":
        return cls(Database.from_settings(settings), settings, **kwargs)

    async def startup(self) -> None:
        """
        Raises:
            DatabaseUnavailable: The database cannot be reached
        """
        await self.db.ping()
        logger.info(
            "commerce_service_started",
            gateway=self.gateway.name,
            dialect=self.db.dialect,
            cache_enabled=self.idempotency.redis_client is not None,
        )

    async def shutdown(self) -> None:
        await self.webhooks.close()
        await self.idempotency.close()
        await self.db.dispose()
        logger.info("commerce_service_stopped")

    async def _run(self, action: str, operation: Callable[[], Awaitable[Any]]) -> ActionResult:
        start = time.perf_counter()
        with action_context(action):
            try:
                try:
                    value = await operation()
                except StaleDataError as e:
                    raise ConcurrentModification(
                        "Row was modified by a concurrent transaction", action=action
                    ) from e
                except (OperationalError, DatabaseUnavailable) as e:
                    raise TransientError(f"Database error: {e}", action=action) from e
            except CommerceError as e:
                metrics.record_order_action(
                    action, e.category.value, time.perf_counter() - start
                )
                logger.info(
                    "action_failed",
                    error_code=e.code,
                    error_category=e.category.value,
                    error=e.message,
                )
                return ActionResult.failure(e)

        if isinstance(value, OperationOutcome):
            result = ActionResult.ok(value.data, replayed=value.replayed)
        else:
            result = ActionResult.ok(value)
        metrics.record_order_action(
            action, "replayed" if result.replayed else "success", time.perf_counter() - start
        )
        return result

    # Orders

    async def create_order(
        self,
        draft: OrderDraft,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "create_order", lambda: self.orders.create_order(draft, idempotency_key, actor)
        )

    async def get_order(self, order_id: uuid.UUID) -> ActionResult:
        return await self._run("get_order", lambda: self.orders.get_order(order_id))

    async def get_order_by_number(self, order_number: str) -> ActionResult:
        return await self._run(
            "get_order", lambda: self.orders.get_order_by_number(order_number)
        )

    async def order_history(self, order_id: uuid.UUID, public_only: bool = False) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            rows = await self.orders.history(order_id, public_only)
            return {"order_id": str(order_id), "history": rows}

        return await self._run("order_history", operation)

    async def mark_fulfilled(
        self,
        order_id: uuid.UUID,
        item_quantities: Optional[Mapping[str, int]] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "mark_fulfilled",
            lambda: self.orders.mark_fulfilled(order_id, item_quantities, actor),
        )

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
        refund_captured: bool = False,
    ) -> ActionResult:
        return await self._run(
            "cancel_order",
            lambda: self.orders.cancel_order(order_id, reason, actor, refund_captured),
        )

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        to_status: str,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "update_order_status",
            lambda: self.orders.update_status(order_id, to_status, actor, notes),
        )

    # Payments

    async def create_payment(
        self,
        order_id: uuid.UUID,
        amount: Optional[int] = None,
        payment_method: Optional[str] = None,
        gateway: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        instrument_reference: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "create_payment",
            lambda: self.payments.create_payment(
                order_id, amount, payment_method, gateway, idempotency_key, instrument_reference
            ),
        )

    async def get_payment(self, payment_id: uuid.UUID) -> ActionResult:
        return await self._run("get_payment", lambda: self.payments.get_payment(payment_id))

    async def list_payments(self, order_id: uuid.UUID) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            payments = await self.payments.list_payments(order_id)
            return {"order_id": str(order_id), "payments": payments}

        return await self._run("list_payments", operation)

    async def authorize_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "authorize_payment",
            lambda: self.payments.authorize_payment(payment_id, idempotency_key, actor),
        )

    async def capture_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "capture_payment",
            lambda: self.payments.capture_payment(payment_id, idempotency_key, actor),
        )

    async def void_payment(
        self,
        payment_id: uuid.UUID,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "void_payment",
            lambda: self.payments.void_payment(payment_id, idempotency_key, actor),
        )

    async def retry_failed_payment(
        self, payment_id: uuid.UUID, actor: Optional[str] = None
    ) -> ActionResult:
        return await self._run(
            "retry_failed_payment", lambda: self.payments.retry_failed_payment(payment_id, actor)
        )

    async def pay_with_gift_card(
        self,
        order_id: uuid.UUID,
        code: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "pay_with_gift_card",
            lambda: self.payments.pay_with_gift_card(
                order_id, code, amount, idempotency_key, actor
            ),
        )

    async def pay_with_store_credit(
        self,
        order_id: uuid.UUID,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "pay_with_store_credit",
            lambda: self.payments.pay_with_store_credit(order_id, amount, idempotency_key, actor),
        )

    # Refunds

    async def process_refund(
        self,
        payment_id: uuid.UUID,
        amount: Optional[int] = None,
        reason: str = "requested_by_customer",
        notes: Optional[str] = None,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ActionResult:
        return await self._run(
            "process_refund",
            lambda: self.refunds.process_refund(
                payment_id, amount, reason, notes, actor, idempotency_key
            ),
        )

    async def get_refund(self, refund_id: uuid.UUID) -> ActionResult:
        return await self._run("get_refund", lambda: self.refunds.get_refund(refund_id))

    async def list_refunds(self, order_id: uuid.UUID) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            return {"order_id": str(order_id), "refunds": await self.refunds.list_refunds(order_id)}

        return await self._run("list_refunds", operation)

    async def refundable_balance(self, payment_id: uuid.UUID) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            balance = await self.refunds.refundable_balance(payment_id)
            return {"payment_id": str(payment_id), "refundable_amount": balance}

        return await self._run("refundable_balance", operation)

    # Inventory

    async def create_stock_level(
        self,
        variant_id: str,
        location_id: str,
        quantity: int = 0,
        reorder_point: Optional[int] = None,
        reorder_quantity: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                stock = await self.inventory.create_stock_level(
                    session,
                    variant_id,
                    location_id,
                    quantity,
                    reorder_point=reorder_point,
                    reorder_quantity=reorder_quantity,
                    created_by=actor,
                )
                return stock_level_to_dict(stock)

        return await self._run("create_stock_level", operation)

    async def get_stock_level(self, variant_id: str, location_id: str) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.session() as session:
                stock = await self.inventory.require_stock_level(session, variant_id, location_id)
                return stock_level_to_dict(stock)

        return await self._run("get_stock_level", operation)

    async def adjust_stock(
        self,
        variant_id: str,
        location_id: str,
        delta: int,
        adjustment_type: str,
        reason: Optional[str] = None,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            kind = _adjustment_type(adjustment_type)
            async with self.db.transaction() as session:
                adjustment = await self.inventory.adjust(
                    session,
                    variant_id,
                    location_id,
                    delta,
                    kind,
                    reference_id=reference_id,
                    reason=reason,
                    reference_type=ReferenceType.ADJUSTMENT,
                    notes=notes,
                    created_by=actor,
                )
                await session.flush()
                stock = await self.inventory.require_stock_level(session, variant_id, location_id)
                return {
                    "adjustment": adjustment_to_dict(adjustment),
                    "stock_level": stock_level_to_dict(stock),
                }

        return await self._run("adjust_stock", operation)

    async def adjust_stock_many(
        self,
        adjustments: List[Dict[str, Any]],
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        """
        Apply a batch of adjustments in one transaction.

        Each entry has variant_id, location_id, quantity (signed),
        adjustment_type and an optional reason. Nothing is applied unless
        every entry is.
        """
        async def operation() -> Dict[str, Any]:
            entries = [
                StockAdjustment(
                    variant_id=entry["variant_id"],
                    location_id=entry["location_id"],
                    delta=entry["quantity"],
                    adjustment_type=_adjustment_type(entry["adjustment_type"]),
                    reason=entry.get("reason"),
                )
                for entry in adjustments
            ]
            async with self.db.transaction() as session:
                rows = await self.inventory.adjust_many(
                    session, entries, reason=reason, created_by=actor
                )
                await session.flush()
                return {
                    "applied": len(rows),
                    "adjustments": [adjustment_to_dict(row) for row in rows],
                }

        return await self._run("adjust_stock_many", operation)

    async def set_stock_quantity(
        self,
        variant_id: str,
        location_id: str,
        quantity: int,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                adjustment = await self.inventory.set_quantity(
                    session, variant_id, location_id, quantity, reason=reason, created_by=actor
                )
                await session.flush()
                stock = await self.inventory.require_stock_level(session, variant_id, location_id)
                return {
                    "adjustment": adjustment_to_dict(adjustment) if adjustment else None,
                    "stock_level": stock_level_to_dict(stock),
                }

        return await self._run("set_stock_quantity", operation)

    async def update_reorder_settings(
        self,
        variant_id: str,
        location_id: str,
        reorder_point: Optional[int] = None,
        reorder_quantity: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                stock = await self.inventory.update_reorder_settings(
                    session,
                    variant_id,
                    location_id,
                    reorder_point=reorder_point,
                    reorder_quantity=reorder_quantity,
                    created_by=actor,
                )
                return stock_level_to_dict(stock)

        return await self._run("update_reorder_settings", operation)

    async def transfer_stock(
        self,
        variant_id: str,
        from_location_id: str,
        to_location_id: str,
        quantity: int,
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                rows = await self.inventory.transfer(
                    session,
                    variant_id,
                    from_location_id,
                    to_location_id,
                    quantity,
                    reference_id=reference_id,
                    created_by=actor,
                )
                await session.flush()
                return {"adjustments": [adjustment_to_dict(row) for row in rows]}

        return await self._run("transfer_stock", operation)

    async def stock_adjustments(self, variant_id: str, location_id: str) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.session() as session:
                await self.inventory.require_stock_level(session, variant_id, location_id)
                rows = await self.inventory.list_adjustments(session, variant_id, location_id)
                return {
                    "variant_id": variant_id,
                    "location_id": location_id,
                    "adjustments": [adjustment_to_dict(row) for row in rows],
                }

        return await self._run("stock_adjustments", operation)

    async def reconcile_stock(
        self, variant_id: str, location_id: str, seed: int = 0
    ) -> ActionResult:
        """Replay one ledger; a mismatch is reported in the data, not raised."""

        async def operation() -> Dict[str, Any]:
            async with self.db.session() as session:
                report = await self.inventory.reconcile(session, variant_id, location_id, seed)
            if not report.matches:
                metrics.record_inconsistency("ledger_mismatch")
                logger.critical("inventory_ledger_mismatch", **report.to_dict())
            return report.to_dict()

        return await self._run("reconcile_stock", operation)

    # Gift cards and store credit

    async def issue_gift_card(
        self,
        code: str,
        amount: int,
        currency: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                card = await self.balances.issue_gift_card(
                    session, code, amount, currency or self.settings.default_currency, expires_at
                )
                return gift_card_to_dict(card)

        return await self._run("issue_gift_card", operation)

    async def get_gift_card(self, code: str) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.session() as session:
                card = await self.balances.get_gift_card(session, code)
                transactions = await self.balances.gift_card_transactions(session, code)
                return {
                    **gift_card_to_dict(card),
                    "transactions": [gift_card_transaction_to_dict(t) for t in transactions],
                }

        return await self._run("get_gift_card", operation)

    async def credit_store_credit(
        self,
        customer_id: str,
        amount: int,
        currency: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.transaction() as session:
                transaction = await self.balances.credit_store_credit(
                    session,
                    customer_id,
                    amount,
                    currency or self.settings.default_currency,
                    notes=notes,
                )
                return store_credit_transaction_to_dict(transaction)

        return await self._run("credit_store_credit", operation)

    async def store_credit(self, customer_id: str) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            async with self.db.session() as session:
                balance = await self.balances.store_credit_balance(session, customer_id)
                transactions = await self.balances.store_credit_transactions(session, customer_id)
                return {
                    "customer_id": customer_id,
                    "balance": balance,
                    "transactions": [store_credit_transaction_to_dict(t) for t in transactions],
                }

        return await self._run("store_credit", operation)

    # Webhooks

    async def register_webhook(
        self,
        url: str,
        name: str,
        events: Sequence[str],
        secret: Optional[str] = None,
        description: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = 3,
        timeout_seconds: int = 30,
    ) -> ActionResult:
        return await self._run(
            "register_webhook",
            lambda: self.webhooks.register_webhook(
                url, name, events, secret, description, headers, max_retries, timeout_seconds
            ),
        )

    async def set_webhook_active(self, webhook_id: uuid.UUID, is_active: bool) -> ActionResult:
        return await self._run(
            "set_webhook_active", lambda: self.webhooks.set_active(webhook_id, is_active)
        )

    async def list_deliveries(
        self,
        webhook_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            rows = await self.webhooks.list_deliveries(
                webhook_id, status, event_type, limit, offset
            )
            return {"deliveries": rows, "limit": limit, "offset": offset}

        return await self._run("list_deliveries", operation)

    async def list_dead_letters(self, limit: int = 100) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            return {"deliveries": await self.webhooks.list_dead_letters(limit)}

        return await self._run("list_dead_letters", operation)

    async def deliver_webhook(self, delivery_id: uuid.UUID) -> ActionResult:
        return await self._run("deliver_webhook", lambda: self.webhooks.deliver_now(delivery_id))

    async def cancel_delivery(self, delivery_id: uuid.UUID) -> ActionResult:
        return await self._run("cancel_delivery", lambda: self.webhooks.cancel(delivery_id))

    async def requeue_delivery(self, delivery_id: uuid.UUID) -> ActionResult:
        return await self._run("requeue_delivery", lambda: self.webhooks.requeue(delivery_id))

    async def sweep_webhooks(self, limit: Optional[int] = None) -> ActionResult:
        return await self._run("sweep_webhooks", lambda: self.webhooks.sweep(limit))

    # Background maintenance

    async def reconcile(self, pending_limit: int = 100) -> ActionResult:
        return await self._run("reconcile", lambda: self.reconciliation.run(pending_limit))

    async def retry_failed_payments(
        self, older_than_minutes: Optional[int] = None, limit: int = 50
    ) -> ActionResult:
        async def operation() -> Dict[str, Any]:
            results = await self.payments.retry_failed_payments(older_than_minutes, limit)
            return {"retried": len(results), "results": results}

        return await self._run("retry_failed_payments", operation)

    # Gateway notifications

    async def handle_gateway_callback(self, body: bytes, signature: Optional[str]) -> ActionResult:
        return await self._run(
            "gateway_callback", lambda: self.callbacks.handle(body, signature)
        )
