"""
Reconciliation engine for detecting and resolving drift.

Runs periodically to:
- Resolve gateway operations whose outcome was never recorded
- Replay every stock ledger and compare it with on-hand quantity
- Re-check every order's totals
- Purge expired idempotency keys

Discrepancies are reported and counted, never corrected.
"""
import time
from typing import Any, Dict, List

import structlog
from sqlalchemy import select

from ..database import Database
from ..database.models import Order, utc_now
from ..monitoring.metrics import metrics
from .exceptions import LedgerMismatch, TotalsInvariantViolation
from .idempotency import IdempotencyManager
from .inventory import InventoryLedger
from .payment_processor import PaymentProcessor
from .pricing import assert_totals
from .refunds import RefundEngine

logger = structlog.get_logger(__name__)

ORDER_BATCH_SIZE = 500


class ReconciliationEngine:
    """
    Periodic consistency check across payments, refunds, stock and orders.
    """

    def __init__(
        self,
        db: Database,
        inventory: InventoryLedger,
        payments: PaymentProcessor,
        refunds: RefundEngine,
        idempotency: IdempotencyManager,
    ):
        self.db = db
        self.inventory = inventory
        self.payments = payments
        self.refunds = refunds
        self.idempotency = idempotency

    async def run(self, pending_limit: int = 100) -> Dict[str, Any]:
        """
        Run every check once.

        Args:
            pending_limit: Stale pending operations resolved per kind

        Returns:
            Dict[str, Any]: Report with resolutions and discrepancies
        """
        start = time.perf_counter()
        logger.info("reconciliation_started")

        failed_operations: List[Dict[str, Any]] = []
        payment_resolutions = await self.payments.reconcile_pending_operations(
            pending_limit, failed_operations
        )
        refund_resolutions = await self.refunds.reconcile_pending_operations(
            pending_limit, failed_operations
        )
        stock_checked, stock_discrepancies = await self._check_stock_ledgers()
        orders_checked, order_discrepancies = await self._check_order_totals()
        async with self.db.transaction() as session:
            purged = await self.idempotency.purge_expired(session)

        discrepancies = [
            {"type": "pending_operation", **failure} for failure in failed_operations
        ]
        discrepancies += stock_discrepancies + order_discrepancies
        resolved = sum(
            count
            for resolutions in (payment_resolutions, refund_resolutions)
            for outcome, count in resolutions.items()
            if outcome not in ("unknown", "error")
        )
        duration = time.perf_counter() - start
        metrics.set_reconciliation_metrics(len(discrepancies), resolved, duration)

        report = {
            "ran_at": utc_now().isoformat(),
            "duration_seconds": round(duration, 3),
            "payments": payment_resolutions,
            "refunds": refund_resolutions,
            "stock_levels_checked": stock_checked,
            "orders_checked": orders_checked,
            "idempotency_keys_purged": purged,
            "discrepancies": discrepancies,
        }

        if discrepancies:
            logger.warning(
                "reconciliation_discrepancies_detected",
                discrepancy_count=len(discrepancies),
                resolved_operations=resolved,
            )
        logger.info(
            "reconciliation_completed",
            duration_seconds=report["duration_seconds"],
            resolved_operations=resolved,
            discrepancy_count=len(discrepancies),
        )
        return report

    async def _check_stock_ledgers(self) -> tuple:
        discrepancies: List[Dict[str, Any]] = []
        async with self.db.session() as session:
            keys = await self.inventory.list_stock_keys(session)
            for variant_id, location_id in keys:
                try:
                    await self.inventory.assert_reconciled(session, variant_id, location_id)
                except LedgerMismatch as e:
                    discrepancies.append({"type": "stock_ledger", **e.details})
        return len(keys), discrepancies

    async def _check_order_totals(self) -> tuple:
        discrepancies: List[Dict[str, Any]] = []
        checked = 0
        offset = 0
        async with self.db.session() as session:
            while True:
                result = await session.execute(
                    select(Order)
                    .order_by(Order.created_at, Order.id)
                    .limit(ORDER_BATCH_SIZE)
                    .offset(offset)
                )
                orders = result.scalars().all()
                if not orders:
                    break
                for order in orders:
                    checked += 1
                    try:
                        assert_totals(order)
                    except TotalsInvariantViolation as e:
                        metrics.record_inconsistency(e.code)
                        logger.critical("order_totals_mismatch", **e.details)
                        discrepancies.append({"type": "order_totals", **e.details})
                offset += ORDER_BATCH_SIZE
                session.expunge_all()
        return checked, discrepancies
