"""
Tests for the reconciliation sweep.
"""
import uuid
from datetime import timedelta
from typing import Any, Dict, Tuple

import pytest
from sqlalchemy import update

from commerce_core.core.exceptions import (
    ConcurrentModification,
    GatewayUnavailable,
    InconsistencyError,
)
from commerce_core.core.service import CommerceService
from commerce_core.database import Database
from commerce_core.database.models import IdempotencyKey, Order, StockLevel, utc_now
from commerce_core.integrations.fake_gateway import FakeGateway
from commerce_core.integrations.gateway import GatewayErrorType
from tests.factories import LOCATION, VARIANT, ok


class TestPendingOperations:
    """Test suite for operations whose outcome was never recorded."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clean_run(
        self, commerce: CommerceService, paid_order: Tuple[Dict[str, Any], Dict[str, Any]]
    ) -> None:
        report = ok(await commerce.reconcile())

        assert report["payments"] == {}
        assert report["refunds"] == {}
        assert report["discrepancies"] == []
        assert report["stock_levels_checked"] == 1
        assert report["orders_checked"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timed_out_capture_is_applied(
        self, commerce: CommerceService, gateway: FakeGateway, placed_order: Dict[str, Any]
    ) -> None:
        """Test a capture the gateway completed after we gave up is recorded."""
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))
        payment_id = uuid.UUID(payment["id"])
        ok(await commerce.authorize_payment(payment_id))
        gateway.delay_next("capture", 1.0)
        assert (await commerce.capture_payment(payment_id)).error_code == "gateway_timeout"

        report = ok(await commerce.reconcile())

        assert report["payments"] == {"applied": 1}
        captured = ok(await commerce.get_payment(payment_id))
        assert captured["status"] == "captured"
        assert captured["gateway_transaction_id"].startswith("cap_")
        history = ok(await commerce.order_history(uuid.UUID(placed_order["id"])))["history"]
        assert any(row["changed_by"] == "reconciliation" for row in history)

        again = await commerce.capture_payment(payment_id)
        assert again.replayed
        assert gateway.call_count("capture") == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_call_the_gateway_never_saw_is_abandoned(
        self, commerce: CommerceService, gateway: FakeGateway, placed_order: Dict[str, Any]
    ) -> None:
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))
        payment_id = uuid.UUID(payment["id"])
        gateway.fail_next("authorize", "connection reset", GatewayErrorType.TRANSIENT)
        assert (await commerce.authorize_payment(payment_id)).error_code == "gateway_unavailable"

        report = ok(await commerce.reconcile())

        assert report["payments"] == {"abandoned": 1}
        assert ok(await commerce.get_payment(payment_id))["status"] == "pending"
        assert ok(await commerce.authorize_payment(payment_id))["status"] == "authorized"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timed_out_refund_is_applied(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        paid_order: Tuple[Dict[str, Any], Dict[str, Any]],
    ) -> None:
        order, payment = paid_order
        payment_id = uuid.UUID(payment["id"])
        gateway.delay_next("refund", 1.0)
        await commerce.process_refund(payment_id, 100000, idempotency_key="rf-slow")

        report = ok(await commerce.reconcile())

        assert report["refunds"] == {"applied": 1}
        refunds = ok(await commerce.list_refunds(uuid.UUID(order["id"])))["refunds"]
        assert refunds[0]["status"] == "success"
        assert ok(await commerce.refundable_balance(payment_id))["refundable_amount"] == 18000
        assert ok(await commerce.get_payment(payment_id))["status"] == "partially_refunded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unreachable_gateway_leaves_operation_pending(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        placed_order: Dict[str, Any],
        mocker: Any,
    ) -> None:
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))
        payment_id = uuid.UUID(payment["id"])
        ok(await commerce.authorize_payment(payment_id))
        gateway.delay_next("capture", 1.0)
        await commerce.capture_payment(payment_id)
        mocker.patch.object(
            commerce.payments,
            "lookup_outcome",
            side_effect=GatewayUnavailable("lookup down"),
        )

        report = ok(await commerce.reconcile())

        assert report["payments"] == {"unknown": 1}
        assert ok(await commerce.get_payment(payment_id))["status"] == "authorized"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unresolvable_operation_does_not_stop_the_run(
        self,
        db: Database,
        commerce: CommerceService,
        gateway: FakeGateway,
        placed_order: Dict[str, Any],
        mocker: Any,
    ) -> None:
        """Test one broken key is reported while stock and orders are still checked."""
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))
        payment_id = uuid.UUID(payment["id"])
        ok(await commerce.authorize_payment(payment_id))
        gateway.delay_next("capture", 1.0)
        await commerce.capture_payment(payment_id)
        mocker.patch.object(
            commerce.payments,
            "lookup_outcome",
            side_effect=InconsistencyError("Capture succeeded for an unknown payment"),
        )
        async with db.transaction() as session:
            await session.execute(
                update(StockLevel)
                .where(StockLevel.variant_id == VARIANT, StockLevel.location_id == LOCATION)
                .values(quantity=StockLevel.quantity + 1)
            )

        report = ok(await commerce.reconcile())

        assert report["payments"] == {"error": 1}
        assert report["stock_levels_checked"] == 1
        assert report["orders_checked"] == 1
        kinds = [d["type"] for d in report["discrepancies"]]
        assert kinds == ["pending_operation", "stock_ledger"]
        failure = report["discrepancies"][0]
        assert failure["kind"] == "payment"
        assert failure["operation"] == "payment.capture"
        assert failure["error_code"] == "inconsistency"
        assert ok(await commerce.get_payment(payment_id))["status"] == "authorized"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_contended_operation_is_deferred(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        placed_order: Dict[str, Any],
        mocker: Any,
    ) -> None:
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))
        payment_id = uuid.UUID(payment["id"])
        ok(await commerce.authorize_payment(payment_id))
        gateway.delay_next("capture", 1.0)
        await commerce.capture_payment(payment_id)
        mocker.patch.object(
            commerce.payments,
            "reconcile_pending",
            side_effect=ConcurrentModification("Payment is locked"),
        )

        report = ok(await commerce.reconcile())

        assert report["payments"] == {"unknown": 1}
        assert report["discrepancies"] == []


class TestDiscrepancies:
    """Test suite for drift detection."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stock_drift_is_reported(
        self, db: Database, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        async with db.transaction() as session:
            await session.execute(
                update(StockLevel)
                .where(StockLevel.variant_id == VARIANT, StockLevel.location_id == LOCATION)
                .values(quantity=StockLevel.quantity + 5)
            )

        report = ok(await commerce.reconcile())

        assert len(report["discrepancies"]) == 1
        discrepancy = report["discrepancies"][0]
        assert discrepancy["type"] == "stock_ledger"
        assert discrepancy["variant_id"] == VARIANT
        assert discrepancy["quantity"] == 15
        assert discrepancy["expected_quantity"] == 10

        # Reported, never corrected
        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["quantity"] == 15

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_totals_drift_is_reported(
        self, db: Database, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test a tax change not reflected on the lines is caught."""
        async with db.transaction() as session:
            await session.execute(
                update(Order)
                .where(Order.id == uuid.UUID(placed_order["id"]))
                .values(tax_amount=Order.tax_amount + 1, total_amount=Order.total_amount + 1)
            )

        report = ok(await commerce.reconcile())

        assert [d["type"] for d in report["discrepancies"]] == ["order_totals"]
        discrepancy = report["discrepancies"][0]
        assert discrepancy["order_number"] == placed_order["order_number"]
        assert discrepancy["problems"] == ["line taxes do not sum to the order tax"]


class TestPurge:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_keys_are_purged(
        self,
        db: Database,
        commerce: CommerceService,
        paid_order: Tuple[Dict[str, Any], Dict[str, Any]],
    ) -> None:
        async with db.transaction() as session:
            await session.execute(
                update(IdempotencyKey).values(expires_at=utc_now() - timedelta(minutes=1))
            )

        report = ok(await commerce.reconcile())

        assert report["idempotency_keys_purged"] >= 2
        second = ok(await commerce.reconcile())
        assert second["idempotency_keys_purged"] == 0
