"""
Tests for the order state machine: creation, fulfilment, cancellation and
manual status updates.
"""
import re
import uuid
from typing import Any, Dict

import pytest

from commerce_core.core.orders import generate_order_number
from commerce_core.core.service import CommerceService
from tests.factories import LOCATION, VARIANT, draft, line, ok


class TestCreateOrder:
    """Test suite for order creation."""

    @pytest.mark.unit
    def test_order_number_format(self) -> None:
        assert re.fullmatch(r"ORD-\d{8}-[0-9A-F]{6}", generate_order_number())

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_reserves_stock(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test a new order is priced, pending and holds its stock."""
        assert placed_order["status"] == "pending"
        assert placed_order["payment_status"] == "pending"
        assert placed_order["fulfillment_status"] == "unfulfilled"
        assert placed_order["financial_status"] == "pending"
        assert placed_order["subtotal_amount"] == 100000
        assert placed_order["tax_amount"] == 18000
        assert placed_order["total_amount"] == 118000
        assert len(placed_order["items"]) == 1
        assert placed_order["items"][0]["total"] == 118000

        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["quantity"] == 10
        assert stock["reserved_quantity"] == 2
        assert stock["available_quantity"] == 8

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_order_records_initial_history(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test one history row per status axis, only the order axis public."""
        order_id = uuid.UUID(placed_order["id"])
        history = ok(await commerce.order_history(order_id))["history"]

        assert [(row["status_type"], row["from_status"], row["to_status"]) for row in history] == [
            ("order", None, "pending"),
            ("payment", None, "pending"),
            ("fulfillment", None, "unfulfilled"),
        ]
        public = ok(await commerce.order_history(order_id, public_only=True))["history"]
        assert [row["status_type"] for row in public] == ["order"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_stock_rolls_back(self, commerce: CommerceService) -> None:
        """Test the second order for the last two units is rejected with nothing persisted."""
        ok(await commerce.create_stock_level("var_scarce", LOCATION, 2))
        ok(await commerce.create_order(draft(line("var_scarce", quantity=2))))

        result = await commerce.create_order(
            draft(line("var_scarce", quantity=2), email="ravi@example.com")
        )

        assert not result.success
        assert result.error_code == "insufficient_stock"
        assert result.error_category.value == "validation"
        assert result.error_details["available"] == 0

        stock = ok(await commerce.get_stock_level("var_scarce", LOCATION))
        assert stock["reserved_quantity"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_multi_line_order_is_atomic(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        """Test a short second line releases nothing from the first."""
        ok(await commerce.create_stock_level("var_mug", LOCATION, 1))

        result = await commerce.create_order(draft(line(), line("var_mug", quantity=3)))

        assert result.error_code == "insufficient_stock"
        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["reserved_quantity"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unstocked_variant(self, commerce: CommerceService) -> None:
        result = await commerce.create_order(draft(line("var_ghost")))

        assert result.error_code == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_email(self, commerce: CommerceService, stocked: Dict[str, Any]) -> None:
        result = await commerce.create_order(draft(email="not-an-email"))

        assert result.error_code == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_discount_codes_are_applied(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        order = ok(await commerce.create_order(draft(discount_codes=["welcome10"])))

        assert order["discount_codes"] == ["WELCOME10"]
        assert order["discount_amount"] == 10000
        assert order["total_amount"] == 106200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_idempotent_create(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        """Test a repeated key returns the same order and reserves once."""
        first = await commerce.create_order(draft(), idempotency_key="checkout-42")
        second = await commerce.create_order(draft(), idempotency_key="checkout-42")

        assert first.success and not first.replayed
        assert second.success and second.replayed
        assert second.data["id"] == first.data["id"]
        assert second.data["order_number"] == first.data["order_number"]

        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["reserved_quantity"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lookup_by_number(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        found = ok(await commerce.get_order_by_number(placed_order["order_number"]))
        assert found["id"] == placed_order["id"]

        missing = await commerce.get_order_by_number("ORD-00000000-000000")
        assert missing.error_code == "not_found"


class TestFulfilment:
    """Test suite for mark_fulfilled."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fulfil_everything(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test fulfilment turns the reservation into a sold ledger row."""
        order = ok(await commerce.mark_fulfilled(uuid.UUID(placed_order["id"]), actor="warehouse"))

        assert order["fulfillment_status"] == "fulfilled"
        assert order["items"][0]["fulfillment_quantity"] == 2

        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["quantity"] == 8
        assert stock["reserved_quantity"] == 0

        rows = ok(await commerce.stock_adjustments(VARIANT, LOCATION))["adjustments"]
        assert (rows[-1]["type"], rows[-1]["quantity"]) == ("sold", -2)
        assert rows[-1]["reference_id"] == placed_order["id"]
        assert ok(await commerce.reconcile_stock(VARIANT, LOCATION))["matches"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_then_complete(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        order_id = uuid.UUID(placed_order["id"])
        item_id = placed_order["items"][0]["id"]

        partial = ok(await commerce.mark_fulfilled(order_id, {item_id: 1}))
        assert partial["fulfillment_status"] == "partial"
        assert partial["items"][0]["fulfillment_status"] == "partial"

        over = await commerce.mark_fulfilled(order_id, {item_id: 2})
        assert over.error_code == "validation_error"
        assert "1 outstanding" in over.error

        complete = ok(await commerce.mark_fulfilled(order_id))
        assert complete["fulfillment_status"] == "fulfilled"

        again = await commerce.mark_fulfilled(order_id)
        assert again.error_code == "illegal_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_item(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        result = await commerce.mark_fulfilled(
            uuid.UUID(placed_order["id"]), {str(uuid.uuid4()): 1}
        )

        assert result.error_code == "validation_error"
        assert "is not part of order" in result.error


class TestCancelOrder:
    """Test suite for cancel_order."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_releases_reservation(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test cancelling a pending order returns its stock and closes every axis."""
        order_id = uuid.UUID(placed_order["id"])

        order = ok(await commerce.cancel_order(order_id, reason="customer", actor="support"))

        assert order["status"] == "cancelled"
        assert order["fulfillment_status"] == "cancelled"
        assert order["payment_status"] == "cancelled"
        assert order["financial_status"] == "voided"
        assert order["cancel_reason"] == "customer"
        assert order["refund_required"] is False

        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["reserved_quantity"] == 0
        assert stock["quantity"] == 10

        rows = ok(await commerce.stock_adjustments(VARIANT, LOCATION))["adjustments"]
        corrections = [row for row in rows if row["type"] == "correction"]
        assert len(corrections) == 1
        assert corrections[0]["quantity"] == 0
        assert corrections[0]["reason"] == "Reservation released"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_twice_is_a_replay(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        order_id = uuid.UUID(placed_order["id"])
        ok(await commerce.cancel_order(order_id))

        again = await commerce.cancel_order(order_id)

        assert again.success and again.replayed
        rows = ok(await commerce.stock_adjustments(VARIANT, LOCATION))["adjustments"]
        assert len([row for row in rows if row["type"] == "correction"]) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_cancel_shipped_order(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        order_id = uuid.UUID(placed_order["id"])
        ok(await commerce.update_order_status(order_id, "processing"))
        ok(await commerce.mark_fulfilled(order_id))
        ok(await commerce.update_order_status(order_id, "shipped"))

        result = await commerce.cancel_order(order_id)

        assert result.error_code == "illegal_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_order_reports_refund(
        self, commerce: CommerceService, paid_order: tuple
    ) -> None:
        """Test captured money is left alone unless a refund is requested."""
        order, payment = paid_order

        result = ok(await commerce.cancel_order(uuid.UUID(order["id"])))

        assert result["status"] == "cancelled"
        assert result["refund_required"] is True
        assert result["outstanding_refund_amount"] == 118000
        assert result["payment_status"] == "paid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_paid_order_with_refund(
        self, commerce: CommerceService, paid_order: tuple
    ) -> None:
        order, payment = paid_order

        result = ok(await commerce.cancel_order(uuid.UUID(order["id"]), refund_captured=True))

        assert result["refund_required"] is False
        assert [refund["amount"] for refund in result["refunds"]] == [118000]
        assert result["payment_status"] == "refunded"
        assert result["status"] == "refunded"


class TestUpdateStatus:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_shipping_lifecycle(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test pending -> processing -> shipped -> delivered with public history."""
        order_id = uuid.UUID(placed_order["id"])

        processing = ok(await commerce.update_order_status(order_id, "processing"))
        assert processing["processed_at"] is not None
        ok(await commerce.update_order_status(order_id, "shipped", notes="AWB 1234"))
        delivered = ok(await commerce.update_order_status(order_id, "delivered"))
        assert delivered["status"] == "delivered"

        public = ok(await commerce.order_history(order_id, public_only=True))["history"]
        assert [row["to_status"] for row in public] == [
            "pending",
            "processing",
            "shipped",
            "delivered",
        ]
        assert public[2]["notes"] == "AWB 1234"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_status_is_a_replay(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        order_id = uuid.UUID(placed_order["id"])
        ok(await commerce.update_order_status(order_id, "processing"))

        again = await commerce.update_order_status(order_id, "processing")

        assert again.success and again.replayed
        history = ok(await commerce.order_history(order_id))["history"]
        assert len([row for row in history if row["to_status"] == "processing"]) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["cancelled", "refunded", "lost_in_transit"])
    async def test_statuses_with_their_own_operation(
        self, commerce: CommerceService, placed_order: Dict[str, Any], status: str
    ) -> None:
        result = await commerce.update_order_status(uuid.UUID(placed_order["id"]), status)

        assert result.error_code == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_jump(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        result = await commerce.update_order_status(uuid.UUID(placed_order["id"]), "delivered")

        assert result.error_code == "illegal_transition"
        assert result.error_details["from_status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, commerce: CommerceService) -> None:
        result = await commerce.update_order_status(uuid.uuid4(), "processing")

        assert result.error_code == "not_found"
