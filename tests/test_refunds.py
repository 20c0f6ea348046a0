"""
Tests for the refund engine and its targets.
"""
import uuid
from typing import Any, Dict, Tuple

import pytest

from commerce_core.core.service import CommerceService
from commerce_core.integrations.fake_gateway import FakeGateway
from tests.factories import LOCATION, VARIANT, ok


async def _captured(commerce: CommerceService, order: Dict[str, Any], amount: int) -> uuid.UUID:
    payment = ok(await commerce.create_payment(uuid.UUID(order["id"]), amount=amount))
    payment_id = uuid.UUID(payment["id"])
    ok(await commerce.authorize_payment(payment_id))
    ok(await commerce.capture_payment(payment_id))
    return payment_id


class TestGatewayRefunds:
    """Test suite for refunds through the payment gateway."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_refunds_against_balance(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test a refund larger than what is left is rejected."""
        payment_id = await _captured(commerce, placed_order, 50000)

        refund = ok(await commerce.process_refund(payment_id, 20000))

        assert refund["status"] == "success"
        assert refund["target"] == "gateway"
        assert refund["gateway_refund_id"].startswith("ref_")
        assert refund["payment_status"] == "partially_refunded"
        assert refund["refundable_balance"] == 30000

        too_much = await commerce.process_refund(payment_id, 35000)

        assert too_much.error_code == "refund_exceeds_balance"
        assert too_much.error_details["refundable"] == 30000
        balance = ok(await commerce.refundable_balance(payment_id))
        assert balance["refundable_amount"] == 30000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_full_refund_closes_the_order(
        self, commerce: CommerceService, paid_order: Tuple[Dict[str, Any], Dict[str, Any]]
    ) -> None:
        order, payment = paid_order

        refund = ok(await commerce.process_refund(uuid.UUID(payment["id"])))

        assert refund["amount"] == 118000
        assert refund["payment_status"] == "refunded"
        refreshed = ok(await commerce.get_order(uuid.UUID(order["id"])))
        assert refreshed["payment_status"] == "refunded"
        assert refreshed["financial_status"] == "refunded"
        assert refreshed["status"] == "refunded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_two_partial_refunds_roll_up(
        self, commerce: CommerceService, paid_order: Tuple[Dict[str, Any], Dict[str, Any]]
    ) -> None:
        order, payment = paid_order
        payment_id = uuid.UUID(payment["id"])
        order_id = uuid.UUID(order["id"])

        ok(await commerce.process_refund(payment_id, 18000))
        assert ok(await commerce.get_order(order_id))["payment_status"] == "partially_refunded"

        ok(await commerce.process_refund(payment_id, 100000))
        refreshed = ok(await commerce.get_order(order_id))
        assert refreshed["payment_status"] == "refunded"
        assert refreshed["status"] == "refunded"
        assert len(ok(await commerce.list_refunds(order_id))["refunds"]) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_key_refunds_once(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        paid_order: Tuple[Dict[str, Any], Dict[str, Any]],
    ) -> None:
        _, payment = paid_order
        payment_id = uuid.UUID(payment["id"])

        first = await commerce.process_refund(payment_id, 10000, idempotency_key="rf-1")
        second = await commerce.process_refund(payment_id, 10000, idempotency_key="rf-1")

        assert second.replayed
        assert second.data["id"] == first.data["id"]
        assert gateway.call_count("refund") == 1
        assert ok(await commerce.refundable_balance(payment_id))["refundable_amount"] == 108000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_refund_frees_the_amount(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        paid_order: Tuple[Dict[str, Any], Dict[str, Any]],
    ) -> None:
        order, payment = paid_order
        gateway.fail_next("refund", "Charge already disputed")

        result = await commerce.process_refund(uuid.UUID(payment["id"]), 5000)

        assert result.error_code == "payment_declined"
        refunds = ok(await commerce.list_refunds(uuid.UUID(order["id"])))["refunds"]
        assert refunds[0]["status"] == "failure"
        assert refunds[0]["failure_message"] == "Charge already disputed"
        balance = ok(await commerce.refundable_balance(uuid.UUID(payment["id"])))
        assert balance["refundable_amount"] == 118000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_timed_out_refund_keeps_its_reservation(
        self,
        commerce: CommerceService,
        gateway: FakeGateway,
        paid_order: Tuple[Dict[str, Any], Dict[str, Any]],
    ) -> None:
        """Test a refund with an unknown outcome still counts against the balance."""
        _, payment = paid_order
        payment_id = uuid.UUID(payment["id"])
        gateway.delay_next("refund", 1.0)

        result = await commerce.process_refund(payment_id, 100000, idempotency_key="rf-slow")

        assert result.error_code == "gateway_timeout"
        assert ok(await commerce.refundable_balance(payment_id))["refundable_amount"] == 18000
        assert (await commerce.process_refund(payment_id, 20000)).error_code == (
            "refund_exceeds_balance"
        )

        resumed = ok(await commerce.process_refund(payment_id, idempotency_key="rf-slow"))
        assert resumed["amount"] == 100000
        assert resumed["status"] == "success"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_requires_captured_payment(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        payment = ok(await commerce.create_payment(uuid.UUID(placed_order["id"])))

        result = await commerce.process_refund(uuid.UUID(payment["id"]), 100)

        assert result.error_code == "validation_error"
        assert "Cannot refund payment in status pending" in result.error

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reason(
        self, commerce: CommerceService, paid_order: Tuple[Dict[str, Any], Dict[str, Any]]
    ) -> None:
        _, payment = paid_order

        result = await commerce.process_refund(uuid.UUID(payment["id"]), 100, reason="boredom")

        assert result.error_code == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_refund(self, commerce: CommerceService) -> None:
        assert (await commerce.get_refund(uuid.uuid4())).error_code == "not_found"


class TestBalanceRefunds:
    """Test suite for refunds credited back to gift cards and store credit."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gift_card_refund(
        self, commerce: CommerceService, gateway: FakeGateway, placed_order: Dict[str, Any]
    ) -> None:
        ok(await commerce.issue_gift_card("GIFT-2000", 200000))
        payment = ok(await commerce.pay_with_gift_card(uuid.UUID(placed_order["id"]), "GIFT-2000"))

        refund = ok(await commerce.process_refund(uuid.UUID(payment["id"]), 18000))

        assert refund["target"] == "gift_card"
        assert refund["gateway_refund_id"].startswith("gift_card_transaction:")
        card = ok(await commerce.get_gift_card("GIFT-2000"))
        assert card["current_amount"] == 100000
        assert [t["type"] for t in card["transactions"]] == ["issued", "used", "refunded"]
        assert gateway.call_count("refund") == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refunding_part_payment_keeps_order_open(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        """Test refunding a gift card that paid part of an order leaves the order cancellable."""
        order_id = uuid.UUID(placed_order["id"])
        ok(await commerce.issue_gift_card("GIFT-SPLIT", 20000))
        payment = ok(await commerce.pay_with_gift_card(order_id, "GIFT-SPLIT", amount=20000))

        refund = ok(await commerce.process_refund(uuid.UUID(payment["id"])))

        assert refund["payment_status"] == "refunded"
        order = ok(await commerce.get_order(order_id))
        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["financial_status"] == "pending"

        cancelled = ok(await commerce.cancel_order(order_id))

        assert cancelled["status"] == "cancelled"
        assert cancelled["refund_required"] is False
        stock = ok(await commerce.get_stock_level(VARIANT, LOCATION))
        assert stock["reserved_quantity"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_store_credit_refund(
        self, commerce: CommerceService, placed_order: Dict[str, Any]
    ) -> None:
        ok(await commerce.credit_store_credit("cust_asha", 118000))
        payment = ok(await commerce.pay_with_store_credit(uuid.UUID(placed_order["id"])))
        assert ok(await commerce.store_credit("cust_asha"))["balance"] == 0

        refund = ok(await commerce.process_refund(uuid.UUID(payment["id"])))

        assert refund["target"] == "store_credit"
        assert refund["payment_status"] == "refunded"
        ledger = ok(await commerce.store_credit("cust_asha"))
        assert ledger["balance"] == 118000
        assert [t["sequence"] for t in ledger["transactions"]] == [1, 2, 3]
