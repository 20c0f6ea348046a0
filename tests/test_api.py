"""
Tests for the HTTP API.

The app is driven in-process through httpx's ASGI transport, wired to the
same service fixture the other tests use.
"""
import json
import uuid
from typing import Any, AsyncGenerator, Dict

import httpx
import pytest
import pytest_asyncio

from commerce_core.api.main import create_app
from commerce_core.api.routes import status_code_for
from commerce_core.config import Settings
from commerce_core.core.exceptions import GatewayTimeout, NotFoundError, RefundExceedsBalance
from commerce_core.core.results import ActionResult
from commerce_core.core.service import CommerceService
from commerce_core.integrations.fake_gateway import FakeGateway
from commerce_core.integrations.gateway_callbacks import SIGNATURE_HEADER, compute_signature
from tests.conftest import CALLBACK_SECRET
from tests.factories import LOCATION, VARIANT

ORDER_BODY = {
    "email": "asha@example.com",
    "customer_id": "cust_asha",
    "shipping_method": "standard",
    "items": [
        {
            "variant_id": VARIANT,
            "location_id": LOCATION,
            "quantity": 2,
            "price": 50000,
            "product_title": "Logo T-Shirt",
        }
    ],
}


@pytest_asyncio.fixture
async def client(
    settings: Settings, commerce: CommerceService
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(settings, commerce)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _stock(client: httpx.AsyncClient, quantity: int = 10) -> None:
    response = await client.post(
        "/inventory/stock-levels",
        json={"variant_id": VARIANT, "location_id": LOCATION, "quantity": quantity},
    )
    assert response.status_code == 201


async def _order(client: httpx.AsyncClient) -> Dict[str, Any]:
    response = await client.post("/orders", json=ORDER_BODY)
    assert response.status_code == 201
    return response.json()["data"]


async def _authorized_payment(client: httpx.AsyncClient, order_id: str) -> str:
    payment = (await client.post(f"/orders/{order_id}/payments")).json()["data"]
    response = await client.post(f"/payments/{payment['id']}/authorize")
    assert response.status_code == 200
    return payment["id"]


class TestStatusMapping:
    """Test suite for error to HTTP status mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "result,expected",
        [
            (ActionResult.ok({}), 200),
            (ActionResult.failure(NotFoundError("missing")), 404),
            (ActionResult.failure(RefundExceedsBalance("too much")), 422),
            (ActionResult.failure(GatewayTimeout("slow")), 503),
        ],
    )
    def test_status_code_for(self, result: ActionResult, expected: int) -> None:
        assert status_code_for(result) == expected

    @pytest.mark.unit
    def test_created_unless_replayed(self) -> None:
        assert status_code_for(ActionResult.ok({}), created=True) == 201
        assert status_code_for(ActionResult.ok({}, replayed=True), created=True) == 200


class TestOrderEndpoints:
    """Test suite for order endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_fetch_order(self, client: httpx.AsyncClient) -> None:
        await _stock(client)

        order = await _order(client)

        assert order["total_amount"] == 118000
        assert order["status"] == "pending"
        fetched = await client.get(f"/orders/{order['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["data"]["order_number"] == order["order_number"]
        by_number = await client.get(f"/orders/by-number/{order['order_number']}")
        assert by_number.json()["data"]["id"] == order["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_idempotent_create(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        headers = {"Idempotency-Key": "checkout-42"}

        first = await client.post("/orders", json=ORDER_BODY, headers=headers)
        second = await client.post("/orders", json=ORDER_BODY, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["data"]["id"] == first.json()["data"]["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_stock_is_a_conflict(self, client: httpx.AsyncClient) -> None:
        await _stock(client, quantity=1)

        response = await client.post("/orders", json=ORDER_BODY)

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "insufficient_stock"
        assert body["error"]["category"] == "validation"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_email_is_a_bad_request(self, client: httpx.AsyncClient) -> None:
        await _stock(client)

        response = await client.post("/orders", json={**ORDER_BODY, "email": "not-an-email"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected_by_the_schema(
        self, client: httpx.AsyncClient
    ) -> None:
        bad_item = {**ORDER_BODY["items"][0], "quantity": 0}

        response = await client.post("/orders", json={**ORDER_BODY, "items": [bad_item]})

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"/orders/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_and_history(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        order = await _order(client)

        cancelled = await client.post(
            f"/orders/{order['id']}/cancel",
            json={"reason": "customer request"},
            headers={"X-Actor": "support@example.com"},
        )
        history = await client.get(f"/orders/{order['id']}/history", params={"public_only": True})

        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"
        rows = history.json()["data"]["history"]
        cancel_row = next(row for row in rows if row["to_status"] == "cancelled")
        assert cancel_row["changed_by"] == "support@example.com"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_transition_is_a_conflict(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        order = await _order(client)

        response = await client.post(
            f"/orders/{order['id']}/status", json={"status": "delivered"}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "illegal_transition"


class TestPaymentEndpoints:
    """Test suite for payment and refund endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_and_refund(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        order = await _order(client)
        payment_id = await _authorized_payment(client, order["id"])

        captured = await client.post(f"/payments/{payment_id}/capture")
        refund = await client.post(f"/payments/{payment_id}/refunds", json={"amount": 18000})
        too_much = await client.post(f"/payments/{payment_id}/refunds", json={"amount": 200000})
        balance = await client.get(f"/payments/{payment_id}/refundable")

        assert captured.status_code == 200
        assert captured.json()["data"]["status"] == "captured"
        assert refund.status_code == 201
        assert refund.json()["data"]["status"] == "success"
        assert too_much.status_code == 422
        assert too_much.json()["error"]["code"] == "refund_exceeds_balance"
        assert balance.json()["data"]["refundable_amount"] == 100000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_timeout_is_retryable(
        self, client: httpx.AsyncClient, gateway: FakeGateway
    ) -> None:
        """Test a timeout answers 503 with Retry-After so clients retry with the same key."""
        await _stock(client)
        order = await _order(client)
        payment_id = await _authorized_payment(client, order["id"])
        gateway.delay_next("capture", 1.0)
        headers = {"Idempotency-Key": "capture-once"}

        timed_out = await client.post(f"/payments/{payment_id}/capture", headers=headers)
        retried = await client.post(f"/payments/{payment_id}/capture", headers=headers)

        assert timed_out.status_code == 503
        assert timed_out.headers["Retry-After"] == "1"
        assert timed_out.json()["error"]["category"] == "transient"
        assert retried.status_code == 200
        assert retried.json()["data"]["status"] == "captured"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_declined_payment(self, client: httpx.AsyncClient, gateway: FakeGateway) -> None:
        await _stock(client)
        order = await _order(client)
        payment = (await client.post(f"/orders/{order['id']}/payments")).json()["data"]
        gateway.fail_next("authorize", "Card declined")

        response = await client.post(f"/payments/{payment['id']}/authorize")

        assert response.status_code == 422
        assert response.json()["error"]["message"] == "Card declined"


class TestInventoryEndpoints:
    """Test suite for stock maintenance endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bulk_adjustment(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        body = {
            "reason": "Cycle count",
            "adjustments": [
                {
                    "variant_id": VARIANT,
                    "location_id": LOCATION,
                    "quantity": -1,
                    "adjustment_type": "lost",
                },
                {
                    "variant_id": VARIANT,
                    "location_id": LOCATION,
                    "quantity": 4,
                    "adjustment_type": "received",
                },
            ],
        }

        response = await client.post("/inventory/adjustments/bulk", json=body)
        empty = await client.post("/inventory/adjustments/bulk", json={"adjustments": []})

        assert response.status_code == 201
        assert response.json()["data"]["applied"] == 2
        stock = (await client.get(f"/inventory/{VARIANT}/{LOCATION}")).json()["data"]
        assert stock["quantity"] == 13
        assert empty.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_set_quantity_and_reorder_settings(self, client: httpx.AsyncClient) -> None:
        await _stock(client)

        counted = await client.put(
            f"/inventory/{VARIANT}/{LOCATION}/quantity", json={"quantity": 12}
        )
        negative = await client.put(
            f"/inventory/{VARIANT}/{LOCATION}/quantity", json={"quantity": -1}
        )
        reorder = await client.put(
            f"/inventory/{VARIANT}/{LOCATION}/reorder-settings",
            json={"reorder_point": 5, "reorder_quantity": 25},
        )

        assert counted.status_code == 200
        assert counted.json()["data"]["adjustment"]["quantity"] == 2
        assert counted.json()["data"]["stock_level"]["quantity"] == 12
        assert negative.status_code == 422
        assert reorder.status_code == 200
        assert reorder.json()["data"]["reorder_point"] == 5
        assert reorder.json()["data"]["reorder_quantity"] == 25


class TestGatewayCallbackEndpoint:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsigned_callback_is_unauthorized(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/gateway/callbacks", content=b'{"id":"evt_1"}')

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_callback(self, client: httpx.AsyncClient) -> None:
        body = json.dumps({"id": "evt_1", "type": "customer.updated", "data": {}}).encode()

        response = await client.post(
            "/gateway/callbacks",
            content=body,
            headers={SIGNATURE_HEADER: compute_signature(CALLBACK_SECRET, body)},
        )

        assert response.status_code == 200
        assert response.json()["data"]["resolution"] == "unhandled"


class TestAdminAndMonitoring:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_registration_and_sweep(self, client: httpx.AsyncClient) -> None:
        await _stock(client)
        registered = await client.post(
            "/webhooks",
            json={
                "url": "https://hooks.example.com/commerce",
                "name": "ERP",
                "events": ["order.created"],
            },
        )
        await _order(client)

        swept = await client.post("/admin/webhooks/sweep")
        deliveries = await client.get("/webhooks/deliveries", params={"status": "success"})

        assert registered.status_code == 201
        assert swept.json()["data"]["success"] == 1
        assert len(deliveries.json()["data"]["deliveries"]) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_endpoint(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/admin/reconcile")

        assert response.status_code == 200
        assert response.json()["data"]["discrepancies"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "disabled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_request_id(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.json()["status"] == "alive"
        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "order_actions_total" in response.text
