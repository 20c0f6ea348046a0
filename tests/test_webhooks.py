"""
Tests for event emission and outbound webhook delivery.
"""
import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict
from unittest.mock import MagicMock

import httpx
import pytest
from sqlalchemy import update

from commerce_core.core.service import CommerceService
from commerce_core.core.webhooks import WebhookDeliveryEngine, encode_payload, sign
from commerce_core.database import Database
from commerce_core.database.models import WebhookDelivery, utc_now
from tests.factories import WEBHOOK_URL, RecordingReceiver, draft, ok


async def _subscribe(
    commerce: CommerceService, events: Any = ("*",), **kwargs: Any
) -> Dict[str, Any]:
    return ok(
        await commerce.register_webhook(
            WEBHOOK_URL, "Order sync", list(events), secret="whsec_test", **kwargs
        )
    )


async def _only_delivery(commerce: CommerceService, event_type: str) -> Dict[str, Any]:
    deliveries = ok(await commerce.list_deliveries(event_type=event_type))["deliveries"]
    assert len(deliveries) == 1
    return deliveries[0]


def _seconds_between(later: str, earlier: str) -> float:
    return (datetime.fromisoformat(later) - datetime.fromisoformat(earlier)).total_seconds()


class TestSigning:
    @pytest.mark.unit
    def test_payload_encoding_is_canonical(self) -> None:
        assert encode_payload({"b": 1, "a": {"y": 2, "x": 1}}) == b'{"a":{"x":1,"y":2},"b":1}'

    @pytest.mark.unit
    def test_sign(self) -> None:
        signature = sign("secret", b"{}")

        assert len(signature) == 64
        assert signature == sign("secret", b"{}")
        assert signature != sign("other", b"{}")

    @pytest.mark.unit
    def test_backoff_is_capped(self) -> None:
        engine = WebhookDeliveryEngine(
            MagicMock(), http_client=MagicMock(), backoff_base_seconds=30, backoff_cap_seconds=3600
        )

        assert [engine.backoff(n) for n in range(1, 4)] == [60, 120, 240]
        assert engine.backoff(10) == 3600


class TestRegistration:
    """Test suite for webhook subscriptions."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_register(self, commerce: CommerceService) -> None:
        webhook = await _subscribe(commerce, ["order.created", "order.paid"])

        assert webhook["events"] == ["order.created", "order.paid"]
        assert webhook["is_active"] is True
        assert webhook["secret"] == "whsec_test"
        assert webhook["total_deliveries"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_secret_is_generated(self, commerce: CommerceService) -> None:
        webhook = ok(await commerce.register_webhook(WEBHOOK_URL, "Generated", ["*"]))

        assert len(webhook["secret"]) == 64

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url,events,max_retries,message",
        [
            ("ftp://hooks.example.com", ["*"], 3, "http(s)"),
            (WEBHOOK_URL, [], 3, "at least one event"),
            (WEBHOOK_URL, ["order.exploded"], 3, "Unknown event types"),
            (WEBHOOK_URL, ["*"], 0, "max_retries"),
        ],
    )
    async def test_invalid_registration(
        self, commerce: CommerceService, url: str, events: list, max_retries: int, message: str
    ) -> None:
        result = await commerce.register_webhook(url, "Bad", events, max_retries=max_retries)

        assert result.error_code == "validation_error"
        assert message in result.error


class TestEmission:
    """Test suite for the transactional outbox."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_created_is_queued(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce)

        order = ok(await commerce.create_order(draft()))

        delivery = await _only_delivery(commerce, "order.created")
        assert delivery["status"] == "pending"
        assert delivery["attempts"] == 0
        assert delivery["url"] == WEBHOOK_URL
        assert delivery["event_id"]
        assert order["id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_only_matching_subscriptions(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce, ["order.paid"])

        ok(await commerce.create_order(draft()))

        assert ok(await commerce.list_deliveries())["deliveries"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_state_change_emits_nothing(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        """Test a rolled-back order leaves no event behind."""
        await _subscribe(commerce)

        result = await commerce.create_order(draft(email="nobody"))
        short = await commerce.create_order(draft(discount_codes=["NOPE"]))

        assert not result.success and not short.success
        assert ok(await commerce.list_deliveries())["deliveries"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_inactive_subscription_gets_nothing(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        webhook = await _subscribe(commerce)
        ok(await commerce.set_webhook_active(uuid.UUID(webhook["id"]), False))

        ok(await commerce.create_order(draft()))

        assert ok(await commerce.list_deliveries())["deliveries"] == []


class TestDelivery:
    """Test suite for dispatch, retries and dead letters."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_delivers_signed_payload(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        """Test the subscriber receives the envelope with a verifiable signature."""
        webhook = await _subscribe(commerce, ["order.created"])
        order = ok(await commerce.create_order(draft()))

        summary = ok(await commerce.sweep_webhooks())

        assert summary["claimed"] == 1
        assert summary["success"] == 1
        request = receiver.requests[0]
        assert request.headers["X-Webhook-Event"] == "order.created"
        expected = sign("whsec_test", request.content)
        assert request.headers["X-Webhook-Signature"] == f"sha256={expected}"
        envelope = json.loads(request.content)
        assert envelope["type"] == "order.created"
        assert envelope["data"]["id"] == order["id"]
        assert request.headers["X-Webhook-Event-Id"] == envelope["id"]

        delivery = await _only_delivery(commerce, "order.created")
        assert delivery["status"] == "success"
        assert delivery["status_code"] == 200
        assert delivery["attempts"] == 1

        deliveries = ok(await commerce.list_deliveries(webhook_id=uuid.UUID(webhook["id"])))
        assert len(deliveries["deliveries"]) == 1
        assert ok(await commerce.sweep_webhooks())["claimed"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_retries_back_off_then_dead_letter(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        """Test doubling delays between attempts and a dead letter after the last one."""
        await _subscribe(commerce, ["order.created"], max_retries=3)
        ok(await commerce.create_order(draft()))
        delivery_id = uuid.UUID((await _only_delivery(commerce, "order.created"))["id"])
        receiver.respond_with(500, httpx.ConnectError, 503)

        first = ok(await commerce.deliver_webhook(delivery_id))
        assert first["status"] == "failed"
        assert first["error_message"] == "HTTP 500"
        delay = _seconds_between(first["next_retry_at"], first["last_attempt_at"])
        assert delay == pytest.approx(0.02)

        second = ok(await commerce.deliver_webhook(delivery_id))
        assert second["attempts"] == 2
        delay = _seconds_between(second["next_retry_at"], second["last_attempt_at"])
        assert delay == pytest.approx(0.04)

        third = ok(await commerce.deliver_webhook(delivery_id))
        assert third["attempts"] == 3
        assert third["dead_lettered"] is True
        assert third["next_retry_at"] is None
        assert third["status_code"] == 503

        dead = ok(await commerce.list_dead_letters())["deliveries"]
        assert [d["id"] for d in dead] == [str(delivery_id)]

        unchanged = ok(await commerce.deliver_webhook(delivery_id))
        assert unchanged["attempts"] == 3
        assert len(receiver.requests) == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_manual_delivery_respects_another_workers_lease(
        self,
        commerce: CommerceService,
        db: Database,
        receiver: RecordingReceiver,
        stocked: Dict[str, Any],
    ) -> None:
        await _subscribe(commerce, ["order.created"])
        ok(await commerce.create_order(draft()))
        delivery_id = uuid.UUID((await _only_delivery(commerce, "order.created"))["id"])
        async with db.transaction() as session:
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(claimed_by="worker-other", claimed_until=utc_now() + timedelta(seconds=60))
            )

        leased = ok(await commerce.deliver_webhook(delivery_id))
        assert leased["status"] == "pending"
        assert leased["attempts"] == 0
        assert receiver.requests == []
        async with db.session() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            assert delivery.claimed_by == "worker-other"

        async with db.transaction() as session:
            await session.execute(
                update(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .values(claimed_until=utc_now() - timedelta(seconds=1))
            )
        delivered = ok(await commerce.deliver_webhook(delivery_id))
        assert delivered["status"] == "success"
        assert len(receiver.requests) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_delivery_is_swept_again_when_due(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce, ["order.created"])
        ok(await commerce.create_order(draft()))
        receiver.respond_with(502)

        first = ok(await commerce.sweep_webhooks())
        await asyncio.sleep(0.05)
        second = ok(await commerce.sweep_webhooks())

        assert first["failed"] == 1
        assert second["success"] == 1
        delivery = await _only_delivery(commerce, "order.created")
        assert delivery["attempts"] == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_requeue_dead_letter(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce, ["order.created"], max_retries=1)
        ok(await commerce.create_order(draft()))
        delivery_id = uuid.UUID((await _only_delivery(commerce, "order.created"))["id"])
        receiver.respond_with(500)
        assert ok(await commerce.deliver_webhook(delivery_id))["dead_lettered"] is True

        requeued = ok(await commerce.requeue_delivery(delivery_id))
        assert requeued["status"] == "pending"
        assert requeued["attempts"] == 0

        delivered = ok(await commerce.deliver_webhook(delivery_id))
        assert delivered["status"] == "success"

        again = await commerce.requeue_delivery(delivery_id)
        assert again.error_code == "illegal_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_delivery(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce, ["order.created"])
        ok(await commerce.create_order(draft()))
        delivery_id = uuid.UUID((await _only_delivery(commerce, "order.created"))["id"])

        cancelled = ok(await commerce.cancel_delivery(delivery_id))

        assert cancelled["status"] == "cancelled"
        assert ok(await commerce.sweep_webhooks())["claimed"] == 0
        assert receiver.requests == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cannot_cancel_success(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        await _subscribe(commerce, ["order.created"])
        ok(await commerce.create_order(draft()))
        delivery_id = uuid.UUID((await _only_delivery(commerce, "order.created"))["id"])
        ok(await commerce.deliver_webhook(delivery_id))

        result = await commerce.cancel_delivery(delivery_id)

        assert result.error_code == "illegal_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_deactivated_subscription_cancels_pending(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        webhook = await _subscribe(commerce, ["order.created"])
        ok(await commerce.create_order(draft()))
        ok(await commerce.set_webhook_active(uuid.UUID(webhook["id"]), False))

        summary = ok(await commerce.sweep_webhooks())

        assert summary["cancelled"] == 1
        delivery = await _only_delivery(commerce, "order.created")
        assert delivery["error_message"] == "Subscription inactive"
        assert receiver.requests == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_delivery(self, commerce: CommerceService) -> None:
        assert (await commerce.deliver_webhook(uuid.uuid4())).error_code == "not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, commerce: CommerceService) -> None:
        result = await commerce.list_deliveries(status="lost")

        assert result.error_code == "validation_error"
