"""
Transactional outbox for outbound events.

Events are written as webhook_deliveries rows in the same transaction as the
domain change that produced them, one row per subscription listening on the
event type. The Webhook Delivery Engine publishes them asynchronously, so an
event exists if and only if its state change committed.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.enums import DeliveryStatus
from ..database.models import Webhook, WebhookDelivery, utc_now

logger = structlog.get_logger(__name__)

ORDER_CREATED = "order.created"
ORDER_PAID = "order.paid"
ORDER_FULFILLED = "order.fulfilled"
ORDER_PARTIALLY_FULFILLED = "order.partially_fulfilled"
ORDER_CANCELLED = "order.cancelled"
ORDER_STATUS_CHANGED = "order.status_changed"
ORDER_REFUNDED = "order.refunded"
PAYMENT_AUTHORIZED = "payment.authorized"
PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
PAYMENT_VOIDED = "payment.voided"
REFUND_CREATED = "refund.created"
REFUND_PROCESSED = "refund.processed"
REFUND_FAILED = "refund.failed"

EVENT_TYPES = frozenset(
    {
        ORDER_CREATED,
        ORDER_PAID,
        ORDER_FULFILLED,
        ORDER_PARTIALLY_FULFILLED,
        ORDER_CANCELLED,
        ORDER_STATUS_CHANGED,
        ORDER_REFUNDED,
        PAYMENT_AUTHORIZED,
        PAYMENT_CAPTURED,
        PAYMENT_FAILED,
        PAYMENT_VOIDED,
        REFUND_CREATED,
        REFUND_PROCESSED,
        REFUND_FAILED,
    }
)


class EventPublisher:
    """Writes event envelopes into the delivery outbox."""

    async def emit(
        self,
        session: AsyncSession,
        event_type: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> List[WebhookDelivery]:
        """
        Fan an event out to every active subscription listening on it.

        Args:
            session: Session holding the transaction of the state change
            event_type: One of EVENT_TYPES
            payload: Event data (JSON-serializable)
            event_id: Stable event id; generated when omitted

        Returns:
            List[WebhookDelivery]: The delivery rows added to the session
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event_id = event_id or str(uuid.uuid4())
        now = utc_now()
        envelope = {
            "id": event_id,
            "type": event_type,
            "created_at": now.isoformat(),
            "data": payload,
        }

        result = await session.execute(
            select(Webhook).where(Webhook.is_active.is_(True)).order_by(Webhook.created_at)
        )
        deliveries = []
        for webhook in result.scalars().all():
            if not webhook.subscribes_to(event_type):
                continue
            delivery = WebhookDelivery(
                webhook_id=webhook.id,
                event_type=event_type,
                event_id=event_id,
                url=webhook.url,
                http_method="POST",
                headers=webhook.headers,
                payload=envelope,
                status=DeliveryStatus.PENDING.value,
                attempts=0,
                max_retries=webhook.max_retries,
                next_retry_at=now,
            )
            session.add(delivery)
            deliveries.append(delivery)

        logger.info(
            "event_emitted",
            event_type=event_type,
            event_id=event_id,
            subscriptions=len(deliveries),
        )
        return deliveries
