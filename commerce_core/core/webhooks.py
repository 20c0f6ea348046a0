"""
Outbound webhook delivery.

Deliveries are claimed from the outbox with a lease, posted with an HMAC
signature, and either completed, rescheduled with exponential backoff, or
dead-lettered once their retry budget is spent. No transaction is held open
during the HTTP call.
"""
import asyncio
import hashlib
import hmac
import json
import secrets
import socket
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from sqlalchemy import func, or_, select, update

from ..config import Settings
from ..database import Database
from ..database.enums import DeliveryStatus
from ..database.models import Webhook, WebhookDelivery, utc_now
from ..monitoring.metrics import metrics
from .events import EVENT_TYPES
from .exceptions import IllegalTransition, NotFoundError, ValidationError
from .serializers import delivery_to_dict, webhook_to_dict

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
CLAIMABLE_STATUSES = (DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value)


def sign(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of the body, hex encoded."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


class WebhookDeliveryEngine:
    """
    Claims due deliveries and posts them to subscribers.

    Several engines may sweep the same table: a delivery is only dispatched by
    the worker whose conditional UPDATE set claimed_by on it.
    """

    def __init__(
        self,
        db: Database,
        http_client: Optional[httpx.AsyncClient] = None,
        backoff_base_seconds: float = 30.0,
        backoff_cap_seconds: float = 3600.0,
        claim_lease_seconds: int = 300,
        batch_size: int = 50,
        response_body_limit: int = 2000,
        user_agent: str = "commerce-core-webhooks/1.0",
        worker_id: Optional[str] = None,
    ):
        """
        Initialize the delivery engine.

        Args:
            db: Database handle
            http_client: Client used for deliveries; one is created when omitted
            backoff_base_seconds: Delay unit for retries
            backoff_cap_seconds: Longest delay between retries
            claim_lease_seconds: How long a claim keeps other workers away
            batch_size: Default number of deliveries claimed per sweep
            response_body_limit: Characters of the response body stored
            user_agent: User-Agent header for deliveries
            worker_id: Name recorded in claimed_by
        """
        self.db = db
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(follow_redirects=False)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.claim_lease_seconds = claim_lease_seconds
        self.batch_size = batch_size
        self.response_body_limit = response_body_limit
        self.user_agent = user_agent
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"

    @classmethod
    def from_settings(
        cls,
        db: Database,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        worker_id: Optional[str] = None,
    ) -> "WebhookDeliveryEngine":
        return cls(
            db,
            http_client=http_client,
            backoff_base_seconds=settings.webhook_backoff_base_seconds,
            backoff_cap_seconds=settings.webhook_backoff_cap_seconds,
            claim_lease_seconds=settings.webhook_claim_lease_seconds,
            batch_size=settings.webhook_batch_size,
            response_body_limit=settings.webhook_response_body_limit,
            user_agent=settings.webhook_user_agent,
            worker_id=worker_id,
        )

    def backoff(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        return min(self.backoff_base_seconds * (2 ** attempts), self.backoff_cap_seconds)

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
    ) -> Dict[str, Any]:
        """
        Create a subscription.

        Args:
            url: http(s) endpoint receiving POSTs
            name: Display name
            events: Event types to receive; "*" subscribes to all of them
            secret: Signing secret; generated when omitted
            description: Free-form description
            headers: Extra headers sent with every delivery
            max_retries: HTTP attempts per delivery before dead-lettering
            timeout_seconds: Per-attempt HTTP timeout

        Returns:
            Dict[str, Any]: The subscription, including its secret
        """
        if not url.startswith(("http://", "https://")):
            raise ValidationError("Webhook URL must be http(s)", url=url)
        if not events:
            raise ValidationError("A webhook must subscribe to at least one event")
        unknown = sorted(set(events) - EVENT_TYPES - {"*"})
        if unknown:
            raise ValidationError(f"Unknown event types: {', '.join(unknown)}", events=unknown)
        if max_retries < 1:
            raise ValidationError("max_retries must be at least 1", max_retries=max_retries)
        if timeout_seconds <= 0:
            raise ValidationError(
                "timeout_seconds must be positive", timeout_seconds=timeout_seconds
            )

        webhook = Webhook(
            id=uuid.uuid4(),
            url=url,
            name=name,
            description=description,
            events=sorted(set(events)),
            secret=secret or secrets.token_hex(32),
            headers=headers,
            is_active=True,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
        )
        async with self.db.transaction() as session:
            session.add(webhook)
            await session.flush()
            data = webhook_to_dict(webhook)

        logger.info("webhook_registered", webhook_id=data["id"], url=url, events=webhook.events)
        return {**data, "secret": webhook.secret}

    async def set_active(self, webhook_id: uuid.UUID, is_active: bool) -> Dict[str, Any]:
        async with self.db.transaction() as session:
            webhook = await session.get(Webhook, webhook_id, with_for_update=True)
            if webhook is None:
                raise NotFoundError(f"Webhook {webhook_id} not found", webhook_id=str(webhook_id))
            webhook.is_active = is_active
            await session.flush()
            data = webhook_to_dict(webhook)
        logger.info("webhook_updated", webhook_id=str(webhook_id), is_active=is_active)
        return data

    async def claim_due(self, limit: Optional[int] = None) -> List[uuid.UUID]:
        """
        Lease up to limit due deliveries to this worker.

        Returns:
            List[uuid.UUID]: Ids this worker now owns
        """
        now = utc_now()
        lease_free = or_(
            WebhookDelivery.claimed_until.is_(None), WebhookDelivery.claimed_until < now
        )
        due = (
            WebhookDelivery.status.in_(CLAIMABLE_STATUSES),
            WebhookDelivery.next_retry_at <= now,
            lease_free,
        )

        claimed = []
        async with self.db.transaction() as session:
            candidates = await session.scalars(
                select(WebhookDelivery.id)
                .where(*due)
                .order_by(WebhookDelivery.next_retry_at)
                .limit(limit or self.batch_size)
            )
            for delivery_id in candidates.all():
                stmt = (
                    update(WebhookDelivery)
                    .where(WebhookDelivery.id == delivery_id, *due)
                    .values(
                        status=DeliveryStatus.PENDING.value,
                        claimed_by=self.worker_id,
                        claimed_until=now + timedelta(seconds=self.claim_lease_seconds),
                    )
                    .execution_options(synchronize_session=False)
                )
                if (await session.execute(stmt)).rowcount == 1:
                    claimed.append(delivery_id)

        if claimed:
            metrics.record_webhook_claims(len(claimed))
            logger.info("webhook_deliveries_claimed", count=len(claimed), worker_id=self.worker_id)
        return claimed

    async def claim(self, delivery_id: uuid.UUID) -> bool:
        """
        Lease one delivery to this worker whether or not its retry is due.

        Returns:
            bool: False if it is finished, dead-lettered or leased to another worker
        """
        now = utc_now()
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status.in_(CLAIMABLE_STATUSES),
                ~self._dead_lettered(),
                or_(WebhookDelivery.claimed_until.is_(None), WebhookDelivery.claimed_until < now),
            )
            .values(
                status=DeliveryStatus.PENDING.value,
                claimed_by=self.worker_id,
                claimed_until=now + timedelta(seconds=self.claim_lease_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.db.transaction() as session:
            claimed = (await session.execute(stmt)).rowcount == 1
        if claimed:
            metrics.record_webhook_claims(1)
        return claimed

    async def deliver_now(self, delivery_id: uuid.UUID) -> Dict[str, Any]:
        """
        Attempt a delivery on demand, under the same lease a sweep takes.

        A delivery this worker cannot claim is returned as it is.

        Raises:
            NotFoundError: The delivery does not exist
        """
        if await self.claim(delivery_id):
            return await self.deliver(delivery_id)
        async with self.db.session() as session:
            delivery = await self._load(session, delivery_id)
            logger.info(
                "webhook_delivery_not_claimed",
                delivery_id=str(delivery_id),
                status=delivery.status,
                claimed_by=delivery.claimed_by,
            )
            return delivery_to_dict(delivery)

    async def deliver(self, delivery_id: uuid.UUID) -> Dict[str, Any]:
        """
        Make one HTTP attempt for a delivery this worker has claimed and record its outcome.

        A finished delivery is returned unchanged. A delivery whose
        subscription was removed or deactivated is cancelled.
        """
        async with self.db.session() as session:
            delivery = await session.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise NotFoundError(
                    f"Webhook delivery {delivery_id} not found", delivery_id=str(delivery_id)
                )
            webhook = await session.get(Webhook, delivery.webhook_id)

        if delivery.status in (DeliveryStatus.SUCCESS.value, DeliveryStatus.CANCELLED.value):
            return delivery_to_dict(delivery)
        if delivery.is_dead_lettered:
            return delivery_to_dict(delivery)
        if webhook is None or not webhook.is_active:
            return await self._cancel(delivery_id, "Subscription inactive")

        body = encode_payload(delivery.payload)
        headers = {
            **(delivery.headers or {}),
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            SIGNATURE_HEADER: f"sha256={sign(webhook.secret, body)}",
            "X-Webhook-Event": delivery.event_type,
            "X-Webhook-Event-Id": delivery.event_id,
            "X-Webhook-Delivery-Id": str(delivery.id),
        }

        status_code = None
        response_body = None
        response_headers = None
        error = None
        error_code = None
        start = time.perf_counter()
        try:
            response = await self.http_client.request(
                delivery.http_method,
                delivery.url,
                content=body,
                headers=headers,
                timeout=webhook.timeout_seconds,
            )
            status_code = response.status_code
            response_body = response.text[: self.response_body_limit]
            response_headers = dict(response.headers)
            if not response.is_success:
                error = f"HTTP {status_code}"
                error_code = "http_error"
        except httpx.TimeoutException:
            error = f"Timed out after {webhook.timeout_seconds}s"
            error_code = "timeout"
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__
            error_code = "network_error"
        duration = time.perf_counter() - start

        return await self._record_attempt(
            delivery_id,
            status_code=status_code,
            response_body=response_body,
            response_headers=response_headers,
            error=error,
            error_code=error_code,
            duration=duration,
        )

    async def _record_attempt(
        self,
        delivery_id: uuid.UUID,
        status_code: Optional[int],
        response_body: Optional[str],
        response_headers: Optional[Dict[str, str]],
        error: Optional[str],
        error_code: Optional[str],
        duration: float,
    ) -> Dict[str, Any]:
        async with self.db.transaction() as session:
            delivery = await self._load(session, delivery_id, lock=True)
            if delivery.status in (DeliveryStatus.SUCCESS.value, DeliveryStatus.CANCELLED.value):
                # Another worker finished it after our lease ran out
                return delivery_to_dict(delivery)

            now = utc_now()
            delivery.attempts = min(delivery.attempts + 1, delivery.max_retries)
            delivery.last_attempt_at = now
            delivery.status_code = status_code
            delivery.response_body = response_body
            delivery.response_headers = response_headers
            delivery.claimed_by = None
            delivery.claimed_until = None

            counters = {
                "total_deliveries": Webhook.total_deliveries + 1,
                "last_delivery_at": now,
            }
            if error is None:
                delivery.status = DeliveryStatus.SUCCESS.value
                delivery.completed_at = now
                delivery.next_retry_at = None
                delivery.error_message = None
                delivery.error_code = None
                counters["successful_deliveries"] = Webhook.successful_deliveries + 1
                counters["last_success_at"] = now
                outcome = "success"
            else:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.error_message = error
                delivery.error_code = error_code
                counters["failed_deliveries"] = Webhook.failed_deliveries + 1
                if delivery.attempts >= delivery.max_retries:
                    delivery.next_retry_at = None
                    delivery.completed_at = now
                    outcome = "dead_lettered"
                else:
                    delivery.next_retry_at = now + timedelta(
                        seconds=self.backoff(delivery.attempts)
                    )
                    outcome = "failed"

            await session.execute(
                update(Webhook)
                .where(Webhook.id == delivery.webhook_id)
                .values(**counters)
                .execution_options(synchronize_session=False)
            )
            await session.flush()
            data = delivery_to_dict(delivery)

        metrics.record_webhook_delivery(data["event_type"], outcome, duration)
        log_context = dict(
            delivery_id=str(delivery_id),
            event_type=data["event_type"],
            url=data["url"],
            attempts=data["attempts"],
            status_code=status_code,
        )
        if outcome == "success":
            logger.info("webhook_delivered", duration_ms=round(duration * 1000, 1), **log_context)
        elif outcome == "failed":
            logger.warning(
                "webhook_delivery_failed",
                error=error,
                next_retry_at=data["next_retry_at"],
                **log_context,
            )
        else:
            logger.error("webhook_delivery_dead_lettered", error=error, **log_context)
        return data

    async def sweep(self, limit: Optional[int] = None) -> Dict[str, int]:
        """
        Claim due deliveries and post them concurrently.

        Returns:
            Dict[str, int]: Count of deliveries per resulting status
        """
        claimed = await self.claim_due(limit)
        summary = {
            "claimed": len(claimed),
            "success": 0,
            "failed": 0,
            "dead_lettered": 0,
            "cancelled": 0,
            "errors": 0,
        }
        results = await asyncio.gather(
            *(self.deliver(delivery_id) for delivery_id in claimed), return_exceptions=True
        )
        for delivery_id, result in zip(claimed, results):
            if isinstance(result, Exception):
                summary["errors"] += 1
                logger.error(
                    "webhook_delivery_error",
                    delivery_id=str(delivery_id),
                    error=str(result),
                    exc_info=result,
                )
            elif result["dead_lettered"]:
                summary["dead_lettered"] += 1
            else:
                summary[result["status"]] = summary.get(result["status"], 0) + 1

        summary.pop(DeliveryStatus.PENDING.value, None)
        await self.refresh_dead_letter_gauge()
        return summary

    async def cancel(self, delivery_id: uuid.UUID) -> Dict[str, Any]:
        """
        Stop a delivery from being attempted again.

        Raises:
            IllegalTransition: The delivery already succeeded
        """
        return await self._cancel(delivery_id, "Cancelled by operator")

    async def _cancel(self, delivery_id: uuid.UUID, reason: str) -> Dict[str, Any]:
        async with self.db.transaction() as session:
            delivery = await self._load(session, delivery_id, lock=True)
            if delivery.status == DeliveryStatus.SUCCESS.value:
                raise IllegalTransition(
                    f"Delivery {delivery_id} already succeeded",
                    axis="delivery",
                    from_status=delivery.status,
                    to_status=DeliveryStatus.CANCELLED.value,
                )
            if delivery.status != DeliveryStatus.CANCELLED.value:
                delivery.status = DeliveryStatus.CANCELLED.value
                delivery.completed_at = utc_now()
                delivery.next_retry_at = None
                delivery.claimed_by = None
                delivery.claimed_until = None
                delivery.error_message = reason
                await session.flush()
                metrics.record_webhook_delivery(delivery.event_type, "cancelled", 0.0)
                logger.info(
                    "webhook_delivery_cancelled", delivery_id=str(delivery_id), reason=reason
                )
            return delivery_to_dict(delivery)

    async def requeue(self, delivery_id: uuid.UUID) -> Dict[str, Any]:
        """
        Give a dead-lettered delivery a fresh retry budget.

        Raises:
            IllegalTransition: The delivery is not dead-lettered
        """
        async with self.db.transaction() as session:
            delivery = await self._load(session, delivery_id, lock=True)
            if not delivery.is_dead_lettered:
                raise IllegalTransition(
                    f"Delivery {delivery_id} is not dead-lettered",
                    axis="delivery",
                    from_status=delivery.status,
                    to_status=DeliveryStatus.PENDING.value,
                )
            delivery.status = DeliveryStatus.PENDING.value
            delivery.attempts = 0
            delivery.next_retry_at = utc_now()
            delivery.completed_at = None
            await session.flush()
            data = delivery_to_dict(delivery)
        logger.info("webhook_delivery_requeued", delivery_id=str(delivery_id))
        return data

    async def list_deliveries(
        self,
        webhook_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        stmt = select(WebhookDelivery).order_by(WebhookDelivery.created_at.desc())
        if webhook_id is not None:
            stmt = stmt.where(WebhookDelivery.webhook_id == webhook_id)
        if status is not None:
            try:
                status = DeliveryStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown delivery status: {status}", status=status)
            stmt = stmt.where(WebhookDelivery.status == status)
        if event_type is not None:
            stmt = stmt.where(WebhookDelivery.event_type == event_type)
        async with self.db.session() as session:
            result = await session.scalars(stmt.limit(limit).offset(offset))
            return [delivery_to_dict(delivery) for delivery in result.all()]

    async def list_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self.db.session() as session:
            result = await session.scalars(
                select(WebhookDelivery)
                .where(self._dead_lettered())
                .order_by(WebhookDelivery.completed_at.desc())
                .limit(limit)
            )
            return [delivery_to_dict(delivery) for delivery in result.all()]

    async def refresh_dead_letter_gauge(self) -> int:
        async with self.db.session() as session:
            count = await session.scalar(
                select(func.count()).select_from(WebhookDelivery).where(self._dead_lettered())
            )
        metrics.set_dead_letter_count(int(count or 0))
        return int(count or 0)

    @staticmethod
    def _dead_lettered():
        return (WebhookDelivery.status == DeliveryStatus.FAILED.value) & (
            WebhookDelivery.attempts >= WebhookDelivery.max_retries
        )

    async def _load(self, session, delivery_id: uuid.UUID, lock: bool = False) -> WebhookDelivery:
        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        if lock:
            stmt = stmt.with_for_update()
        delivery = (await session.execute(stmt)).scalar_one_or_none()
        if delivery is None:
            raise NotFoundError(
                f"Webhook delivery {delivery_id} not found", delivery_id=str(delivery_id)
            )
        return delivery

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
