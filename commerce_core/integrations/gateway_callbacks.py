"""
Signed gateway notifications with signature verification and deduplication.

Implements:
- HMAC-SHA256 verification of the raw body
- Deduplication by event id through the idempotency table
- Routing of payment and refund outcomes to their owners

Notification body:
    {"id": "<event id>", "type": "payment.captured",
     "data": {"payment_id": "...", "gateway_ref": "...", ...}}
"""
import hashlib
import hmac
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import select

from ..core.exceptions import InvalidSignature, NotFoundError, ValidationError
from ..core.idempotency import IdempotencyManager
from ..core.payment_processor import PaymentProcessor
from ..core.refunds import RefundEngine, RefundExecution
from ..database import Database
from ..database.models import Payment, Refund
from .gateway import GatewayResult

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"
CALLBACK_OPERATION = "gateway.callback"


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class GatewayCallbackHandler:
    """
    Handles inbound gateway notifications.

    Every notification is applied at most once: its event id is claimed as
    an idempotency key, and the outcome is only written if the local state
    still allows the transition.
    """

    def __init__(
        self,
        db: Database,
        idempotency: IdempotencyManager,
        payments: PaymentProcessor,
        refunds: RefundEngine,
        secret: str,
    ):
        """
        Initialize callback handler.

        Args:
            db: Database handle
            idempotency: Idempotency manager used for event deduplication
            payments: Payment processor applying payment outcomes
            refunds: Refund engine applying refund outcomes
            secret: Shared signing secret; empty disables callbacks
        """
        self.db = db
        self.idempotency = idempotency
        self.payments = payments
        self.refunds = refunds
        self.secret = secret
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[str]]] = {
            "payment.authorized": self._payment_authorized,
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "refund.processed": self._refund_processed,
        }

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """
        Verify the body signature.

        Args:
            body: Raw request body
            signature: Header value, "sha256=<hex>" or bare hex

        Raises:
            InvalidSignature: Missing secret, missing header or mismatch
        """
        if not self.secret:
            raise InvalidSignature("Gateway callbacks are not configured")
        if not signature:
            raise InvalidSignature("Missing gateway signature")
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        expected = compute_signature(self.secret, body)
        if not hmac.compare_digest(expected, signature):
            logger.warning("gateway_callback_signature_mismatch")
            raise InvalidSignature("Gateway signature does not match")

    async def handle(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, deduplicate and apply one notification.

        Returns:
            Dict[str, Any]: event id, type and resolution (applied, duplicate,
                ignored or unhandled)

        Raises:
            InvalidSignature: Signature check failed
            ValidationError: Malformed body
        """
        self.verify_signature(body, signature)
        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("Gateway callback body is not valid JSON")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Gateway callback needs an id and a type")

        event_id = str(event["id"])
        event_type = str(event["type"])
        data = event.get("data") or {}
        key = IdempotencyManager.generate_key("gateway", "callback", event_id)

        async with self.db.transaction() as session:
            claim = await self.idempotency.claim(session, key, CALLBACK_OPERATION, event_id)
        if claim.is_replay:
            logger.info("gateway_callback_duplicate", event_id=event_id, event_type=event_type)
            return {**(claim.result or {}), "resolution": "duplicate"}

        handler = self.handlers.get(event_type)
        try:
            resolution = await handler(data) if handler else "unhandled"
        except Exception:
            async with self.db.transaction() as session:
                await self.idempotency.release(session, key)
            raise

        result = {"event_id": event_id, "type": event_type, "resolution": resolution}
        async with self.db.transaction() as session:
            await self.idempotency.complete(session, key, result)

        logger.info(
            "gateway_callback_processed",
            event_id=event_id,
            event_type=event_type,
            resolution=resolution,
        )
        return result

    async def _payment_authorized(self, data: Dict[str, Any]) -> str:
        payment_id = await self._find_payment(data)
        return await self.payments.apply_gateway_notification(
            payment_id, "authorize", self._result(data)
        )

    async def _payment_captured(self, data: Dict[str, Any]) -> str:
        payment_id = await self._find_payment(data)
        return await self.payments.apply_gateway_notification(
            payment_id, "capture", self._result(data)
        )

    async def _payment_failed(self, data: Dict[str, Any]) -> str:
        payment_id = await self._find_payment(data)
        operation = data.get("operation", "authorize")
        if operation not in ("authorize", "capture"):
            raise ValidationError(f"Unknown failed operation: {operation}", operation=operation)
        return await self.payments.apply_gateway_notification(
            payment_id,
            operation,
            None,
            failure_message=data.get("failure_message") or "declined",
        )

    async def _refund_processed(self, data: Dict[str, Any]) -> str:
        refund_id = await self._find_refund(data)
        if data.get("status", "succeeded") == "succeeded":
            execution = RefundExecution(
                reference=data.get("gateway_ref"), raw_response=data.get("raw") or data
            )
            await self.refunds.settle_success(refund_id, execution, "gateway_callback")
        else:
            await self.refunds.settle_failure(
                refund_id, data.get("failure_message") or "refund failed"
            )
        return "applied"

    @staticmethod
    def _result(data: Dict[str, Any]) -> GatewayResult:
        if not data.get("gateway_ref"):
            raise ValidationError("Payment notification needs a gateway_ref")
        return GatewayResult(gateway_ref=data["gateway_ref"], raw_response=data.get("raw") or data)

    async def _find_payment(self, data: Dict[str, Any]) -> uuid.UUID:
        async with self.db.session() as session:
            if data.get("payment_id"):
                stmt = select(Payment.id).where(Payment.id == self._uuid(data["payment_id"]))
            elif data.get("gateway_ref"):
                stmt = select(Payment.id).where(
                    Payment.gateway_transaction_id == data["gateway_ref"]
                )
            else:
                raise ValidationError("Payment notification needs a payment_id or gateway_ref")
            payment_id = await session.scalar(stmt)
        if payment_id is None:
            raise NotFoundError(
                "Payment for notification not found",
                payment_id=data.get("payment_id"),
                gateway_ref=data.get("gateway_ref"),
            )
        return payment_id

    async def _find_refund(self, data: Dict[str, Any]) -> uuid.UUID:
        async with self.db.session() as session:
            if data.get("refund_id"):
                stmt = select(Refund.id).where(Refund.id == self._uuid(data["refund_id"]))
            elif data.get("idempotency_key"):
                stmt = select(Refund.id).where(Refund.idempotency_key == data["idempotency_key"])
            else:
                raise ValidationError("Refund notification needs a refund_id or idempotency_key")
            refund_id = await session.scalar(stmt)
        if refund_id is None:
            raise NotFoundError(
                "Refund for notification not found",
                refund_id=data.get("refund_id"),
                idempotency_key=data.get("idempotency_key"),
            )
        return refund_id

    @staticmethod
    def _uuid(value: Any) -> uuid.UUID:
        try:
            return uuid.UUID(str(value))
        except ValueError:
            raise ValidationError(f"Invalid id: {value}", id=str(value))
