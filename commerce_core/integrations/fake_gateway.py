"""In-memory gateway adapter for local runs and tests."""
import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .gateway import (
    GatewayError,
    GatewayErrorType,
    GatewayOutcome,
    GatewayResult,
    PaymentGateway,
)


class FakeGateway(PaymentGateway):
    """
    Gateway that keeps its ledger in memory and honors idempotency keys.

    Failures are scripted per operation with fail_next(); a scripted hang
    (delay) lets tests exercise timeouts. A call that hangs is still recorded,
    as a real gateway may complete work the caller never heard back about.
    """

    name = "fake"

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self._outcomes: Dict[str, GatewayOutcome] = {}
        self._scripted: Dict[str, List[Tuple[str, GatewayErrorType]]] = {}
        self._delays: Dict[str, float] = {}

    def fail_next(
        self,
        operation: str,
        message: str = "Card declined",
        error_type: GatewayErrorType = GatewayErrorType.PERMANENT,
    ) -> None:
        self._scripted.setdefault(operation, []).append((message, error_type))

    def delay_next(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    def call_count(self, operation: Optional[str] = None) -> int:
        return len([c for c in self.calls if operation is None or c[0] == operation])

    async def _execute(
        self, operation: str, idempotency_key: str, raw: Dict[str, Any]
    ) -> GatewayResult:
        self.calls.append((operation, idempotency_key))

        previous = self._outcomes.get(idempotency_key)
        if previous is not None:
            if previous.succeeded and previous.result is not None:
                return previous.result
            raise GatewayError(
                previous.failure_message or "declined",
                GatewayErrorType.PERMANENT,
                code="replayed_failure",
            )

        delay = self._delays.pop(operation, 0.0)
        scripted = self._scripted.get(operation)
        if scripted:
            message, error_type = scripted.pop(0)
            if error_type is GatewayErrorType.PERMANENT:
                self._outcomes[idempotency_key] = GatewayOutcome(
                    operation=operation, succeeded=False, failure_message=message
                )
            raise GatewayError(message, error_type, code=f"{operation}_failed", raw_response=raw)

        ref = f"{operation[:3]}_{uuid.uuid4().hex[:16]}"
        result = GatewayResult(gateway_ref=ref, raw_response={**raw, "id": ref, "status": "ok"})
        self._outcomes[idempotency_key] = GatewayOutcome(
            operation=operation, succeeded=True, result=result
        )
        if delay:
            await asyncio.sleep(delay)
        return result

    async def authorize(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        return await self._execute(
            "authorize",
            idempotency_key,
            {"amount": amount, "currency": currency, "metadata": metadata or {}},
        )

    async def capture(
        self, gateway_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> GatewayResult:
        return await self._execute(
            "capture",
            idempotency_key,
            {"authorization": gateway_ref, "amount": amount, "currency": currency},
        )

    async def void(self, gateway_ref: str, idempotency_key: str) -> GatewayResult:
        return await self._execute("void", idempotency_key, {"authorization": gateway_ref})

    async def refund(
        self,
        gateway_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        return await self._execute(
            "refund",
            idempotency_key,
            {"charge": gateway_ref, "amount": amount, "currency": currency, "reason": reason},
        )

    async def lookup(self, idempotency_key: str) -> Optional[GatewayOutcome]:
        self.calls.append(("lookup", idempotency_key))
        return self._outcomes.get(idempotency_key)
