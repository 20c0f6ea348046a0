"""
Payment gateway port and the client that wraps every adapter.

Implements:
- PaymentGateway: the contract a provider adapter must satisfy
- Error classification for retry decisions
- Explicit per-call timeouts
- Circuit breaker pattern
- Retried outcome lookups for reconciling timed-out calls
"""
import asyncio
import importlib
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..core.exceptions import GatewayTimeout, GatewayUnavailable, PaymentDeclined
from ..monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Raised by adapters when the provider rejects or fails a call."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        code: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            code: Provider error code
            raw_response: Provider payload, kept for audit
        """
        super().__init__(message)
        self.error_type = error_type
        self.code = code
        self.raw_response = raw_response or {}


@dataclass(frozen=True)
class GatewayResult:
    """Reference issued by the gateway plus its raw response for audit storage."""

    gateway_ref: str
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOutcome:
    """What the gateway recorded for an idempotency key."""

    operation: str
    succeeded: bool
    result: Optional[GatewayResult] = None
    failure_message: Optional[str] = None


class PaymentGateway(ABC):
    """
    Capability interface a payment provider adapter must implement.

    Every money-moving call takes an idempotency key and must honor it:
    repeating a call with the same key returns the original outcome without
    moving money again.
    """

    name: str = "gateway"

    @abstractmethod
    async def authorize(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        """Reserve funds; returns the authorization reference."""

    @abstractmethod
    async def capture(
        self, gateway_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> GatewayResult:
        """Capture a previously authorized amount."""

    @abstractmethod
    async def void(self, gateway_ref: str, idempotency_key: str) -> GatewayResult:
        """Release an authorization without capturing."""

    @abstractmethod
    async def refund(
        self,
        gateway_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        """Return captured funds."""

    @abstractmethod
    async def lookup(self, idempotency_key: str) -> Optional[GatewayOutcome]:
        """Report the recorded outcome for a key, or None if the gateway never saw it."""


def load_gateway(import_path: str, **kwargs: Any) -> PaymentGateway:
    """
    Instantiate an adapter from a "module:Class" path.

    Raises:
        ValueError: If the path is malformed or does not name a PaymentGateway
    """
    module_name, _, class_name = import_path.partition(":")
    if not module_name or not class_name:
        raise ValueError(f"Gateway adapter must be 'module:Class', got {import_path!r}")
    gateway_cls = getattr(importlib.import_module(module_name), class_name)
    if not (isinstance(gateway_cls, type) and issubclass(gateway_cls, PaymentGateway)):
        raise ValueError(f"{import_path} is not a PaymentGateway")
    return gateway_cls(**kwargs)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold. Permanent declines do not count.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayUnavailable("Payment gateway circuit breaker is open")

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class GatewayClient:
    """
    Wraps a PaymentGateway adapter with production-grade error handling.

    Features:
    - Explicit timeout on every call
    - Error classification into the core's error taxonomy
    - Circuit breaker pattern
    - No automatic retries of money-moving calls; lookups are retried
    """

    def __init__(
        self,
        adapter: PaymentGateway,
        timeout_seconds: float = 15.0,
        lookup_attempts: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize gateway client.

        Args:
            adapter: Provider adapter
            timeout_seconds: Upper bound for a single call
            lookup_attempts: Attempts for outcome lookups
            circuit_breaker: Optional circuit breaker
        """
        self.adapter = adapter
        self.timeout_seconds = timeout_seconds
        self.lookup_attempts = lookup_attempts
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "gateway_client_initialized",
            gateway=adapter.name,
            timeout_seconds=timeout_seconds,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, adapter: Optional[PaymentGateway] = None
    ) -> "GatewayClient":
        return cls(
            adapter or load_gateway(settings.payment_gateway_adapter),
            timeout_seconds=settings.gateway_timeout_seconds,
            lookup_attempts=settings.gateway_lookup_attempts,
        )

    @property
    def name(self) -> str:
        return self.adapter.name

    async def _call(
        self, operation: str, idempotency_key: str, factory: Callable[[], Awaitable[T]]
    ) -> T:
        """
        Execute one adapter call with timeout, circuit breaker and metrics.

        Raises:
            PaymentDeclined: Gateway permanently rejected the call
            GatewayTimeout: No answer in time; outcome unknown
            GatewayUnavailable: Transient or rate-limit failure, or circuit open
        """
        self.circuit_breaker.before_call()
        start_time = time.time()
        logger.info("gateway_call_started", operation=operation, idempotency_key=idempotency_key)

        try:
            result = await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            self.circuit_breaker.on_failure()
            metrics.record_gateway_call(operation, "timeout", time.time() - start_time)
            logger.warning(
                "gateway_call_timed_out",
                operation=operation,
                idempotency_key=idempotency_key,
                timeout_seconds=self.timeout_seconds,
            )
            raise GatewayTimeout(
                f"Gateway {operation} timed out after {self.timeout_seconds}s",
                operation=operation,
                idempotency_key=idempotency_key,
            )
        except GatewayError as e:
            duration = time.time() - start_time
            metrics.record_gateway_error(e.error_type.value)
            logger.error(
                "gateway_api_error",
                operation=operation,
                error_type=e.error_type.value,
                error_code=e.code,
                error_message=str(e),
            )
            if e.error_type is GatewayErrorType.PERMANENT:
                self.circuit_breaker.on_success()
                metrics.record_gateway_call(operation, "declined", duration)
                raise PaymentDeclined(
                    str(e),
                    operation=operation,
                    gateway_code=e.code,
                    raw_response=e.raw_response,
                )
            self.circuit_breaker.on_failure()
            metrics.record_gateway_call(operation, "error", duration)
            raise GatewayUnavailable(
                f"Gateway {operation} failed: {e}",
                operation=operation,
                gateway_code=e.code,
            )

        self.circuit_breaker.on_success()
        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    async def authorize(
        self,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult:
        return await self._call(
            "authorize",
            idempotency_key,
            lambda: self.adapter.authorize(amount, currency, idempotency_key, metadata),
        )

    async def capture(
        self, gateway_ref: str, amount: int, currency: str, idempotency_key: str
    ) -> GatewayResult:
        return await self._call(
            "capture",
            idempotency_key,
            lambda: self.adapter.capture(gateway_ref, amount, currency, idempotency_key),
        )

    async def void(self, gateway_ref: str, idempotency_key: str) -> GatewayResult:
        return await self._call(
            "void", idempotency_key, lambda: self.adapter.void(gateway_ref, idempotency_key)
        )

    async def refund(
        self,
        gateway_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        return await self._call(
            "refund",
            idempotency_key,
            lambda: self.adapter.refund(gateway_ref, amount, currency, idempotency_key, reason),
        )

    async def lookup(self, idempotency_key: str) -> Optional[GatewayOutcome]:
        """
        Ask the gateway what happened to a call, retrying transient failures.

        Raises:
            GatewayUnavailable: If every attempt failed
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((GatewayUnavailable, GatewayTimeout)),
            stop=stop_after_attempt(self.lookup_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call(
                    "lookup", idempotency_key, lambda: self.adapter.lookup(idempotency_key)
                )
        return None
