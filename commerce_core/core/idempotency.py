"""
Idempotency protocol for operations that move money or create records.

This module implements a two-tier idempotency system:
1. Redis cache for fast lookups of completed results (optional)
2. The idempotency_keys table, authoritative for claims

Claiming a key is an explicit protocol step: insert a pending row inside a
savepoint, catch the unique violation, read back the existing row. The first
writer wins; everyone else replays its stored result, or is told the operation
is still in flight. A pending row whose lease expired (the owner crashed or
its gateway call timed out) can be taken over by one caller through a
conditional update and re-sent with the same key.
"""
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..database import Database
from ..database.enums import IdempotencyStatus
from ..database.models import IdempotencyKey, utc_now
from ..monitoring.metrics import metrics
from .exceptions import OperationInProgress, ValidationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IdempotencyClaim:
    """Result of claiming a key."""

    key: str
    operation: str
    owner: bool
    status: IdempotencyStatus = IdempotencyStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    resumed: bool = False

    @property
    def is_replay(self) -> bool:
        return not self.owner and self.status is not IdempotencyStatus.PENDING


class IdempotencyManager:
    """
    Manages idempotency keys and their stored results.

    Implements a two-tier system:
    - Redis for fast cache lookups of completed operations
    - The database for claims and durable results
    """

    def __init__(
        self,
        lease_seconds: int = 60,
        cache_ttl: int = 86400,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize idempotency manager.

        Args:
            lease_seconds: How long a pending claim blocks other callers
            cache_ttl: Lifetime of stored results (seconds)
            redis_client: Optional Redis client for the cache tier
        """
        self.lease_seconds = lease_seconds
        self.cache_ttl = cache_ttl
        self.redis_client = redis_client

    @classmethod
    def from_settings(
        cls, settings: Settings, redis_client: Optional[aioredis.Redis] = None
    ) -> "IdempotencyManager":
        if redis_client is None and settings.redis_url:
            redis_client = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return cls(
            lease_seconds=settings.idempotency_lease_seconds,
            cache_ttl=settings.idempotency_cache_ttl,
            redis_client=redis_client,
        )

    @staticmethod
    def generate_key(namespace: str, operation: str, *parts: Any) -> str:
        """
        Build a deterministic key.

        Format: {namespace}:{operation}:{part}:{part}...
        e.g. payment:capture:<payment_id>:<order_id>
        """
        return ":".join([namespace, operation, *(str(part) for part in parts)])

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.redis_client is None:
            return None
        try:
            cached = await self.redis_client.get(f"idempotency:{key}")
            return json.loads(cached) if cached else None
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=key)
            return None

    async def _cache_set(self, key: str, value: Dict[str, Any]) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                f"idempotency:{key}", self.cache_ttl, json.dumps(value)
            )
            logger.info("idempotency_response_cached", idempotency_key=key)
        except Exception as e:
            logger.warning("idempotency_cache_store_error", error=str(e), idempotency_key=key)

    async def _load(self, session: AsyncSession, key: str) -> Optional[IdempotencyKey]:
        stmt = (
            select(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def claim(
        self,
        session: AsyncSession,
        key: str,
        operation: str,
        resource_id: Optional[str] = None,
    ) -> IdempotencyClaim:
        """
        Claim a key for an operation.

        Args:
            session: Session holding the caller's transaction
            key: Idempotency key
            operation: Operation name; a key cannot be reused for another one
            resource_id: Entity the operation acts on

        Returns:
            IdempotencyClaim: owner=True if the caller must execute the operation,
                otherwise a replay of the stored outcome

        Raises:
            OperationInProgress: Another caller holds an unexpired lease
            ValidationError: The key was used for a different operation
        """
        cached = await self._cache_get(key)
        if cached is not None and cached.get("operation") == operation:
            metrics.record_idempotent_replay(operation, "redis")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="redis")
            return IdempotencyClaim(
                key=key,
                operation=operation,
                owner=False,
                status=IdempotencyStatus(cached["status"]),
                result=cached.get("result"),
                error=cached.get("error"),
            )

        now = utc_now()
        record = IdempotencyKey(
            key=key,
            operation=operation,
            resource_id=resource_id,
            status=IdempotencyStatus.PENDING.value,
            locked_until=now + timedelta(seconds=self.lease_seconds),
            expires_at=now + timedelta(seconds=self.cache_ttl),
        )
        try:
            async with session.begin_nested():
                session.add(record)
                await session.flush()
            logger.info("idempotency_key_claimed", idempotency_key=key, operation=operation)
            return IdempotencyClaim(key=key, operation=operation, owner=True)
        except IntegrityError:
            logger.info("idempotency_key_exists", idempotency_key=key, operation=operation)

        existing = await self._load(session, key)
        if existing is None:
            # Row vanished between the violation and the read (purged); treat as busy
            raise OperationInProgress(
                f"Idempotency key {key} is being processed", idempotency_key=key
            )
        if existing.operation != operation:
            raise ValidationError(
                f"Idempotency key {key} was already used for {existing.operation}",
                idempotency_key=key,
                operation=existing.operation,
            )

        status = IdempotencyStatus(existing.status)
        if status is not IdempotencyStatus.PENDING:
            metrics.record_idempotent_replay(operation, "database")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="database")
            await self._cache_set(key, self._snapshot(existing))
            return IdempotencyClaim(
                key=key,
                operation=operation,
                owner=False,
                status=status,
                result=existing.result,
                error=existing.error,
            )

        takeover = (
            update(IdempotencyKey)
            .where(
                IdempotencyKey.key == key,
                IdempotencyKey.status == IdempotencyStatus.PENDING.value,
                or_(IdempotencyKey.locked_until.is_(None), IdempotencyKey.locked_until < now),
            )
            .values(locked_until=now + timedelta(seconds=self.lease_seconds))
            .execution_options(synchronize_session=False)
        )
        if (await session.execute(takeover)).rowcount == 1:
            logger.warning("idempotency_key_resumed", idempotency_key=key, operation=operation)
            return IdempotencyClaim(key=key, operation=operation, owner=True, resumed=True)

        raise OperationInProgress(
            f"Operation {operation} with key {key} is already in progress",
            idempotency_key=key,
            operation=operation,
        )

    async def complete(
        self, session: AsyncSession, key: str, result: Dict[str, Any]
    ) -> None:
        """Store the successful result; later claims replay it."""
        await self._finish(session, key, IdempotencyStatus.SUCCESS, result=result)

    async def fail(
        self,
        session: AsyncSession,
        key: str,
        error: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Store a definitive failure (e.g. a decline); later claims replay it."""
        await self._finish(session, key, IdempotencyStatus.ERROR, result=result, error=error)

    async def release(self, session: AsyncSession, key: str) -> None:
        """
        Drop the lease but keep the claim pending.

        Used when the outcome is unknown (gateway timeout): the next caller with
        the same key, or reconciliation, resumes it.
        """
        stmt = (
            update(IdempotencyKey)
            .where(
                IdempotencyKey.key == key,
                IdempotencyKey.status == IdempotencyStatus.PENDING.value,
            )
            .values(locked_until=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)
        logger.info("idempotency_lease_released", idempotency_key=key)

    async def abandon(self, session: AsyncSession, key: str) -> None:
        """Delete a pending claim whose operation never reached an external system."""
        stmt = delete(IdempotencyKey).where(
            IdempotencyKey.key == key,
            IdempotencyKey.status == IdempotencyStatus.PENDING.value,
        )
        await session.execute(stmt)

    async def _finish(
        self,
        session: AsyncSession,
        key: str,
        status: IdempotencyStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        now = utc_now()
        stmt = (
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .values(
                status=status.value,
                result=result,
                error=error,
                locked_until=None,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)
        record = await self._load(session, key)
        if record is not None and self.redis_client is not None:
            snapshot = self._snapshot(record)
            # The commit can still fail; only a committed outcome may be replayed from Redis
            Database.after_commit(session, lambda: self._cache_set(key, snapshot))
        logger.info("idempotency_key_completed", idempotency_key=key, status=status.value)

    async def stale_pending(
        self, session: AsyncSession, operations: Optional[List[str]] = None, limit: int = 100
    ) -> List[IdempotencyKey]:
        """Pending claims with no live lease: outcomes nobody is waiting on."""
        stmt = (
            select(IdempotencyKey)
            .where(
                IdempotencyKey.status == IdempotencyStatus.PENDING.value,
                or_(
                    IdempotencyKey.locked_until.is_(None),
                    IdempotencyKey.locked_until < utc_now(),
                ),
            )
            .order_by(IdempotencyKey.id)
            .limit(limit)
        )
        if operations:
            stmt = stmt.where(IdempotencyKey.operation.in_(operations))
        return list((await session.execute(stmt)).scalars().all())

    async def purge_expired(self, session: AsyncSession) -> int:
        """Delete completed claims past their expiry."""
        stmt = delete(IdempotencyKey).where(
            IdempotencyKey.status != IdempotencyStatus.PENDING.value,
            IdempotencyKey.expires_at < utc_now(),
        )
        result = await session.execute(stmt)
        return result.rowcount or 0

    @staticmethod
    def _snapshot(record: IdempotencyKey) -> Dict[str, Any]:
        return {
            "operation": record.operation,
            "status": record.status,
            "result": record.result,
            "error": record.error,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
