"""
Tests for the idempotency protocol.
"""
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from commerce_core.core.exceptions import OperationInProgress, ValidationError
from commerce_core.core.idempotency import IdempotencyManager
from commerce_core.database import Database
from commerce_core.database.enums import IdempotencyStatus
from commerce_core.database.models import IdempotencyKey, utc_now


@pytest.fixture
def manager() -> IdempotencyManager:
    return IdempotencyManager(lease_seconds=60, cache_ttl=3600)


class TestKeyGeneration:
    @pytest.mark.unit
    def test_generate_key(self) -> None:
        key = IdempotencyManager.generate_key("payment", "capture", "pay_1", 2)

        assert key == "payment:capture:pay_1:2"


class TestClaims:
    """Test suite for claiming, completing and replaying keys."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_first_claim_owns_the_key(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture", "pay_1")

        assert claim.owner is True
        assert claim.is_replay is False
        assert claim.resumed is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_key_replays(self, db: Database, manager: IdempotencyManager) -> None:
        """Test a second claim returns the stored result instead of running again."""
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.complete(session, "k-1", {"status": "captured"})

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")

        assert claim.owner is False
        assert claim.is_replay is True
        assert claim.status is IdempotencyStatus.SUCCESS
        assert claim.result == {"status": "captured"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_key_replays_the_error(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.authorize")
            await manager.fail(session, "k-1", "Card declined")

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.authorize")

        assert claim.status is IdempotencyStatus.ERROR
        assert claim.error == "Card declined"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_live_lease_blocks_other_callers(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")

        with pytest.raises(OperationInProgress):
            async with db.transaction() as session:
                await manager.claim(session, "k-1", "payment.capture")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_reused_for_another_operation(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.complete(session, "k-1", {})

        with pytest.raises(ValidationError, match="already used for payment.capture"):
            async with db.transaction() as session:
                await manager.claim(session, "k-1", "refund.process")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_released_key_is_resumed(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        """Test a key released after a timeout is taken over by the next caller."""
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.release(session, "k-1")

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")

        assert claim.owner is True
        assert claim.resumed is True

        with pytest.raises(OperationInProgress):
            async with db.transaction() as session:
                await manager.claim(session, "k-1", "payment.capture")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_lease_is_resumed(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await session.execute(
                update(IdempotencyKey).values(locked_until=utc_now() - timedelta(seconds=1))
            )

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")

        assert claim.resumed is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandon_frees_the_key(self, db: Database, manager: IdempotencyManager) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.abandon(session, "k-1")

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")

        assert claim.owner is True
        assert claim.resumed is False


class TestMaintenance:
    """Test suite for stale claims and expiry."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_pending(self, db: Database, manager: IdempotencyManager) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-live", "payment.capture")
            await manager.claim(session, "k-released", "payment.capture")
            await manager.release(session, "k-released")
            await manager.claim(session, "k-refund", "refund.process")
            await manager.release(session, "k-refund")
            await manager.claim(session, "k-done", "payment.capture")
            await manager.complete(session, "k-done", {})

        async with db.session() as session:
            stale = await manager.stale_pending(session, ["payment.capture"])
            everything = await manager.stale_pending(session)

        assert [record.key for record in stale] == ["k-released"]
        assert sorted(record.key for record in everything) == ["k-refund", "k-released"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_purge_keeps_pending_claims(
        self, db: Database, manager: IdempotencyManager
    ) -> None:
        async with db.transaction() as session:
            await manager.claim(session, "k-pending", "payment.capture")
            await manager.claim(session, "k-done", "payment.capture")
            await manager.complete(session, "k-done", {})
            await session.execute(
                update(IdempotencyKey).values(expires_at=utc_now() - timedelta(seconds=1))
            )

        async with db.transaction() as session:
            purged = await manager.purge_expired(session)

        assert purged == 1
        with pytest.raises(OperationInProgress):
            async with db.transaction() as session:
                await manager.claim(session, "k-pending", "payment.capture")


class TestRedisCache:
    """Test suite for the optional Redis tier."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_result_is_cached(self, db: Database) -> None:
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        manager = IdempotencyManager(cache_ttl=3600, redis_client=redis_client)

        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.complete(session, "k-1", {"status": "captured"})

        key, ttl, payload = redis_client.setex.call_args.args
        assert key == "idempotency:k-1"
        assert ttl == 3600
        assert json.loads(payload)["result"] == {"status": "captured"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cache_hit_skips_the_database(self, db: Database) -> None:
        redis_client = AsyncMock()
        redis_client.get.return_value = json.dumps(
            {"operation": "payment.capture", "status": "success", "result": {"ok": True}}
        )
        manager = IdempotencyManager(redis_client=redis_client)

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")

        assert claim.is_replay is True
        assert claim.result == {"ok": True}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_errors_fall_back_to_the_database(self, db: Database) -> None:
        redis_client = AsyncMock()
        redis_client.get.side_effect = ConnectionError("redis down")
        redis_client.setex.side_effect = ConnectionError("redis down")
        manager = IdempotencyManager(redis_client=redis_client)

        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")
            await manager.complete(session, "k-1", {})

        assert claim.owner is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_result_is_cached_only_after_commit(self, db: Database) -> None:
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        manager = IdempotencyManager(redis_client=redis_client)

        async with db.transaction() as session:
            await manager.claim(session, "k-1", "payment.capture")
            await manager.complete(session, "k-1", {"status": "captured"})
            redis_client.setex.assert_not_awaited()

        redis_client.setex.assert_awaited_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rolled_back_result_is_never_cached(self, db: Database) -> None:
        """Test a completion whose transaction rolls back leaves Redis untouched."""
        redis_client = AsyncMock()
        redis_client.get.return_value = None
        manager = IdempotencyManager(redis_client=redis_client)

        with pytest.raises(RuntimeError):
            async with db.transaction() as session:
                await manager.claim(session, "k-1", "payment.capture")
                await manager.complete(session, "k-1", {"status": "captured"})
                raise RuntimeError("settle failed before commit")

        redis_client.setex.assert_not_awaited()
        async with db.transaction() as session:
            claim = await manager.claim(session, "k-1", "payment.capture")
        assert claim.owner is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close(self) -> None:
        redis_client = AsyncMock()
        manager = IdempotencyManager(redis_client=redis_client)

        await manager.close()

        redis_client.aclose.assert_awaited_once()
