"""
Tests for the background workers.
"""
import asyncio
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from commerce_core.core.exceptions import TransientError
from commerce_core.core.results import ActionResult
from commerce_core.core.service import CommerceService
from commerce_core.workers import WebhookDispatcher, run_reconciliation_cycle
from tests.factories import WEBHOOK_URL, RecordingReceiver, draft, ok


class TestReconciliationWorker:
    """Test suite for the reconciliation cycle."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cycle_runs_reconciliation_and_retries(
        self, commerce: CommerceService, stocked: Dict[str, Any]
    ) -> None:
        outcome = await run_reconciliation_cycle(commerce)

        assert outcome["reconciliation"]["success"] is True
        assert outcome["reconciliation"]["data"]["stock_levels_checked"] == 1
        assert outcome["retries"]["data"]["retried"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_reconciliation_still_runs_retries(self) -> None:
        commerce = MagicMock()
        commerce.reconcile = AsyncMock(
            return_value=ActionResult.failure(TransientError("database down"))
        )
        commerce.retry_failed_payments = AsyncMock(
            return_value=ActionResult.ok({"retried": 2, "results": []})
        )

        outcome = await run_reconciliation_cycle(commerce)

        assert outcome["reconciliation"]["error"]["code"] == "transient_error"
        assert outcome["retries"]["data"]["retried"] == 2
        commerce.retry_failed_payments.assert_awaited_once()


class TestWebhookDispatcher:
    """Test suite for the dispatcher loop."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_process_batch(
        self, commerce: CommerceService, receiver: RecordingReceiver, stocked: Dict[str, Any]
    ) -> None:
        ok(await commerce.register_webhook(WEBHOOK_URL, "ERP", ["order.created"]))
        ok(await commerce.create_order(draft()))
        dispatcher = WebhookDispatcher(commerce.webhooks, poll_interval_seconds=0.01)

        summary = await dispatcher.process_batch()

        assert summary["claimed"] == 1
        assert summary["success"] == 1
        assert len(receiver.requests) == 1
        assert (await dispatcher.process_batch())["claimed"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_loop_survives_errors_and_stops(self, mocker: Any) -> None:
        """Test a failing sweep is logged and the loop keeps polling until stopped."""
        engine = MagicMock(worker_id="worker-1")
        dispatcher = WebhookDispatcher(engine, poll_interval_seconds=0.01, batch_size=10)
        calls = []

        async def sweep(limit: Any) -> Dict[str, int]:
            calls.append(limit)
            if len(calls) == 1:
                raise RuntimeError("sweep exploded")
            if len(calls) >= 3:
                dispatcher.stop()
            return {"claimed": 0}

        engine.sweep = sweep
        sleep = mocker.spy(asyncio, "sleep")

        await asyncio.wait_for(dispatcher.start(), timeout=2)

        assert calls == [10, 10, 10]
        assert sleep.call_count >= 2
