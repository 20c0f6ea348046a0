"""
Webhook dispatcher background worker.

Continuously claims due webhook deliveries and posts them to subscribers.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from ..core.service import CommerceService
from ..core.webhooks import WebhookDeliveryEngine
from ..monitoring.logging import action_context, setup_logging

logger = structlog.get_logger(__name__)


class WebhookDispatcher:
    """
    Polling loop around the delivery engine's sweep.

    Several dispatchers may run side by side: claims are leases, so each due
    delivery is attempted by one worker at a time.
    """

    def __init__(
        self,
        engine: WebhookDeliveryEngine,
        poll_interval_seconds: float = 5.0,
        batch_size: Optional[int] = None,
    ):
        self.engine = engine
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._running = False

        logger.info(
            "webhook_dispatcher_initialized",
            worker_id=engine.worker_id,
            poll_interval_seconds=poll_interval_seconds,
        )

    async def process_batch(self) -> Dict[str, int]:
        """Run one sweep and return its summary."""
        with action_context("webhook_sweep", worker_id=self.engine.worker_id):
            summary = await self.engine.sweep(self.batch_size)
            if summary["claimed"]:
                logger.info("webhook_batch_processed", **summary)
        return summary

    async def start(self) -> None:
        """
        Start the dispatcher loop.

        Runs until stop() is called.
        """
        self._running = True
        logger.info("webhook_dispatcher_started")

        try:
            while self._running:
                try:
                    summary = await self.process_batch()

                    if summary["claimed"] == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # A full batch may mean more are due
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("webhook_dispatcher_error", error=str(e), exc_info=e)
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("webhook_dispatcher_stopped")

    def stop(self) -> None:
        """Stop the dispatcher after the current batch."""
        self._running = False
        logger.info("webhook_dispatcher_stop_requested")


async def start_webhook_dispatcher(settings: Optional[Settings] = None) -> None:
    """
    Start the webhook dispatcher worker.

    Runs continuously until SIGINT or SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    logger.info("webhook_dispatcher_worker_starting")

    commerce = CommerceService.from_settings(settings)
    await commerce.startup()
    dispatcher = WebhookDispatcher(
        commerce.webhooks,
        poll_interval_seconds=settings.webhook_poll_interval_seconds,
        batch_size=settings.webhook_batch_size,
    )

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("webhook_dispatcher_worker_shutdown_signal_received", signal=sig)
        dispatcher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await dispatcher.start()
    except Exception as e:
        logger.error("webhook_dispatcher_worker_error", error=str(e))
        raise
    finally:
        await commerce.shutdown()
        logger.info("webhook_dispatcher_worker_stopped")


def main() -> None:
    asyncio.run(start_webhook_dispatcher())


if __name__ == "__main__":
    main()
