"""
Reconciliation background worker.

Runs on a fixed interval:
- reconciliation (pending gateway outcomes, stock ledgers, order totals)
- the failed-payment retry sweep
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from ..config import Settings, get_settings
from ..core.service import CommerceService
from ..monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_cycle(commerce: CommerceService) -> Dict[str, Any]:
    """
    Run one reconciliation pass followed by the payment retry sweep.

    Returns:
        Dict[str, Any]: Reconciliation report and retry summary
    """
    logger.info("reconciliation_cycle_started")

    reconciliation = await commerce.reconcile()
    if not reconciliation.success:
        logger.error(
            "reconciliation_run_failed",
            error_code=reconciliation.error_code,
            error=reconciliation.error,
        )

    retries = await commerce.retry_failed_payments()
    if not retries.success:
        logger.error(
            "payment_retry_sweep_failed",
            error_code=retries.error_code,
            error=retries.error,
        )

    report = reconciliation.data or {}
    logger.info(
        "reconciliation_cycle_completed",
        discrepancy_count=len(report.get("discrepancies", [])),
        payments_retried=(retries.data or {}).get("retried", 0),
    )
    return {"reconciliation": reconciliation.to_dict(), "retries": retries.to_dict()}


async def start_reconciliation_worker(
    settings: Optional[Settings] = None, interval_seconds: Optional[float] = None
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Settings; loaded from the environment when omitted
        interval_seconds: Seconds between cycles (default from settings)
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    commerce = CommerceService.from_settings(settings)
    await commerce.startup()

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation_cycle(commerce)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e), exc_info=e)
                # Continue running even if one cycle fails

            # Wait for the next cycle (with periodic checks for shutdown signal)
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        await commerce.shutdown()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between reconciliation cycles",
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
