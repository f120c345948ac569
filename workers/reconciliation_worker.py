"""
Reservation reconciliation background worker.

Every ``RECONCILIATION_INTERVAL_SECONDS`` releases stock held by order
reservations that never reached a saved order.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from config import Settings, get_settings
from core.context import ServiceContext
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(context: ServiceContext) -> None:
    """Run one reconciliation pass."""
    try:
        result = await context.reconciler.release_stale()
    except Exception as e:
        logger.error("reconciliation_execution_error", error=str(e), error_type=type(e).__name__)
        return

    if result["failed"]:
        logger.warning("reconciliation_release_failures", failed=result["failed"])


async def start_reconciliation_worker(settings: Optional[Settings] = None) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    interval = settings.reconciliation_interval_seconds
    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=interval,
        reservation_timeout_seconds=settings.reservation_timeout_seconds,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    context = await ServiceContext.create(settings)
    try:
        while running:
            await run_reconciliation(context)

            # Sleep in short slices so shutdown signals are honoured promptly
            remaining = float(interval)
            while remaining > 0 and running:
                await asyncio.sleep(min(remaining, 1.0))
                remaining -= 1.0
    finally:
        await context.close()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()
