"""
Ledger monitor background worker.

Periodically reports webhook events that are stuck: pending past the stale
window (the handler died mid-flight) or failed (waiting for redelivery).
"""
import asyncio
import signal
from typing import Any, Dict, List, Optional

import structlog

from payment_events.config import Settings, get_settings
from payment_events.core.clock import as_utc, utcnow
from payment_events.core.ledger import IdempotencyLedger
from payment_events.database.connection import Database
from payment_events.monitoring.logging import setup_logging
from payment_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def sweep_stuck_events(ledger: IdempotencyLedger, limit: int = 100) -> List[Dict[str, Any]]:
    """
    Report stuck ledger entries once.

    Args:
        ledger: Idempotency ledger
        limit: Maximum entries to report per sweep

    Returns:
        List[Dict[str, Any]]: One summary per stuck event, oldest first
    """
    stuck = await ledger.find_stuck(limit=limit)
    now = utcnow()

    summaries = []
    for event in stuck:
        received_at = as_utc(event.received_at)
        summary = {
            "event_id": event.provider_event_id,
            "event_type": event.type,
            "status": event.processing_status,
            "attempts": event.attempts,
            "age_seconds": int((now - received_at).total_seconds()),
            "error": event.error_message,
        }
        summaries.append(summary)
        logger.warning("webhook_event_stuck", **summary)

    metrics.set_ledger_stuck_events(len(summaries))
    logger.info("ledger_sweep_completed", stuck_count=len(summaries))
    return summaries


async def start_ledger_monitor(settings: Optional[Settings] = None) -> None:
    """
    Start the ledger monitor.

    Sweeps every `ledger_monitor_interval_seconds` until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    database = Database.from_settings(settings)
    ledger = IdempotencyLedger(
        database.session_factory,
        stale_after_seconds=settings.ledger_stale_after_seconds,
    )

    logger.info(
        "ledger_monitor_starting",
        interval_seconds=settings.ledger_monitor_interval_seconds,
        stale_after_seconds=settings.ledger_stale_after_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        while not stop.is_set():
            try:
                await sweep_stuck_events(ledger)
            except Exception as e:
                # Keep sweeping; the next pass may succeed
                logger.error("ledger_sweep_failed", error=str(e))

            try:
                await asyncio.wait_for(
                    stop.wait(), timeout=settings.ledger_monitor_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
    finally:
        await database.dispose()
        logger.info("ledger_monitor_stopped")


def main() -> None:
    asyncio.run(start_ledger_monitor())


if __name__ == "__main__":
    main()
