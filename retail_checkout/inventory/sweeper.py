"""
Inventory Service — expired reservation sweeper

Runs beside the HTTP server and hands stock held by abandoned checkouts back
to the available pool. It releases through the ledger's normal CAS path, so
it cannot race a checkout that is committing the same reservation.
"""

import asyncio
import logging

from .ledger import InventoryLedger

logger = logging.getLogger(__name__)


async def run_sweeper(
    ledger: InventoryLedger,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Sweep every ``interval_seconds`` until ``shutdown_event`` is set."""
    logger.info("Reservation sweeper started (interval=%.1fs)", interval_seconds)
    while not shutdown_event.is_set():
        try:
            await ledger.sweep_expired()
        except Exception:
            logger.exception("Reservation sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Reservation sweeper stopped")
