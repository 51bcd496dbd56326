"""
Retention Loop
==============
Background task that purges expired ProcessedEventRecords.

Records live for PROCESSED_EVENT_TTL_SECONDS (7 days by default), which
outlasts the provider's redelivery window; after that a redelivery would
count as fresh, so the row is no longer worth keeping.

Features:
- Runs every RETENTION_INTERVAL seconds
- Logs how many records were purged per cycle
- Keeps running after errors
"""

import asyncio
from typing import Optional

import structlog

from pipeline.idempotency import IProcessedEventStore

logger = structlog.get_logger(component="retention")


async def purge_once(store: IProcessedEventStore) -> int:
    purged = await store.purge_expired()
    if purged:
        logger.info("processed_events_purged", count=purged)
    return purged


async def retention_loop(
    store: IProcessedEventStore,
    interval_seconds: float = 3600,
    max_cycles: Optional[int] = None,
):
    """
    Purge expired records every ``interval_seconds`` until cancelled.
    ``max_cycles`` bounds the loop (maintenance scripts, tests).
    """
    logger.info("retention_loop_started", interval=interval_seconds)

    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        try:
            await purge_once(store)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("retention_loop_error", error=str(e))

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        await asyncio.sleep(interval_seconds)


async def get_retention_stats(store: IProcessedEventStore, interval_seconds: float) -> dict:
    """Retention statistics for monitoring"""
    try:
        return {
            "interval_seconds": interval_seconds,
            "processed_events": await store.count(),
        }
    except Exception as e:
        return {
            "interval_seconds": interval_seconds,
            "error": str(e),
        }
