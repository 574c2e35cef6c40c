"""
Background Sweep Worker
=======================

Runs every ``sweep_interval_seconds`` (default 15 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance runs the sweep
  at a time across multiple API processes.
* Each step below is itself a compare-and-set on the rows it touches,
  so a sweep racing a driver's accept or a rider's cancel is harmless.

Steps per cycle
---------------
1. Take drivers offline whose presence was not refreshed within
   ``presence_stale_after_seconds``.
2. For pending rides with no open queue entries: cancel those past the
   pending timeout (``no_driver_available``), re-match the rest with a
   relaxed radius.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import redis.asyncio as aioredis

from ride_dispatch.infrastructure.locks import DistributedLock, LockNotAcquired

if TYPE_CHECKING:
    from ride_dispatch.services.dispatch import DispatchService

logger = logging.getLogger(__name__)

_task: Optional[asyncio.Task] = None
_stop_event: Optional[asyncio.Event] = None


@dataclass
class SweepReport:
    stale_drivers: list[int] = field(default_factory=list)
    rematched_rides: list[int] = field(default_factory=list)
    cancelled_rides: list[int] = field(default_factory=list)


# ── Public API ────────────────────────────────────────────────────────


async def start_sweep_loop(dispatch: "DispatchService", redis: aioredis.Redis) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(dispatch, redis))
    logger.info(
        "Sweep worker started (interval=%ds)", dispatch.settings.sweep_interval_seconds
    )


async def stop_sweep_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Sweep worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(dispatch: "DispatchService", redis: aioredis.Redis) -> None:
    """Periodic loop: run a sweep cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_sweep_cycle(dispatch, redis)
        except Exception:
            logger.exception("Unhandled error in sweep cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=dispatch.settings.sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_sweep_cycle(
    dispatch: "DispatchService", redis: aioredis.Redis
) -> Optional[SweepReport]:
    """Execute one sweep.  Returns ``None`` when another worker holds the lock."""
    report = SweepReport()
    try:
        async with DistributedLock(redis, "dispatch_sweep", ttl_seconds=60):
            report.stale_drivers = await dispatch.presence.expire_stale()
            for driver_id in report.stale_drivers:
                await dispatch.scheduler.stop(driver_id)

            rematched, cancelled = await dispatch.lifecycle.enforce_pending_timeouts(
                dispatch.matcher
            )
            report.rematched_rides = rematched
            report.cancelled_rides = cancelled
    except LockNotAcquired:
        logger.debug("Sweep lock held by another worker, skipping cycle")
        return None

    if report.rematched_rides or report.cancelled_rides or report.stale_drivers:
        logger.info(
            "Sweep: %d stale drivers, %d rides re-matched, %d rides timed out",
            len(report.stale_drivers),
            len(report.rematched_rides),
            len(report.cancelled_rides),
        )
    return report
