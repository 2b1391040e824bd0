"""Stalled task sweep background task."""

import asyncio
import logging
import random
from typing import Optional

from sendgate.config import Settings
from sendgate.db.base import Database
from sendgate.engine import TaskEngine
from sendgate.observability.metrics import metrics
from sendgate.observability.trace import set_trace_id

logger = logging.getLogger("sendgate.sweep")

_sweep_task: Optional[asyncio.Task] = None
_shutdown_event: Optional[asyncio.Event] = None


async def sweep_once(db: Database, config: Settings) -> int:
    """Fail one batch of stalled tasks. Returns how many were failed."""
    async with db.session() as session:
        engine = TaskEngine(session, config)
        return await engine.fail_stalled(
            batch_size=config.stall_sweep_batch_size,
            older_than_seconds=config.stall_after_seconds,
        )


async def stall_sweep_loop(db: Database, config: Settings):
    """
    Background loop that fails triggered/running tasks which stopped reporting.

    Owners re-trigger failed work under a new idempotency key. The interval
    is jittered by 20% either way so several instances do not sweep in
    lockstep.
    """
    base_interval = config.stall_sweep_interval_seconds
    logger.info(
        f"Stall sweep loop started (base interval: {base_interval}s, "
        f"stall after {config.stall_after_seconds}s)"
    )

    while not _shutdown_event.is_set():
        try:
            set_trace_id()
            failed = await sweep_once(db, config)
            metrics.set_gauge("tasks.stalled.last_sweep", failed)
            if failed > 0:
                logger.info(f"Failed {failed} stalled tasks")
        except Exception as e:
            logger.error(f"Stall sweep error: {e}", exc_info=True)

        try:
            await asyncio.wait_for(
                _shutdown_event.wait(),
                timeout=base_interval * random.uniform(0.8, 1.2),
            )
        except asyncio.TimeoutError:
            pass

    logger.info("Stall sweep loop stopped")


async def start_stall_sweep(db: Database, config: Settings):
    """Start the stall sweep background task."""
    global _sweep_task, _shutdown_event

    _shutdown_event = asyncio.Event()
    _sweep_task = asyncio.create_task(stall_sweep_loop(db, config))


async def stop_stall_sweep():
    """Stop the stall sweep background task."""
    global _sweep_task, _shutdown_event

    if _shutdown_event:
        _shutdown_event.set()

    if _sweep_task:
        try:
            await asyncio.wait_for(_sweep_task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Stall sweep task did not stop gracefully, cancelling")
            _sweep_task.cancel()
            try:
                await _sweep_task
            except asyncio.CancelledError:
                pass

    _sweep_task = None
    _shutdown_event = None
