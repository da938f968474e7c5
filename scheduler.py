"""
scheduler.py — background queue worker.

Every QUEUE_POLL_INTERVAL_SECS (default 30 s):
  → process one batch of pending queue items
Every QUEUE_MAINTENANCE_EVERY ticks (default 10):
  → fail stale processing items, reset retryable failures,
    purge old finished items and expired cache entries

An error in one tick is logged and the loop backs off for double the interval.
"""
from __future__ import annotations

import asyncio
import logging

import config
from processing_queue import ProcessingQueue

logger = logging.getLogger(__name__)

_running = False


async def tick(queue: ProcessingQueue, n: int) -> dict:
    """One scheduler iteration. `n` is the 1-based tick number."""
    result = await queue.process_pending_queue()
    if config.QUEUE_MAINTENANCE_EVERY and n % config.QUEUE_MAINTENANCE_EVERY == 0:
        result["maintenance"] = await queue.run_maintenance()
    return result


async def _scheduler_loop(queue: ProcessingQueue) -> None:
    """Background coroutine — runs until stop() is called or the task is cancelled."""
    logger.info("📅 Queue worker started (every %ds, batch %d)",
                config.QUEUE_POLL_INTERVAL_SECS, config.QUEUE_BATCH_SIZE)
    n = 0
    while _running:
        n += 1
        delay = config.QUEUE_POLL_INTERVAL_SECS
        try:
            await tick(queue, n)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Queue worker tick %d failed: %s", n, exc, exc_info=True)
            delay *= 2
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            break
    logger.info("Queue worker stopped after %d ticks", n)


def start(queue: ProcessingQueue) -> asyncio.Task:
    """Start the worker as a background asyncio Task."""
    global _running
    _running = True
    return asyncio.create_task(_scheduler_loop(queue))


def stop() -> None:
    global _running
    _running = False
