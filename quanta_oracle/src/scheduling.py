"""Cancellable periodic loops.

A loop runs one cycle, then sleeps until the next period or until the stop
event is set, whichever comes first. Setting the event never interrupts a
cycle that is already running; the loop exits once that cycle is done.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


async def run_periodically(
    cycle: Callable[[], Awaitable[Any]],
    interval: float,
    stop_event: asyncio.Event,
    *,
    name: str,
    fatal_errors: tuple[type[BaseException], ...] = (),
) -> int:
    """Run a coroutine function every ``interval`` seconds until stopped.

    Errors listed in ``fatal_errors`` stop the loop and propagate. Any other
    exception is logged and the loop carries on at its normal cadence.

    :param cycle: Coroutine function run once per period.
    :param interval: Seconds to wait after each cycle.
    :param stop_event: Set to stop the loop after the current cycle.
    :param name: Loop name for log messages.
    :param fatal_errors: Exception types that end the loop.
    :returns: Number of cycles run.
    :raises ValueError: If interval is not positive.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    logger.info(f"[{name}] Starting loop (every {interval}s)")
    cycles = 0
    while not stop_event.is_set():
        cycles += 1
        try:
            await cycle()
        except fatal_errors as e:
            logger.error(f"[{name}] Stopping loop: {e}")
            raise
        except Exception as e:
            logger.error(f"[{name}] Cycle failed: {type(e).__name__}: {e}")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info(f"[{name}] Stopped after {cycles} cycles")
    return cycles
