"""Draining state shared by the lifespan handler and the readiness probe."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)

_shutting_down: bool = False


def is_shutting_down() -> bool:
    return _shutting_down


def set_shutting_down() -> None:
    """Stop advertising readiness so no new bank callbacks are routed here."""
    global _shutting_down
    _shutting_down = True
    logger.info("Graceful shutdown initiated, draining in-flight requests")


def reset_shutdown_state() -> None:
    """Reset shutdown state. Used for testing."""
    global _shutting_down
    _shutting_down = False


async def drain(in_flight: Callable[[], int], timeout: float, poll_interval: float = 0.1) -> int:
    """Wait until ``in_flight()`` reaches zero or ``timeout`` seconds pass.

    Returns the number of requests still running when the wait ended.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    remaining = in_flight()
    while remaining > 0 and loop.time() < deadline:
        await asyncio.sleep(poll_interval)
        remaining = in_flight()
    return remaining
