"""Core utility functions shared across modules."""

from __future__ import annotations

import asyncio
from typing import Callable

DEFAULT_POLL_INTERVAL = 0.05


async def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> bool:
    """Yield to the event loop until ``predicate`` holds or ``timeout`` elapses.

    The predicate is checked before the first sleep and once more at the
    deadline, so a zero timeout still reports the current condition. Every wait
    in the package goes through this helper: broker readiness, device replies
    and broker replies.

    Args:
        predicate: Cheap, non-blocking check evaluated on the loop thread.
        timeout: Seconds to wait before giving up.
        interval: Upper bound on the time between two checks.

    Returns:
        True if the predicate became true, False on timeout.
    """

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout)

    while True:
        if predicate():
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return predicate()
        await asyncio.sleep(min(interval, remaining))
