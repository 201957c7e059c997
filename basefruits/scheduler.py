from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


async def run_periodic(
    task: Callable[[], Awaitable[object]],
    interval: int,
    jitter: int,
    backoff_max: int,
) -> None:
    """Await ``task`` every ``interval`` (+ jitter) seconds until cancelled.

    Runs from this loop never overlap. Errors are logged and followed by a
    capped exponential backoff.
    """
    backoff = 1
    while True:
        delay = interval + random.randint(0, max(0, jitter))
        await asyncio.sleep(delay)
        try:
            await task()
            backoff = 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Scheduled broadcast failed: %s", exc)
            await asyncio.sleep(min(backoff, backoff_max))
            backoff = min(backoff * 2, backoff_max)
