from __future__ import annotations

import enum
import logging
import time
from typing import Mapping, Optional

from .dispatch import BroadcastDispatcher, BroadcastSummary
from .metrics import BROADCAST_RUNS

logger = logging.getLogger(__name__)

CRON_HEADER = "x-vercel-cron"
CRON_USER_AGENT = "vercel-cron"


class TriggerMode(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


def is_scheduled_request(headers: Mapping[str, str], query: Mapping[str, str]) -> bool:
    """True when a request carries the scheduled-invocation marker."""
    if headers.get(CRON_HEADER):
        return True
    if CRON_USER_AGENT in (headers.get("user-agent") or ""):
        return True
    return query.get("scheduled") == "true"


class BroadcastState:
    def __init__(self) -> None:
        self.running = 0
        self.last_started: Optional[float] = None
        self.last_finished: Optional[float] = None
        self.last_mode: Optional[str] = None
        self.last_summary: Optional[dict[str, int]] = None
        self.last_error: Optional[str] = None
        self.total_runs = 0
        self.total_errors = 0

    def snapshot(self) -> dict:
        return {
            "running": self.running,
            "last_started": self.last_started,
            "last_finished": self.last_finished,
            "last_mode": self.last_mode,
            "last_summary": self.last_summary,
            "last_error": self.last_error,
            "total_runs": self.total_runs,
            "total_errors": self.total_errors,
        }


async def run_triggered(
    dispatcher: BroadcastDispatcher,
    mode: TriggerMode,
    state: BroadcastState,
    source: str | None = None,
) -> BroadcastSummary:
    """Run one broadcast and record it. Overlapping runs are not prevented."""
    logger.info("Broadcast triggered (%s) by %s", mode.value, source or "unknown")
    state.running += 1
    state.last_started = time.time()
    state.last_mode = mode.value
    try:
        summary = await dispatcher.run_broadcast()
    except Exception as exc:
        state.last_error = str(exc)
        state.total_errors += 1
        BROADCAST_RUNS.labels(mode.value, "error").inc()
        raise
    else:
        state.last_error = None
        state.last_summary = summary.as_dict()
        state.total_runs += 1
        BROADCAST_RUNS.labels(mode.value, "ok").inc()
        return summary
    finally:
        state.running -= 1
        state.last_finished = time.time()
