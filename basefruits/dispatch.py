"""Broadcast one reminder message to every enabled subscriber."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import asdict, dataclass
from functools import partial
from typing import Callable, Sequence

import httpx

from .blocking import to_thread
from .errors import BroadcastConfigError
from .messages import pick_message
from .metrics import DELIVERIES
from .push import PushSender
from .config import Settings
from .ratelimit import DeliveryLimiter, build_limiter
from .store import SubscriberRecord, SubscriptionStore

logger = logging.getLogger(__name__)


@dataclass
class BroadcastSummary:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class BroadcastDispatcher:
    """Fan a single randomly chosen message out to all enabled subscribers.

    Delivery order follows the store's iteration order. Failures are counted
    and never stop the run; nothing is retried until the next run. A fresh
    limiter is built per run, so pacing applies between deliveries of one
    run and overlapping runs do not share a budget.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        sender: PushSender,
        limiter_factory: Callable[[], DeliveryLimiter],
        messages: Sequence[str],
        rng: random.Random | None = None,
        concurrency: int = 1,
    ) -> None:
        self.store = store
        self.sender = sender
        self.limiter_factory = limiter_factory
        self.messages = tuple(messages)
        self.rng = rng
        self.concurrency = max(concurrency, 1)

    async def enabled_subscribers(self) -> list[tuple[str, SubscriberRecord]]:
        snapshot = await to_thread(self.store.get)
        return [(fid, record) for fid, record in snapshot.items() if record.enabled]

    async def run_broadcast(self) -> BroadcastSummary:
        if not self.messages:
            raise BroadcastConfigError("no reminder messages configured")

        subscribers = await self.enabled_subscribers()
        summary = BroadcastSummary()
        if not subscribers:
            logger.info("No users with notifications enabled")
            return summary

        message = pick_message(self.messages, self.rng)
        logger.info("Sending notification to %d users: %r", len(subscribers), message)

        limiter = self.limiter_factory()
        sem = asyncio.Semaphore(self.concurrency)

        async with self.sender.client() as client:

            async def _deliver(fid: str, record: SubscriberRecord) -> None:
                async with sem:
                    await limiter.acquire()
                    try:
                        ok = await self.sender.send(
                            client, fid, record.url, record.token, message
                        )
                    except Exception:  # noqa: BLE001
                        logger.exception("Unexpected error notifying user %s", fid)
                        ok = False
                summary.attempted += 1
                if ok:
                    summary.succeeded += 1
                    DELIVERIES.labels("success").inc()
                else:
                    summary.failed += 1
                    DELIVERIES.labels("failure").inc()

            await asyncio.gather(*[_deliver(fid, rec) for fid, rec in subscribers])

        logger.info(
            "Notifications complete: %d sent, %d failed",
            summary.succeeded, summary.failed,
        )
        return summary


def build_dispatcher(
    store: SubscriptionStore,
    settings: Settings,
    messages: Sequence[str],
    transport: httpx.AsyncBaseTransport | None = None,
) -> BroadcastDispatcher:
    sender = PushSender(
        title=settings.NOTIFICATION_TITLE,
        target_url=settings.NOTIFICATION_TARGET_URL,
        id_prefix=settings.NOTIFICATION_ID_PREFIX,
        timeout=settings.PUSH_TIMEOUT_SECONDS,
        transport=transport,
    )
    return BroadcastDispatcher(
        store,
        sender,
        partial(build_limiter, settings),
        messages,
        concurrency=settings.BROADCAST_CONCURRENCY,
    )
