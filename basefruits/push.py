"""Outbound delivery to the mini-app notification provider.

Each subscriber's stored ``url`` is the provider endpoint its ``token`` must be
redeemed against. A delivery counts as sent only when the provider answers
with a 2xx status *and* a JSON body.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import httpx

logger = logging.getLogger(__name__)


def notification_id(prefix: str, day: date | None = None) -> str:
    """Per-day identifier so the provider can dedupe repeated runs."""

    day = day or datetime.now(timezone.utc).date()
    return f"{prefix}-{day.isoformat()}"


class PushSender:
    def __init__(
        self,
        title: str,
        target_url: str,
        id_prefix: str = "daily-reminder",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.title = title
        self.target_url = target_url
        self.id_prefix = id_prefix
        self.timeout = timeout
        self._transport = transport

    def build_payload(self, token: str, body: str, day: date | None = None) -> dict:
        return {
            "notificationId": notification_id(self.id_prefix, day),
            "title": self.title,
            "body": body,
            "targetUrl": self.target_url,
            "tokens": [token],
        }

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def send(
        self,
        client: httpx.AsyncClient,
        identity: str,
        url: str,
        token: str,
        body: str,
    ) -> bool:
        payload = self.build_payload(token, body)
        try:
            resp = await client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Notification to user %s timed out", identity)
            return False
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Notification to user %s failed: %s", identity, e)
            return False

        if not resp.is_success:
            logger.warning(
                "Notification to user %s rejected: %d %s",
                identity, resp.status_code, resp.reason_phrase,
            )
            return False
        try:
            result = resp.json()
        except ValueError:
            logger.warning("Notification to user %s got a non-JSON response", identity)
            return False
        logger.debug("Notification sent to user %s: %s", identity, result)
        return True
