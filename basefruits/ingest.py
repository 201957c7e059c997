"""Apply inbound mini-app webhook events to the subscription store."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from .store import SubscriberRecord, SubscriptionStore, utc_timestamp

logger = logging.getLogger(__name__)


class EventClass(str, enum.Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNRECOGNIZED = "unrecognized"


ENABLE_EVENTS = {"miniapp_added", "notifications_enabled"}
DISABLE_EVENTS = {"miniapp_removed", "notifications_disabled"}
REMOVE_EVENT = "miniapp_removed"


def classify(event: str | None) -> EventClass:
    if event in ENABLE_EVENTS:
        return EventClass.ENABLED
    if event in DISABLE_EVENTS:
        return EventClass.DISABLED
    return EventClass.UNRECOGNIZED


class NotificationDetails(BaseModel):
    token: Optional[str] = None
    url: Optional[str] = None


class WebhookEvent(BaseModel):
    event: Optional[str] = None
    fid: Union[int, str, None] = None
    notificationDetails: Optional[NotificationDetails] = None

    @property
    def identity(self) -> str | None:
        if self.fid is None or self.fid == "":
            return None
        return str(self.fid)


@dataclass(frozen=True)
class IngestResult:
    event_class: EventClass
    action: str
    identity: str | None = None


class EventIngestor:
    """Validates webhook events and mutates the store.

    Every event is read-modify-write over the whole snapshot, so the cycle is
    serialized with a lock. The lock only covers this process. The snapshot
    is read with the store's strict ``load``, so an unreadable registry raises
    :class:`StoreReadError` instead of being overwritten.
    """

    def __init__(self, store: SubscriptionStore, remove_deletes: bool = False) -> None:
        self.store = store
        self.remove_deletes = remove_deletes
        self._lock = threading.Lock()

    def ingest(self, payload: Any) -> IngestResult:
        try:
            event = WebhookEvent.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Ignoring malformed webhook event: %s", exc.errors())
            return IngestResult(EventClass.UNRECOGNIZED, "ignored")

        event_class = classify(event.event)
        identity = event.identity
        if event_class is EventClass.UNRECOGNIZED:
            logger.info("Unknown event type: %s", event.event)
            return IngestResult(event_class, "ignored", identity)
        if identity is None:
            logger.warning("Ignoring %s event without fid", event.event)
            return IngestResult(event_class, "ignored")

        if event_class is EventClass.ENABLED:
            return self._enable(event, identity)
        return self._disable(event, identity)

    def _enable(self, event: WebhookEvent, identity: str) -> IngestResult:
        details = event.notificationDetails
        if details is None or not details.token or not details.url:
            logger.info("No notification details on %s for user %s", event.event, identity)
            return IngestResult(EventClass.ENABLED, "skipped", identity)

        record = SubscriberRecord(
            token=details.token,
            url=details.url,
            enabled=True,
            added_at=utc_timestamp(),
        )
        with self._lock:
            snapshot = self.store.load()
            snapshot[identity] = record
            self.store.put(snapshot)
        logger.info("Notifications enabled for user %s", identity)
        return IngestResult(EventClass.ENABLED, "enabled", identity)

    def _disable(self, event: WebhookEvent, identity: str) -> IngestResult:
        with self._lock:
            snapshot = self.store.load()
            current = snapshot.get(identity)
            if current is None:
                logger.info("No subscriber %s to disable", identity)
                return IngestResult(EventClass.DISABLED, "unknown", identity)
            if self.remove_deletes and event.event == REMOVE_EVENT:
                del snapshot[identity]
                action = "deleted"
            else:
                snapshot[identity] = current.model_copy(update={"enabled": False})
                action = "disabled"
            self.store.put(snapshot)
        logger.info("Notifications %s for user %s", action, identity)
        return IngestResult(EventClass.DISABLED, action, identity)
