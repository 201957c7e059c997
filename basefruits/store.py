"""Subscription store: identity -> delivery credential and enabled flag.

Two backends share one contract. ``get`` never raises (a read failure is
logged and reads as an empty registry) and serves readers such as the
broadcast. ``load`` is the strict read used before a rewrite: it raises
:class:`StoreReadError` rather than hand back a partial snapshot that ``put``
would then persist over the real one. ``put`` replaces the whole snapshot
atomically and raises :class:`StoreWriteError` when it cannot.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field as SQLField, Session, SQLModel, create_engine, delete, select

from .config import Settings
from .errors import StoreReadError, StoreWriteError

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""

    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SubscriberRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = ""
    url: str = ""
    enabled: bool = False
    added_at: str = Field(default="", alias="addedAt")

    @model_validator(mode="after")
    def _enabled_needs_credentials(self) -> "SubscriberRecord":
        if self.enabled and not (self.token and self.url):
            raise ValueError("enabled subscriber requires token and url")
        return self

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


Snapshot = dict[str, SubscriberRecord]


class SubscriptionStore(Protocol):
    def get(self) -> Snapshot: ...

    def load(self) -> Snapshot: ...

    def put(self, mapping: Mapping[str, SubscriberRecord]) -> None: ...


def _parse_records(raw: Mapping[str, object], strict: bool = False) -> Snapshot:
    out: Snapshot = {}
    for identity, value in raw.items():
        try:
            out[str(identity)] = SubscriberRecord.model_validate(value)
        except ValidationError as exc:
            if strict:
                raise StoreReadError(f"invalid subscriber record {identity}") from exc
            logger.warning("Skipping invalid subscriber record %s: %s", identity, exc)
    return out


class JsonFileStore:
    """Single JSON document rewritten in full on every mutation."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def _read_document(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            raise StoreReadError(f"could not read {self.path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StoreReadError(f"{self.path} does not hold an object")
        return raw

    def get(self) -> Snapshot:
        try:
            raw = self._read_document()
        except StoreReadError as exc:
            logger.error("Error loading subscribers: %s", exc)
            return {}
        return _parse_records(raw)

    def load(self) -> Snapshot:
        """Strict read for read-modify-write; raises :class:`StoreReadError`."""
        return _parse_records(self._read_document(), strict=True)

    def put(self, mapping: Mapping[str, SubscriberRecord]) -> None:
        document = {identity: record.to_document() for identity, record in mapping.items()}
        tmp_name: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreWriteError(f"could not write {self.path}: {exc}") from exc
        logger.info("Subscribers saved: %d users", len(document))


class Subscriber(SQLModel, table=True):
    fid: str = SQLField(primary_key=True)
    token: str = SQLField(default="")
    url: str = SQLField(default="")
    enabled: bool = SQLField(default=False)
    added_at: str = SQLField(default="")


class SqlStore:
    """SQLite-backed store; a snapshot replacement is one transaction."""

    def __init__(self, db_path: str | os.PathLike[str]) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(f"sqlite:///{path}", echo=False)
        SQLModel.metadata.create_all(self.engine, tables=[Subscriber.__table__])

    def _read_rows(self) -> dict:
        try:
            with Session(self.engine) as session:
                rows = list(session.exec(select(Subscriber).order_by(Subscriber.fid)))
        except SQLAlchemyError as exc:
            raise StoreReadError(f"could not read subscribers: {exc}") from exc
        return {
            row.fid: {
                "token": row.token,
                "url": row.url,
                "enabled": row.enabled,
                "addedAt": row.added_at,
            }
            for row in rows
        }

    def get(self) -> Snapshot:
        try:
            raw = self._read_rows()
        except StoreReadError as exc:
            logger.error("Error loading subscribers from database: %s", exc)
            return {}
        return _parse_records(raw)

    def load(self) -> Snapshot:
        return _parse_records(self._read_rows(), strict=True)

    def put(self, mapping: Mapping[str, SubscriberRecord]) -> None:
        try:
            with Session(self.engine) as session:
                session.exec(delete(Subscriber))
                for identity, record in mapping.items():
                    session.add(
                        Subscriber(
                            fid=identity,
                            token=record.token,
                            url=record.url,
                            enabled=record.enabled,
                            added_at=record.added_at,
                        )
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreWriteError(f"could not write subscribers: {exc}") from exc
        logger.info("Subscribers saved: %d users", len(mapping))

    def dispose(self) -> None:
        self.engine.dispose()


def build_store(settings: Settings) -> SubscriptionStore:
    if settings.STORE_BACKEND == "sqlite":
        return SqlStore(settings.STORE_DB_PATH)
    return JsonFileStore(settings.STORE_PATH)
