from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from basefruits.config import settings
from basefruits.dispatch import build_dispatcher
from basefruits.main import app
from basefruits.messages import REMINDER_MESSAGES
from basefruits.store import JsonFileStore

@pytest.fixture
def store(tmp_path: Path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "tokens.json")


@pytest.fixture
def configured(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(settings, "STORE_BACKEND", "json")
    monkeypatch.setattr(settings, "STORE_PATH", str(tmp_path / "tokens.json"))
    monkeypatch.setattr(settings, "BROADCAST_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "BROADCAST_RATE_LIMITER", "fixed")
    monkeypatch.setattr(settings, "BROADCAST_SCHEDULE_ENABLED", False)
    monkeypatch.setattr(settings, "REMOVE_DELETES_SUBSCRIBER", False)
    monkeypatch.setattr(settings, "API_KEYS", "")
    monkeypatch.setattr(settings, "TRIGGER_REQUIRE_KEY", False)
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    return settings


@pytest.fixture
def client(configured):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def push_calls(client) -> Callable[..., list[dict]]:
    """Route the app's outbound deliveries through a fake provider.

    Call with an optional ``handler(request, payload)`` returning an
    ``httpx.Response``; returns the list every delivered payload is appended to.
    """

    def install(handler=None) -> list[dict]:
        calls: list[dict] = []

        def _handle(request: httpx.Request) -> httpx.Response:
            payload = json.loads(request.content)
            calls.append({"url": str(request.url), **payload})
            if handler is not None:
                return handler(request, payload)
            return httpx.Response(200, json={"result": {"successfulTokens": payload["tokens"]}})

        app.state.dispatcher = build_dispatcher(
            app.state.store,
            settings,
            REMINDER_MESSAGES,
            transport=httpx.MockTransport(_handle),
        )
        return calls

    return install

