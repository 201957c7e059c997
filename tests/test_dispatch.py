import asyncio
import json
import random
import time
from datetime import date

import httpx
import pytest

from basefruits.dispatch import BroadcastDispatcher
from basefruits.errors import BroadcastConfigError
from basefruits.messages import REMINDER_MESSAGES
from basefruits.push import PushSender, notification_id
from basefruits.ratelimit import FixedDelayLimiter, TokenBucketLimiter
from basefruits.store import SubscriberRecord


def _record(token, enabled=True, url="https://push.example/notify"):
    return SubscriberRecord(token=token, url=url, enabled=enabled, added_at="2025-01-01T00:00:00.000Z")


def _dispatcher(store, handler, delay=0.0, messages=REMINDER_MESSAGES, concurrency=1):
    sender = PushSender(
        title="Base Fruits Alert 🔥",
        target_url="https://base-fruits.vercel.app/",
        transport=httpx.MockTransport(handler),
    )
    return BroadcastDispatcher(
        store,
        sender,
        lambda: FixedDelayLimiter(delay),
        messages,
        rng=random.Random(7),
        concurrency=concurrency,
    )


class _Recorder:
    def __init__(self, fail_tokens=()):
        self.calls = []
        self.fail_tokens = set(fail_tokens)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append({"url": str(request.url), **payload})
        if payload["tokens"][0] in self.fail_tokens:
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json={"result": {"successfulTokens": payload["tokens"]}})


def test_empty_store_makes_no_calls(store):
    recorder = _Recorder()
    summary = asyncio.run(_dispatcher(store, recorder).run_broadcast())
    assert summary.as_dict() == {"attempted": 0, "succeeded": 0, "failed": 0}
    assert recorder.calls == []


def test_only_disabled_subscribers_makes_no_calls(store):
    store.put({"a": _record("ta", enabled=False), "b": _record("tb", enabled=False)})
    recorder = _Recorder()
    summary = asyncio.run(_dispatcher(store, recorder).run_broadcast())
    assert summary.attempted == 0
    assert recorder.calls == []


def test_every_enabled_subscriber_gets_one_message(store):
    store.put(
        {
            "a": _record("ta"),
            "b": _record("tb", enabled=False),
            "c": _record("tc"),
            "d": _record("td"),
        }
    )
    recorder = _Recorder()
    summary = asyncio.run(_dispatcher(store, recorder).run_broadcast())

    assert summary.as_dict() == {"attempted": 3, "succeeded": 3, "failed": 0}
    assert [call["tokens"] for call in recorder.calls] == [["ta"], ["tc"], ["td"]]
    bodies = {call["body"] for call in recorder.calls}
    assert len(bodies) == 1
    assert bodies.pop() in REMINDER_MESSAGES


def test_payload_shape(store):
    store.put({"a": _record("ta", url="https://push.example/a")})
    recorder = _Recorder()
    asyncio.run(_dispatcher(store, recorder).run_broadcast())
    call = recorder.calls[0]
    assert call["url"] == "https://push.example/a"
    assert call["title"] == "Base Fruits Alert 🔥"
    assert call["targetUrl"] == "https://base-fruits.vercel.app/"
    assert call["notificationId"].startswith("daily-reminder-")
    assert call["tokens"] == ["ta"]


def test_notification_id_is_per_day():
    assert notification_id("daily-reminder", date(2025, 3, 9)) == "daily-reminder-2025-03-09"


def test_failures_do_not_stop_the_run(store):
    store.put({"a": _record("ta"), "b": _record("tb"), "c": _record("tc")})
    recorder = _Recorder(fail_tokens={"ta"})
    summary = asyncio.run(_dispatcher(store, recorder).run_broadcast())
    assert summary.as_dict() == {"attempted": 3, "succeeded": 2, "failed": 1}
    assert len(recorder.calls) == 3


def test_network_error_and_non_json_count_as_failures(store):
    store.put({"a": _record("ta"), "b": _record("tb"), "c": _record("tc")})

    def handler(request: httpx.Request) -> httpx.Response:
        token = json.loads(request.content)["tokens"][0]
        if token == "ta":
            raise httpx.ConnectError("refused", request=request)
        if token == "tb":
            return httpx.Response(200, text="<html>ok</html>")
        return httpx.Response(200, json={"ok": True})

    summary = asyncio.run(_dispatcher(store, handler).run_broadcast())
    assert summary.as_dict() == {"attempted": 3, "succeeded": 1, "failed": 2}


def test_empty_catalog_is_a_config_error(store):
    store.put({"a": _record("ta")})
    recorder = _Recorder()
    with pytest.raises(BroadcastConfigError):
        asyncio.run(_dispatcher(store, recorder, messages=()).run_broadcast())
    assert recorder.calls == []


def test_fixed_delay_spaces_deliveries(store):
    store.put({"a": _record("ta"), "b": _record("tb"), "c": _record("tc")})
    recorder = _Recorder()
    start = time.monotonic()
    asyncio.run(_dispatcher(store, recorder, delay=0.05).run_broadcast())
    assert time.monotonic() - start >= 0.09


def test_concurrency_still_attempts_everyone(store):
    store.put({str(i): _record(f"t{i}") for i in range(6)})
    recorder = _Recorder(fail_tokens={"t2"})
    summary = asyncio.run(_dispatcher(store, recorder, concurrency=3).run_broadcast())
    assert summary.as_dict() == {"attempted": 6, "succeeded": 5, "failed": 1}


def test_token_bucket_paces_after_burst():
    async def _run():
        limiter = TokenBucketLimiter(rps=20.0, burst=2)
        start = time.monotonic()
        for _ in range(4):
            await limiter.acquire()
        return time.monotonic() - start

    assert asyncio.run(_run()) >= 0.08
