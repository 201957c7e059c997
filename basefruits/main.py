from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .access_log import AccessLogMiddleware
from .auth import require_admin_key, require_trigger_key
from .blocking import to_thread
from .config import reload_settings, settings
from .dispatch import BroadcastDispatcher, build_dispatcher
from .ingest import EventIngestor
from .logging_setup import init_logging
from .messages import REMINDER_MESSAGES
from .metrics import LAT, REQS, WEBHOOK_EVENTS, router as metrics_router
from .ratelimit import allow
from .scheduler import run_periodic
from .store import SqlStore, SubscriptionStore, build_store
from .trigger import BroadcastState, TriggerMode, is_scheduled_request, run_triggered

logger = logging.getLogger(__name__)


class Health(BaseModel):
    status: str
    time: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    reload_settings()
    init_logging(settings.LOG_LEVEL)
    store = build_store(settings)
    app.state.store = store
    app.state.ingestor = EventIngestor(store, remove_deletes=settings.REMOVE_DELETES_SUBSCRIBER)
    app.state.dispatcher = build_dispatcher(store, settings, REMINDER_MESSAGES)
    app.state.broadcast_state = BroadcastState()

    tasks: list[asyncio.Task[None]] = []
    if settings.BROADCAST_SCHEDULE_ENABLED:
        async def _scheduled_run() -> None:
            await run_triggered(
                app.state.dispatcher,
                TriggerMode.SCHEDULED,
                app.state.broadcast_state,
                source="in-process scheduler",
            )

        tasks.append(
            asyncio.create_task(
                run_periodic(
                    _scheduled_run,
                    settings.BROADCAST_INTERVAL_SECONDS,
                    settings.BROADCAST_JITTER_SECONDS,
                    settings.BROADCAST_BACKOFF_MAX_SECONDS,
                )
            )
        )
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
        if isinstance(store, SqlStore):
            store.dispose()


def get_store(request: Request) -> SubscriptionStore:
    return request.app.state.store


def get_ingestor(request: Request) -> EventIngestor:
    return request.app.state.ingestor


def get_dispatcher(request: Request) -> BroadcastDispatcher:
    return request.app.state.dispatcher


def get_broadcast_state(request: Request) -> BroadcastState:
    return request.app.state.broadcast_state


init_logging(settings.LOG_LEVEL)

app = FastAPI(title="Base Fruits API", version="0.2.0", lifespan=lifespan)
app.add_middleware(AccessLogMiddleware)
app.include_router(metrics_router())

origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key"],
)


@app.middleware("http")
async def _metrics_and_rate(request: Request, call_next):
    method = request.method
    path = request.url.path
    start = time.time()
    status_code = 500
    try:
        if settings.RATE_LIMIT_ENABLED:
            client_host = request.client.host if request.client else "unknown"
            if not allow(client_host, settings.RATE_LIMIT_RPS, settings.RATE_LIMIT_BURST):
                response = JSONResponse({"detail": "rate limit"}, status_code=429)
                status_code = response.status_code
                return response
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration = time.time() - start
        REQS.labels(method, path, str(status_code)).inc()
        LAT.labels(method, path).observe(duration)


@app.get("/health", response_model=Health)
def health():
    return Health(status="ok", time=_now_iso())


@app.api_route("/api/test", methods=["GET", "POST"])
def api_test(request: Request):
    return {
        "message": "Base Fruits API is working!",
        "timestamp": _now_iso(),
        "method": request.method,
        "path": request.url.path,
    }


@app.post("/api/webhook")
async def webhook(request: Request, ingestor: EventIngestor = Depends(get_ingestor)):
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    try:
        result = await to_thread(ingestor.ingest, payload)
    except Exception:  # noqa: BLE001
        logger.exception("Webhook error")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    WEBHOOK_EVENTS.labels(result.event_class.value, result.action).inc()
    return {"success": True}


@app.options("/api/webhook")
def webhook_options():
    return Response(status_code=200)


@app.api_route("/api/webhook", methods=["GET", "PUT", "PATCH", "DELETE"])
def webhook_other_methods():
    return JSONResponse({"error": "Method not allowed"}, status_code=405)


async def _trigger(
    request: Request,
    mode: TriggerMode,
    dispatcher: BroadcastDispatcher,
    state: BroadcastState,
    failure: str,
):
    try:
        summary = await run_triggered(
            dispatcher, mode, state, source=request.headers.get("user-agent")
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s", failure)
        return JSONResponse({"error": failure, "details": str(exc)}, status_code=500)
    return {
        "success": True,
        "message": "Daily notifications sent successfully",
        "mode": mode.value,
        **summary.as_dict(),
    }


async def _cron_or_post(
    request: Request,
    dispatcher: BroadcastDispatcher,
    state: BroadcastState,
    failure: str,
):
    scheduled = is_scheduled_request(request.headers, request.query_params)
    if not scheduled and request.method != "POST":
        return JSONResponse(
            {"error": "Method not allowed. Use POST or scheduled cron."},
            status_code=405,
        )
    mode = TriggerMode.SCHEDULED if scheduled else TriggerMode.MANUAL
    return await _trigger(request, mode, dispatcher, state, failure)


@app.api_route("/api/scheduler", methods=["GET", "POST"])
async def scheduler(
    request: Request,
    dispatcher: BroadcastDispatcher = Depends(get_dispatcher),
    state: BroadcastState = Depends(get_broadcast_state),
):
    return await _cron_or_post(request, dispatcher, state, "Scheduler failed")


@app.api_route("/api/send-notifications", methods=["GET", "POST"])
async def send_notifications(
    request: Request,
    dispatcher: BroadcastDispatcher = Depends(get_dispatcher),
    state: BroadcastState = Depends(get_broadcast_state),
):
    return await _cron_or_post(request, dispatcher, state, "Failed to send notifications")


@app.get("/api/trigger-notifications")
def trigger_notifications_get():
    return JSONResponse(
        {"error": "Method not allowed. Use POST to trigger notifications."},
        status_code=405,
    )


@app.post("/api/trigger-notifications")
async def trigger_notifications(
    request: Request,
    _=Depends(require_trigger_key),
    dispatcher: BroadcastDispatcher = Depends(get_dispatcher),
    state: BroadcastState = Depends(get_broadcast_state),
):
    return await _trigger(
        request, TriggerMode.MANUAL, dispatcher, state, "Failed to trigger notifications"
    )


@app.get("/broadcast/status")
def broadcast_status(state: BroadcastState = Depends(get_broadcast_state)):
    return {
        **state.snapshot(),
        "schedule_enabled": settings.BROADCAST_SCHEDULE_ENABLED,
        "interval": settings.BROADCAST_INTERVAL_SECONDS,
        "rate_limiter": settings.BROADCAST_RATE_LIMITER,
        "delay_seconds": settings.BROADCAST_DELAY_SECONDS,
    }


@app.get("/admin/subscribers")
async def admin_subscribers(
    _=Depends(require_admin_key),
    store: SubscriptionStore = Depends(get_store),
):
    snapshot = await to_thread(store.get)
    items = [
        {"fid": fid, "enabled": record.enabled, "addedAt": record.added_at}
        for fid, record in snapshot.items()
    ]
    return {
        "subscribers": items,
        "total": len(items),
        "enabled": sum(1 for item in items if item["enabled"]),
    }
