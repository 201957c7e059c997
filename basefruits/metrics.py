from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

REQS = Counter(
    "basefruits_requests_total",
    "Requests",
    ["method", "path", "status"],
)
LAT = Histogram(
    "basefruits_latency_seconds",
    "Latency",
    ["method", "path"],
)
WEBHOOK_EVENTS = Counter(
    "basefruits_webhook_events_total",
    "Webhook events by class and resulting action",
    ["event_class", "action"],
)
DELIVERIES = Counter(
    "basefruits_deliveries_total",
    "Notification delivery attempts",
    ["outcome"],
)
BROADCAST_RUNS = Counter(
    "basefruits_broadcast_runs_total",
    "Broadcast runs",
    ["mode", "status"],
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
