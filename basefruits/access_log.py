"""Access logging middleware emitting one JSON record per request."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .trigger import is_scheduled_request

logger = logging.getLogger("basefruits.access")

SENSITIVE_HEADERS = {"authorization", "x-api-key"}
AUDITED_HEADERS = SENSITIVE_HEADERS | {"user-agent", "x-vercel-cron"}
TRIGGER_PATHS = {
    "/api/scheduler",
    "/api/send-notifications",
    "/api/trigger-notifications",
}


def _req_id(req: Request) -> str:
    """Return the inbound request ID or generate a UUID4."""

    return req.headers.get("x-request-id") or str(uuid.uuid4())


def _audited_headers(req: Request) -> dict[str, str]:
    return {
        key: ("<redacted>" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in req.headers.items()
        if key.lower() in AUDITED_HEADERS
    }


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log each request as JSON and stamp `X-Request-ID` on every response.

    Requests hitting a broadcast trigger also record whether they carried the
    scheduled-invocation marker, so cron runs and manual runs can be audited
    from the access log alone. Exceptions escaping the app are answered with a
    plain 500 here so the request ID still reaches the caller.
    """

    async def dispatch(self, request: Request, call_next: Callable):  # type: ignore[override]
        request_id = _req_id(request)
        start = time.time()
        error: str | None = None
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            error = repr(exc)
            response = JSONResponse({"error": "Internal server error"}, status_code=500)

        record = {
            "ts": int(time.time()),
            "level": "ERROR" if error else "INFO",
            "msg": "access",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "query": str(request.url.query),
            "status": response.status_code,
            "duration_ms": int((time.time() - start) * 1000),
            "client_ip": request.client.host if request.client else None,
            "headers": _audited_headers(request),
        }
        if request.url.path in TRIGGER_PATHS:
            scheduled = is_scheduled_request(request.headers, request.query_params)
            record["trigger"] = "scheduled" if scheduled else "manual"
        if error:
            record["error"] = error
            logger.error(json.dumps(record))
        else:
            logger.info(json.dumps(record))

        response.headers["X-Request-ID"] = request_id
        return response
