"""
Structured JSON logging.

Every record carries `ts`, `level`, `name` and, inside a request, the
`request_id` and (once the session is verified) the caller's `user_id`.
RequestLoggingMiddleware writes one access line per request; routes can
attach extra fields to that line with `attach_log_fields`.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# Probe traffic is logged at DEBUG so it does not drown the access log
QUIET_PATHS = ("/health/live", "/health/ready", "/metrics")


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def bind_user_id(user_id: str) -> None:
    """Tag every later record of the current request with the caller's user id."""
    user_id_ctx.set(user_id)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """ISO-8601 UTC `ts`, upper-case `level`, plus request context."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = stamp.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, ctx in (("request_id", request_id_ctx), ("user_id", user_id_ctx)):
            if key not in log_record:
                value = ctx.get()
                if value:
                    log_record[key] = value


def setup_logging(log_level: str = "INFO"):
    """
    Send all application, uvicorn and library logs to stdout as JSON.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware replaces the uvicorn access log
    logging.getLogger("uvicorn.access").disabled = True
    # One line per provider call is too chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root


def attach_log_fields(request: Request, **fields: Any) -> None:
    """Add fields to this request's access log line. None values are dropped."""
    extra = getattr(request.state, "log_fields", None)
    if extra is None:
        extra = {}
        request.state.log_fields = extra
    extra.update({key: value for key, value in fields.items() if value is not None})


def _route_path(request: Request) -> str:
    """Route template (e.g. /admin/chats/{appointment_id}/logs) to keep metric labels bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured access line per request.

    Always: request_id, user_id (authenticated routes), method, path, route,
    status, latency_ms. Plus whatever the route attached, e.g. for
    /chat-events `message_id`, `dup` and `result`, and for the cron routes
    the sweep or expiry summary.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        request_token = request_id_ctx.set(request_id)
        user_token = user_id_ctx.set(None)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.perf_counter() - started
            route = _route_path(request)
            if route != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "route": route,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "log_fields", None) or {})

            logger = logging.getLogger("app.requests")
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            elif request.url.path in QUIET_PATHS:
                level = logging.DEBUG
            else:
                level = logging.INFO
            logger.log(level, "Request completed", extra=log_data)

            return response
        finally:
            user_id_ctx.reset(user_token)
            request_id_ctx.reset(request_token)
