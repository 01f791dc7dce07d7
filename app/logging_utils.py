import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"
REDACTED = "***REDACTED***"

# Fields that must never reach the logs in clear text
SENSITIVE_FIELDS = frozenset({
    "access_token",
    "app_secret",
    "webhook_secret",
    "phone_number",
    "recipient_address",
    "public_key",
    "private_key",
    "content",
})

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def redact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with sensitive values masked."""
    return {
        key: (REDACTED if key in SENSITIVE_FIELDS and value else value)
        for key, value in data.items()
    }


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 ``ts``, the level and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault(
            "ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        )
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every request URL at INFO, which would leak the phone number id
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


def route_template(request: Request) -> str:
    """The matched route's path template, so ids never become metric labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def annotate_request_log(request: Request, **fields: Any) -> None:
    """
    Attach extra fields to the access log line written by RequestLoggingMiddleware.

    The webhook route uses this for its result label and reconciliation counters.
    """
    existing = getattr(request.state, "log_fields", {})
    request.state.log_fields = {**existing, **fields}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: ts, level, request_id, method, path, status, latency_ms, plus
    anything added with annotate_request_log(). An inbound X-Request-ID is
    reused; otherwise a new id is generated and echoed in the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            latency_seconds = time.perf_counter() - started
            path = route_template(request)
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, latency_seconds)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                **getattr(request.state, "log_fields", {}),
            }

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logging.getLogger("app.requests").log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)
