import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from school_chat.metrics import record_http_request


# request_id of the request being handled, picked up by every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Library loggers that would otherwise write plain-text lines
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")
QUIET_LOGGERS = ("httpx", "httpcore")

request_logger = logging.getLogger("school_chat.requests")


class ChatJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON log lines with `ts` (ISO-8601 UTC, millisecond precision), `level`
    and the current `request_id` when one is set.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all application and server logs to stdout as JSON.

    Args:
        log_level: Root logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ChatJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware writes one line per request instead
    logging.getLogger("uvicorn.access").disabled = True

    # The poller and delivery channel would log every HTTP call at INFO
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Writes one structured log line per HTTP request and records request metrics.

    Every line carries request_id, method, path, status and latency_ms.
    Handlers add their own fields with attach_log_fields, e.g.
    message_id/dup/result on webhooks or conversation_id on chat routes.
    The request id is also returned in the X-Request-ID header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            route = request.scope.get("route")
            route_path = getattr(route, "path", request.url.path)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "log_fields", {}),
            }
            request_logger.log(_level_for(response.status_code), "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def attach_log_fields(request: Request, **fields) -> None:
    """
    Add fields to the request's log line. None values are skipped.
    """
    log_fields = getattr(request.state, "log_fields", {})
    log_fields.update({key: value for key, value in fields.items() if value is not None})
    request.state.log_fields = log_fields


def log_webhook_data(request: Request, message_id: str = None, dup: bool = False, result: str = None):
    """
    Attach webhook outcome fields to the request log line.

    Args:
        request: FastAPI request object
        message_id: Provider message id from the payload
        dup: Whether the message had already been stored
        result: Outcome (created, duplicate, inactive, invalid_signature, validation_error, status_*)
    """
    attach_log_fields(request, message_id=message_id, result=result, dup=dup)
