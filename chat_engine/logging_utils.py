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

from chat_engine.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

request_logger = logging.getLogger("chat_engine.requests")


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC `ts`, the level name and the active request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = stamp.isoformat(timespec='milliseconds').replace('+00:00', 'Z')
        log_record['level'] = record.levelname
        log_record.setdefault('request_id', request_id_ctx.get())
        if log_record['request_id'] is None:
            del log_record['request_id']


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # RequestLoggingMiddleware writes the access line
    logging.getLogger("uvicorn.access").disabled = True

    return root


def _level_for_status(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Emit one structured line per HTTP request and record request metrics.

    Every line carries request_id, method, path, status and latency_ms. Chat
    routes add operation, result, channel_id and message_id through
    log_operation_data(). An inbound X-Request-ID is reused so that ids
    propagate from the session layer; otherwise a fresh one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            # Route template, so channel and message ids stay out of label values
            route_path = getattr(request.scope.get("route"), "path", request.url.path)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, elapsed)

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "operation_log_data", {}))
            request_logger.log(_level_for_status(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def log_operation_data(request: Request, operation: str, result: str, **fields: Any) -> None:
    """
    Attach chat-operation fields to the request log line.

    Args:
        request: FastAPI request object
        operation: Operation name (send, update, delete, list, read, checkout, typing)
        result: Outcome (ok, bad_request, forbidden, not_found)
        **fields: Identifiers such as channel_id or message_id; None values are skipped
    """
    data = {"operation": operation, "result": result}
    data.update({key: value for key, value in fields.items() if value is not None})
    request.state.operation_log_data = data
