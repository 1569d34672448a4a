"""
Structured JSON logging and per-request log lines.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from chatfeed.metrics import record_http_request
from chatfeed.streaming import SSE_MEDIA_TYPE

# Set by the middleware so every log line of a request carries its id
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Already covered by the middleware's request lines
_SILENCED_LOGGERS = ("uvicorn.access",)
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 UTC `ts`, `level` and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # %(ts)s in the format string leaves an empty ts field behind
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname
        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send every log record, uvicorn's included, to stdout as JSON.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    for name in _SILENCED_LOGGERS:
        logging.getLogger(name).disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: request_id, method, path, status, latency_ms, plus whatever the
    handler attached with log_ingest_data() (message_id, dup, result).

    Event streams are logged when the response starts. Their latency only says
    how long the replay took to begin, so it is left out of the latency
    histogram.
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

            path = request.url.path
            if path != "/metrics":
                is_stream = response.headers.get("content-type", "").startswith(SSE_MEDIA_TYPE)
                record_http_request(
                    method=request.method,
                    path=path,
                    status=response.status_code,
                    latency_seconds=None if is_stream else elapsed,
                )

            _log_request(request, response.status_code, elapsed)
            return response
        finally:
            request_id_ctx.reset(token)


def _log_request(request: Request, status: int, elapsed: float) -> None:
    fields = {
        "request_id": request.state.request_id,
        "method": request.method,
        "path": request.url.path,
        "status": status,
        "latency_ms": round(elapsed * 1000, 2),
    }
    fields.update(getattr(request.state, "ingest_log_data", {}))

    if status >= 500:
        level = logging.ERROR
    elif status >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.getLogger("chatfeed.requests").log(level, "Request completed", extra=fields)


def log_ingest_data(
    request: Request,
    message_id: Optional[str] = None,
    dup: bool = False,
    result: Optional[str] = None,
) -> None:
    """
    Attach the outcome of an add_message call to the request log line.

    Args:
        request: FastAPI request object
        message_id: Message id from the request body, when one was readable
        dup: Whether the id had been seen before
        result: created, duplicate, validation_error or storage_error
    """
    fields = {"dup": dup}
    if message_id is not None:
        fields["message_id"] = message_id
    if result is not None:
        fields["result"] = result
    request.state.ingest_log_data = fields
