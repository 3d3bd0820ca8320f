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

from chatsync.metrics import record_http_request
from chatsync.utils import short_id


# Request id of the HTTP request being served, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"


class JsonLogFormatter(jsonlogger.JsonFormatter):
    """JSON lines with an ISO-8601 UTC `ts`, the level name and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO", stream=None):
    """
    Route every logger (uvicorn's included) to one JSON handler.

    Used by the API process at import time and by client processes that
    embed the sync engine.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream, stdout by default
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonLogFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per HTTP request.

    Log keys: request_id, method, path, route, status, latency_ms, and the
    caller (shortened X-User-Id) when present. Ingestion routes add
    operation, message_id, result and is_existing through annotate_request.

    An incoming X-Request-ID is reused so client retries of one logical send
    can be correlated; otherwise a fresh one is generated.
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

            # Label by route template so ids in the path don't explode cardinality
            route = request.scope.get("route")
            route_path = getattr(route, "path", request.url.path)
            if route_path != "/metrics":
                record_http_request(request.method, route_path, response.status_code, latency_seconds)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            caller = request.headers.get("X-User-Id")
            if caller:
                fields["caller"] = short_id(caller)
            fields.update(getattr(request.state, "log_fields", {}))

            level = logging.INFO
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            logging.getLogger("chatsync.requests").log(level, "Request completed", extra=fields)

            return response
        finally:
            request_id_ctx.reset(token)


def annotate_request(request: Request, **fields) -> None:
    """
    Merge extra fields into this request's access log line.

    None values are dropped; later calls override earlier ones.
    """
    current = dict(getattr(request.state, "log_fields", {}))
    current.update({key: value for key, value in fields.items() if value is not None})
    request.state.log_fields = current
