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

from rentbot.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RentbotJsonFormatter(jsonlogger.JsonFormatter):
    """Adds ts (ISO-8601, Z), level and the current request_id to every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = RentbotJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)

    logger.addHandler(json_handler)

    # Route uvicorn through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Our middleware already logs every request
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every outbound request at INFO, including the URL with the phone-number-id
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests in structured JSON format.

    Log keys:
    - ts, level, request_id
    - method, path, status, latency_ms

    For /webhooks/whatsapp requests, also includes (when known):
    - message_id: provider message id
    - phone: canonical sender phone
    - dup: boolean indicating a retried delivery
    - note: processing outcome returned to the provider
    - state: conversation state after the turn

    A request that raises is logged with status 500 before the error
    propagates.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _log_request(request, request_id, status_code, time.perf_counter() - start)
            request_id_ctx.reset(token)


def _log_request(request: Request, request_id: str, status_code: int, latency_seconds: float) -> None:
    path = request.url.path
    if path != "/metrics":
        record_http_request(
            method=request.method,
            path=path,
            status=status_code,
            latency_seconds=latency_seconds
        )

    log_data = {
        "request_id": request_id,
        "method": request.method,
        "path": path,
        "status": status_code,
        "latency_ms": round(latency_seconds * 1000, 2),
    }
    log_data.update(getattr(request.state, "webhook_log_data", {}))

    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.getLogger("rentbot.requests").log(level, "Request completed", extra=log_data)


def log_webhook_data(
    request: Request,
    message_id: str = None,
    phone: str = None,
    dup: bool = False,
    note: str = None,
    state: str = None,
):
    """
    Attach webhook fields to the request log line.

    Repeated calls merge, so a later call only overrides the fields it knows.
    """
    webhook_data = getattr(request.state, "webhook_log_data", {})

    fields = {"message_id": message_id, "phone": phone, "note": note, "state": state}
    webhook_data.update({key: value for key, value in fields.items() if value})
    webhook_data["dup"] = dup

    request.state.webhook_log_data = webhook_data
