import logging
import json
import time
import sys
import uuid
from typing import Callable, Dict, Mapping
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from datetime import datetime
import traceback

# Inbound PhonePe webhooks carry SHA256(user:pass) in Authorization
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "x-verify"}

# Probe endpoints are only logged when they fail
QUIET_PATHS = {"/health"}

# Attributes passed through `extra=` that end up as top-level JSON keys
EXTRA_FIELDS = (
    "request_id",
    "user_id",
    "client_ip",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "headers",
    "merchant_order_id",
    "order_id",
    "waybill",
    "state",
    "source",
    "outcome",
    "target",
    "collection",
    "deleted",
    "error",
)


def mask_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in SENSITIVE_HEADERS else v) for k, v in headers.items()}


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str, environment: str = None):
        super().__init__()
        self.service_name = service_name
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service_name,
            "environment": self.environment,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "func": record.funcName,
            "line": record.lineno,
        }

        log_obj.update({field: getattr(record, field) for field in EXTRA_FIELDS if hasattr(record, field)})

        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Decimal amounts and datetimes show up in extras
        return json.dumps(log_obj, default=str)


def setup_logging(service_name: str, level: str = "INFO", environment: str = None):
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # clear existing handlers
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name, environment))
    logger.addHandler(handler)

    # httpx logs every request at INFO, including PhonePe token URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return logging.getLogger(service_name)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one JSON line per request and echoes the correlation id.

    The id is taken from `X-Request-ID` when the caller sends one so a
    checkout can be followed from the storefront through payment
    verification and shipment creation.
    """

    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, request_id, exc_info=sys.exc_info())
            raise

        self.log_request(request, response.status_code, started, request_id)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, request_id: str, exc_info=None):
        extra = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "headers": mask_headers(request.headers),
            # set by the auth dependency once the bearer token is verified
            "user_id": getattr(request.state, "user_id", None),
            "client_ip": request.client.host if request.client else None,
        }

        if status_code >= 500:
            self.logger.error("Request Failed", extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning("Request Error", extra=extra)
        elif request.url.path in QUIET_PATHS:
            self.logger.debug("Request Processed", extra=extra)
        else:
            self.logger.info("Request Processed", extra=extra)
