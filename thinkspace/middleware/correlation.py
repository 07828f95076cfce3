"""
Correlation ID middleware for request tracing.

Generates a UUID4 correlation ID per request (or accepts X-Correlation-ID from client).
Stores in contextvars for propagation to logs, including records written by
background tasks spawned while handling the request.
"""
import contextvars
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

# Context variable for correlation ID - accessible from any async code in the request
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")
request_user_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_user_id", default="")


def get_correlation_id() -> str:
    """Get the current request's correlation ID"""
    return correlation_id_var.get("")


def get_request_user_id() -> str:
    """Get the current request's user ID"""
    return request_user_id_var.get("")


class CorrelationIdFilter(logging.Filter):
    """Copies the context's correlation/user ids onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = correlation_id_var.get("")
        if not getattr(record, "user_id", None):
            record.user_id = request_user_id_var.get("")
        return True


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Generates or accepts X-Correlation-ID
    2. Stores it in contextvars for log propagation
    3. Logs structured request/response info with timing
    4. Returns correlation ID in response headers
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        correlation_id_var.set(cid)

        user_id = request.headers.get("x-user-id", "")
        request_user_id_var.set(user_id)

        start = time.monotonic()
        method = request.method
        path = request.url.path

        logger.info(
            "request.started",
            extra={
                "method": method,
                "path": path,
                "client_ip": request.client.host if request.client else "",
            },
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request.failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise

        status = response.status_code
        log_fn = logger.warning if status >= 400 else logger.info
        log_fn(
            "request.completed",
            extra={
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round((time.monotonic() - start) * 1000),
            },
        )

        response.headers["X-Correlation-ID"] = cid
        return response
