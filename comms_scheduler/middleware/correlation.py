"""
Correlation ID middleware for request tracing.

Accepts X-Correlation-ID from the caller (e.g. the cron trigger) or generates
one, binds it for the duration of the request and echoes it back.
"""
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from comms_scheduler.utils import metrics
from comms_scheduler.utils.context import correlation_id_var
from comms_scheduler.utils.logger import logger


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Generates or accepts X-Correlation-ID
    2. Stores it in contextvars for log propagation
    3. Logs request completion with timing
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        token = correlation_id_var.set(cid)

        start = time.monotonic()
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = round((time.monotonic() - start) * 1000)
            logger.error(
                "request.failed",
                extra={
                    "correlation_id": cid,
                    "method": method,
                    "path": path,
                    "duration_ms": duration_ms,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }
            )
            raise
        finally:
            correlation_id_var.reset(token)

        duration_ms = round((time.monotonic() - start) * 1000)
        status = response.status_code
        metrics.inc(f"http.status.{status // 100}xx")
        metrics.observe("http.duration_ms", duration_ms)

        log_fn = logger.warning if status >= 400 else logger.info
        log_fn(
            "request.completed",
            extra={
                "correlation_id": cid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": duration_ms,
            }
        )

        response.headers["X-Correlation-ID"] = cid
        return response
