# app/transport/middleware.py
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.core.errors import DispatchError
from app.infra.logging_config import get_logger, LogContext
from app.infra.metrics import observe_histogram

logger = get_logger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its actor, status and duration"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        actor = request.headers.get("X-Actor-Id", "-")
        start_time = time.time()
        log_ctx = LogContext(logger, request_id=request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {request.url.path} actor={actor} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                exc_info=True
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        observe_histogram("http_request_seconds", duration_ms / 1000, method=request.method)
        log_ctx.info(
            f"{request.method} {request.url.path} actor={actor} "
            f"status={response.status_code} duration={duration_ms:.2f}ms",
            extra={"status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Turn errors that escape the route handlers into JSON responses"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = getattr(request.state, "request_id", "unknown")
        try:
            return await call_next(request)
        except DispatchError as exc:
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": exc.detail, "request_id": request_id},
            )
        except Exception as exc:
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "request_id": request_id,
                }
            )
