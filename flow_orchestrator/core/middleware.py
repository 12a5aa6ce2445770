"""Middleware for error handling and request logging."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    CircuitBreakerOpen,
    FlowEngineError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context
from ..models.core import utcnow

logger = get_logger(__name__)


def status_code_for_error(error: FlowEngineError) -> int:
    """HTTP status code for an engine error."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RateLimitExceeded):
        return 429
    if isinstance(error, CircuitBreakerOpen):
        return 503
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and turns escaped errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration:.3f}s"
            return response

        except FlowEngineError as e:
            logger.warning(
                f"Flow engine error: {request.method} {request.url.path} - Error: {e.error_code}",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(
                status_code=status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - Error: {str(e)}",
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug-level request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        logger.debug(
            f"Request details: {request.method} {request.url} - "
            f"Query params: {dict(request.query_params)}"
        )
        response = await call_next(request)
        logger.debug(f"Response details: Status {response.status_code}")
        return response
