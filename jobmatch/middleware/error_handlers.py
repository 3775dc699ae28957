"""
Request id, error mapping and timing middleware
"""
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from jobmatch.utils.exceptions import JobMatchBaseException, map_to_http_exception
from jobmatch.utils.logging_config import get_logger

logger = get_logger(__name__)

HEALTH_PATHS = {"/health", "/"}


def error_response(request_id: str, status_code: int, detail: Any) -> JSONResponse:
    """Standard error body shared by every failure path"""
    if isinstance(detail, str):
        detail = {"message": detail}
    elif not isinstance(detail, dict):
        detail = {"message": str(detail)}

    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "status_code": status_code,
            **detail,
        },
        headers={"X-Request-ID": request_id},
    )


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and turns uncaught exceptions into JSON errors"""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        context = {"request_id": request_id, "method": request.method, "path": request.url.path}

        try:
            response = await call_next(request)
        except JobMatchBaseException as exc:
            logger.error(
                f"{exc.__class__.__name__} in {request.method} {request.url.path}: {exc.message}",
                extra={**context, "error_code": exc.error_code},
            )
            http_exc = map_to_http_exception(exc)
            return error_response(request_id, http_exc.status_code, http_exc.detail)
        except PydanticValidationError as exc:
            logger.error(f"Data validation error in {request.method} {request.url.path}: {exc}", extra=context)
            return error_response(request_id, 400, {
                "error": "Data validation failed",
                "message": "Invalid data format or values",
                "validation_errors": exc.errors(include_url=False),
            })
        except HTTPException as exc:
            logger.warning(f"HTTP exception in {request.method} {request.url.path}: {exc.detail}", extra=context)
            return error_response(request_id, exc.status_code, exc.detail)
        except Exception as exc:
            logger.error(
                f"Unhandled exception in {request.method} {request.url.path}: {exc}",
                extra={**context, "exception_type": exc.__class__.__name__},
                exc_info=True,
            )
            return error_response(request_id, 500, {
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            })

        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and duration"""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in HEALTH_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        request_id = getattr(request.state, "request_id", None)
        logger.debug(
            f"Request: {request.method} {request.url}",
            extra={
                "request_id": request_id,
                "client_ip": request.client.host if request.client else "unknown",
            },
        )
        response = await call_next(request)
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code} "
            f"in {time.perf_counter() - start_time:.3f}s",
            extra={"request_id": request_id, "status_code": response.status_code},
        )
        return response


class PerformanceMiddleware(BaseHTTPMiddleware):
    """Flags slow requests and reports processing time in a header"""

    def __init__(self, app, slow_request_threshold: float = 2.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        processing_time = time.perf_counter() - start_time

        if processing_time > self.slow_request_threshold:
            logger.warning(
                f"Slow request detected: {request.method} {request.url.path} took {processing_time:.3f}s",
                extra={"threshold": self.slow_request_threshold, "path": request.url.path},
            )
        response.headers["X-Processing-Time"] = f"{processing_time:.3f}"
        return response
