"""Middleware for request tracing and error handling."""

import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.exceptions import (
    ConcurrentTransitionError,
    DataMappingError,
    FlowEngineError,
    FlowNotFoundError,
    InvalidTransitionError,
    NodeTypeError,
    PersistenceError,
    TemplateNotFoundError,
    TransientError,
    ValidationError,
    create_error_response,
)
from ..core.logging import get_logger, set_logging_context, clear_logging_context

logger = get_logger(__name__)


def status_code_for_error(error: FlowEngineError) -> int:
    """Map an engine error to the HTTP status code reported for it."""
    if isinstance(error, (ValidationError, NodeTypeError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, (FlowNotFoundError, TemplateNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (InvalidTransitionError, ConcurrentTransitionError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, DataMappingError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, (PersistenceError, TransientError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it, and turns stray errors into JSON responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        start_time = time.time()

        set_logging_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else "unknown"
        )

        try:
            logger.info(f"Request started: {request.method} {request.url.path}")
            response = await call_next(request)
            duration = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - Duration: {duration:.3f}s"
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except FlowEngineError as e:
            duration = time.time() - start_time
            logger.warning(
                f"Flow engine error: {request.method} {request.url.path} - "
                f"Error: {e.error_code} - Duration: {duration:.3f}s",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(
                status_code=status_code_for_error(e),
                content=create_error_response(e),
                headers={"X-Request-ID": request_id}
            )

        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"Unexpected error: {request.method} {request.url.path} - "
                f"Error: {str(e)} - Duration: {duration:.3f}s",
                exc_info=True
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {
                        "error_type": type(e).__name__,
                        "timestamp": datetime.utcnow().isoformat()
                    },
                    "request_id": request_id
                },
                headers={"X-Request-ID": request_id}
            )

        finally:
            clear_logging_context()
