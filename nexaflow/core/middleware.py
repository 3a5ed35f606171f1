"""HTTP middleware: request ids, request timing and last-resort error responses."""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import InternalError, NexaflowError, create_error_response, http_status_for_error
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, logs each request and its duration, and flags slow ones.

    Errors that escape the route handlers become JSON responses: engine errors
    keep their mapped status, anything else is a 500 without internals.
    """

    def __init__(self, app, slow_request_threshold: Optional[float] = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        route = f"{request.method} {request.url.path}"
        set_logging_context(request_id=request_id, client_ip=request.client.host if request.client else None)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except NexaflowError as e:
            logger.warning(f"{route} failed: {e.error_code}: {e.message}",
                           extra={"extra_fields": {"error": e.to_dict()}})
            response = JSONResponse(status_code=http_status_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"{route} raised {type(e).__name__}: {e}", exc_info=True)
            body = create_error_response(InternalError(details={"error_type": type(e).__name__}))
            body["request_id"] = request_id
            response = JSONResponse(status_code=500, content=body)
        finally:
            clear_logging_context()

        elapsed = time.perf_counter() - started
        if self.slow_request_threshold is not None and elapsed > self.slow_request_threshold:
            logger.warning(f"Slow request: {route} took {elapsed:.3f}s (threshold {self.slow_request_threshold}s)")
        else:
            logger.info(f"{route} -> {response.status_code} in {elapsed:.3f}s")

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response
