import os
import time

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.logging import logger

USER_HEADER = "X-User-Id"
DEFAULT_USER_ID = "local"

# polled by load balancers and the UI, not worth an info line each
QUIET_PATHS = {"/health"}


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """
    Assigns a request id, logs each request/response pair and stamps
    X-Request-Id / X-Process-Time on the response.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = os.urandom(8).hex()
        request.state.request_id = request_id

        user_id = request.headers.get(USER_HEADER) or DEFAULT_USER_ID
        path = request.url.path
        quiet = path in QUIET_PATHS

        if not quiet:
            logger.request(
                operation="Incoming Request",
                request_id=request_id,
                user_id=user_id,
                method=request.method,
                path=path
            )

        if request.method in ("POST", "PATCH") and logger.is_debug_enabled():
            raw_body = await request.body()
            logger.debug_data(
                title="Request Body",
                data=raw_body.decode("utf-8", errors="replace"),
                request_id=request_id,
                component="middleware",
                data_flow="incoming"
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Unhandled error on {request.method} {path}: {e}",
                request_id=request_id,
                user_id=user_id,
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
            raise

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        response.headers["X-Request-Id"] = request_id

        if not quiet:
            # for event streams this is time-to-headers; the session logs its own latency
            logger.response(
                operation="Outgoing Response",
                request_id=request_id,
                user_id=user_id,
                status_code=response.status_code,
                processing_time_ms=round(process_time * 1000),
                streaming=response.headers.get("content-type", "").startswith("text/event-stream")
            )

        return response
