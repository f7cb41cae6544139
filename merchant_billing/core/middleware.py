"""Custom middleware for the application."""

import logging
import time

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging requests and response times."""

    def __init__(self, app, slow_request_seconds: float = 1.0):
        super().__init__(app)
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        """Log request details and timing.

        Args:
            request: Incoming request
            call_next: Next middleware/route handler

        Returns:
            Response: Route response
        """
        start_time = time.time()

        request_id = request.headers.get("X-Request-ID") or str(time.time_ns())
        request.state.request_id = request_id

        response = await call_next(request)

        duration = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration:.3f}s"

        if duration > self.slow_request_seconds:
            logger.warning(
                f"Slow request {request_id}: {request.method} {request.url.path} "
                f"took {duration:.3f}s"
            )
        else:
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {duration:.3f}s"
            )

        return response
