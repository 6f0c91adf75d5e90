"""Request logging middleware for the control API."""

from collections.abc import Awaitable, Callable
import time

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log each request with its status and duration.

    Features:
    - Answers bare ``OPTIONS`` requests with 200 before routing
    - Logs polling endpoints at DEBUG level so status pollers stay quiet
    - Logs unhandled exceptions with the request line
    """

    # Paths polled by clients; logged at DEBUG level
    DEBUG_PATHS = frozenset(["/api/health", "/api/status", "/favicon.ico"])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """
        Short-circuit ``OPTIONS`` and log the outcome of everything else.

        Args
        ----
            request: Incoming FastAPI request
            call_next: Next middleware/handler in chain

        Returns
        -------
            The handler response, or an empty 200 for ``OPTIONS``
        """
        if request.method == "OPTIONS":
            return Response(status_code=200)

        start_time = time.time()
        log = logger.debug if request.url.path in self.DEBUG_PATHS else logger.info
        try:
            response = await call_next(request)
        except Exception:
            duration = time.time() - start_time
            logger.exception(
                f"Request failed: {request.method} {request.url.path} duration={duration:.3f}s",
            )
            raise

        duration = time.time() - start_time
        log(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"duration={duration:.3f}s",
        )
        return response
