from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .correlation import bind_correlation_id

logger = logging.getLogger("contract_broker.access")


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID to each request, echoes it on the response and
    writes one access log line per request.

    Probe and scrape paths are not logged.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Correlation-ID",
                 quiet_paths: Iterable[str] = ("/healthz", "/health", "/metrics")):
        super().__init__(app)
        self.header_name = header_name
        self.quiet_paths = frozenset(quiet_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        correlation_id = bind_correlation_id(request.headers)
        request.state.correlation_id = correlation_id
        started = time.perf_counter()

        response = await call_next(request)
        response.headers[self.header_name] = correlation_id

        if request.url.path not in self.quiet_paths:
            logger.info(
                f"{request.method} {request.url.path} {response.status_code}",
                extra={"status_code": response.status_code,
                       "duration_ms": round((time.perf_counter() - started) * 1000, 2)}
            )
        return response
