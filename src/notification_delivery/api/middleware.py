"""Correlation ID middleware for the HTTP boundary."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from starlette.middleware.base import BaseHTTPMiddleware

from ..correlation import generate_correlation_id, set_correlation_id

if TYPE_CHECKING:
    from fastapi import Request
    from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to each request and echo it in the response.

    The inbound ``X-Correlation-ID`` is reused when present; published
    messages carry it as the ``correlationId`` header.
    """

    def __init__(self, app: Any, *, header_name: str = CORRELATION_HEADER) -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        correlation_id = request.headers.get(self.header_name) or generate_correlation_id()
        set_correlation_id(correlation_id)
        try:
            response = cast("Response", await call_next(request))
        finally:
            set_correlation_id(None)
        response.headers[self.header_name] = correlation_id
        return response
