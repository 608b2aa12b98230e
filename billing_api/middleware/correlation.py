"""Correlation ID middleware for request tracing."""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from billing_api.logging_config import correlation_id

CORRELATION_ID_HEADER = "X-Correlation-ID"
# Reverse proxies commonly stamp this one instead
REQUEST_ID_HEADER = "X-Request-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a correlation ID to every request.

    The ID is taken from X-Correlation-ID, then X-Request-ID, and generated
    when neither is present. It is stored in the logging context for the
    duration of the request and echoed back in the X-Correlation-ID header,
    so a bank callback can be followed through the gateway calls it makes.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = (
            request.headers.get(CORRELATION_ID_HEADER)
            or request.headers.get(REQUEST_ID_HEADER)
            or uuid.uuid4().hex[:16]
        )

        token = correlation_id.set(req_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = req_id
            return response
        finally:
            correlation_id.reset(token)
