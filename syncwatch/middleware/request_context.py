"""
RequestContext Middleware - Adds request tracking to all requests.

Every request gets a request_id (the caller's X-Request-ID when present,
otherwise a fresh UUID). It is stored on request.state, bound into the
structlog context for every log line emitted while handling the request,
and echoed back in the X-Request-ID response header.

Usage:
    In endpoints:
        request.state.request_id

    In audit logging:
        await audit_logger.log_breaker_reset(
            ...,
            request_id=request.state.request_id,
        )
"""

import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Add request context to all incoming requests.

    Request.state Namespace Convention:
    - request_id: Set by RequestContextMiddleware
    - Do not add other attributes without updating this documentation
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            logger.debug("Request started", method=request.method, path=request.url.path)
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
