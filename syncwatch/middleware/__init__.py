"""
Middleware components for request processing.

This package contains:
- Request context (request ID bound into every log line)
- Rate limiting (manual sync triggers)
"""

from syncwatch.middleware.rate_limiter import rate_limiter
from syncwatch.middleware.request_context import RequestContextMiddleware

__all__ = [
    "RequestContextMiddleware",
    "rate_limiter",
]
