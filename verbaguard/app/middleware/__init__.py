"""Middleware package for the rate limiting service."""

from verbaguard.app.middleware.rate_limit import RateLimitMiddleware
from verbaguard.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
