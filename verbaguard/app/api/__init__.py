"""API endpoints package for the rate limiting service."""

from verbaguard.app.api.metrics import router as metrics_router

__all__ = [
    "metrics_router",
]
