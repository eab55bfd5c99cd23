"""Metrics endpoints for rate limiting.

Exposes the in-process throttling counters in Prometheus text format and
as a JSON summary.
"""

from typing import Any

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from verbaguard.app.core.metrics import get_metrics_collector

router = APIRouter()


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics() -> PlainTextResponse:
    """Prometheus-compatible metrics endpoint.

    Returns:
        Plain text response with Prometheus-formatted metrics
    """
    collector = get_metrics_collector()
    content = await collector.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def rate_limit_stats() -> dict[str, Any]:
    """Checks, rejections and fail-open events as JSON."""
    collector = get_metrics_collector()
    return await collector.get_summary()
