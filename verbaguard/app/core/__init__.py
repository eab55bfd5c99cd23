"""Core utilities for the rate limiting service."""

from verbaguard.app.core.config import settings
from verbaguard.app.core.logging import get_logger, setup_logging
from verbaguard.app.core.metrics import get_metrics_collector, reset_metrics_collector
from verbaguard.app.core.store import (
    InMemoryStore,
    KeyValueStore,
    RedisStore,
    get_store,
    reset_store,
)

__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "RedisStore",
    "get_store",
    "reset_store",
    "settings",
    "get_logger",
    "setup_logging",
    "get_metrics_collector",
    "reset_metrics_collector",
]
