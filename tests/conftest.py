"""Shared fixtures for the rate limiting tests."""

import pytest

from verbaguard.app.core.metrics import reset_metrics_collector
from verbaguard.app.core.store import reset_store
from verbaguard.app.middleware.rate_limit import reset_rate_limiter

# Aligned to a whole minute so fixed windows start at the first request
START_MS = 1_700_000_040_000


class FakeClock:
    """Controllable time source returning UNIX seconds like time.time."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms / 1000

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_globals():
    """Give every test a fresh store, limiter and metrics collector."""
    reset_store()
    reset_rate_limiter()
    reset_metrics_collector()
    yield
    reset_store()
    reset_rate_limiter()
    reset_metrics_collector()
