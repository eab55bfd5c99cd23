"""Rate limiting algorithms.

Each limiter is a stateless wrapper over a ``KeyValueStore``: all counters
and buckets live in the store, so several application instances share
limits through Redis and concurrent requests serialize through the store's
atomic commands rather than through in-process locks.
"""

import asyncio
import math
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis

from verbaguard.app.core.config import settings
from verbaguard.app.core.logging import get_log_context, get_logger
from verbaguard.app.core.metrics import get_metrics_collector
from verbaguard.app.core.store import KeyValueStore
from verbaguard.app.exceptions import StoreUnavailableError
from verbaguard.app.middleware.rate_limit.models import (
    BucketState,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
)

logger = get_logger(__name__)

STORE_ERRORS = (redis.RedisError, StoreUnavailableError, OSError)


class BaseLimiter(ABC):
    """Base class for the three limiting strategies.

    ``check_limit`` is the only public entry point. It bounds the store
    round-trips with a timeout and turns any store failure into an allowed
    result, so a throttling outage never blocks legitimate traffic.
    """

    strategy: RateLimitStrategy
    key_prefix: str

    def __init__(
        self,
        config: RateLimitConfig,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
        fail_closed: Optional[bool] = None,
    ):
        """Initialize the limiter.

        Args:
            config: Policy enforced by this limiter
            store: Backing key-value store
            clock: Time source returning UNIX time in seconds
            timeout: Seconds allowed for the store round-trips of one check
            fail_closed: Reject instead of allowing when the store fails
        """
        self.config = config
        self.store = store
        self._clock = clock
        self._timeout = timeout if timeout is not None else settings.rate_limit_store_timeout
        self._fail_closed = (
            fail_closed if fail_closed is not None else settings.rate_limit_fail_closed
        )

    def now_ms(self) -> int:
        return round(self._clock() * 1000)

    def build_key(self, identifier: str) -> str:
        """Map an identifier to its base store key."""
        if self.config.key_generator is not None:
            return self.config.key_generator(identifier)
        return f"rate_limit:{self.key_prefix}:{identifier}"

    def _result(self, allowed: bool, total_hits: int, reset_time: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, self.config.max_requests - total_hits),
            reset_time=reset_time,
            total_hits=total_hits,
            limit=self.config.max_requests,
        )

    async def check_limit(self, identifier: str) -> RateLimitResult:
        """Check and consume quota for an identifier.

        Args:
            identifier: Composed identifier, e.g. ``user:42:/api/translate``

        Returns:
            RateLimitResult for this request
        """
        now = self.now_ms()
        key = self.build_key(identifier)
        try:
            return await asyncio.wait_for(self._check(key, now), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Rate limit store timed out after {self._timeout}s",
                extra=get_log_context(identifier=identifier, strategy=self.strategy.value),
            )
            return await self._handle_store_failure(identifier, now, "timeout")
        except STORE_ERRORS as e:
            logger.warning(
                f"Rate limit store error: {e}",
                extra=get_log_context(identifier=identifier, strategy=self.strategy.value),
            )
            return await self._handle_store_failure(identifier, now, "store_error")
        except Exception as e:
            logger.exception(
                f"Unexpected rate limit error: {e}",
                extra=get_log_context(identifier=identifier, strategy=self.strategy.value),
            )
            return await self._handle_store_failure(identifier, now, "unexpected")

    async def _handle_store_failure(
        self, identifier: str, now: int, reason: str
    ) -> RateLimitResult:
        """Build the degraded result for a failed check.

        Args:
            identifier: Identifier being checked
            now: Epoch milliseconds of the check
            reason: timeout | store_error | unexpected

        Returns:
            Allowed result by default, rejected when fail_closed is set
        """
        await get_metrics_collector().record_fail_open(self.strategy.value, reason)
        reset_time = now + self.config.window_ms

        if self._fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {reason}. Request denied.",
                extra=get_log_context(identifier=identifier, strategy=self.strategy.value),
            )
            return self._result(False, self.config.max_requests, reset_time)

        logger.warning(
            f"Rate limiting fail-open triggered due to {reason}. "
            "Request allowed without rate limit check.",
            extra=get_log_context(identifier=identifier, strategy=self.strategy.value),
        )
        return self._result(True, 1, reset_time)

    @abstractmethod
    async def _check(self, key: str, now: int) -> RateLimitResult:
        """Run the algorithm against the store."""


class FixedWindowLimiter(BaseLimiter):
    """Counts requests in discrete windows aligned to ``window_ms``.

    A client can send ``max_requests`` at the end of one window and
    ``max_requests`` again at the start of the next. That double burst is
    inherent to fixed windows; use the sliding window where it matters.
    """

    strategy = RateLimitStrategy.FIXED_WINDOW
    key_prefix = "fixed"

    async def _check(self, key: str, now: int) -> RateLimitResult:
        window_ms = self.config.window_ms
        window_start = (now // window_ms) * window_ms
        reset_time = window_start + window_ms
        window_key = f"{key}:{window_start}"

        current = await self.store.get(window_key)
        count = int(current) if current else 0

        # Rejected requests do not consume quota
        if count >= self.config.max_requests:
            return self._result(False, count, reset_time)

        new_count = await self.store.increment(window_key)
        # First writer in the window owns the expiry
        if new_count == 1:
            await self.store.expire(window_key, self.config.window_seconds)

        # Concurrent writers got past the read above
        if new_count > self.config.max_requests:
            return self._result(False, new_count, reset_time)

        return self._result(True, new_count, reset_time)


class SlidingWindowLimiter(BaseLimiter):
    """Precise sliding window backed by a sorted set of request timestamps.

    Trimming, recording and counting run as one store operation, so every
    concurrent request sees a distinct count. A request that tipped the set
    over the limit is withdrawn again; the trailing window never admits more
    than ``max_requests``.
    """

    strategy = RateLimitStrategy.SLIDING_WINDOW
    key_prefix = "sliding"

    async def _check(self, key: str, now: int) -> RateLimitResult:
        window_ms = self.config.window_ms
        reset_time = now + window_ms
        member = f"{now}-{uuid.uuid4().hex}"

        count = await self.store.sliding_window_hit(
            key, member, now, window_ms, self.config.window_seconds
        )

        if count > self.config.max_requests:
            await self.store.sorted_remove(key, member)
            return self._result(False, count - 1, reset_time)

        return self._result(True, count, reset_time)


class TokenBucketLimiter(BaseLimiter):
    """Continuous-refill token bucket.

    Capacity is ``max_requests`` and the bucket refills at
    ``max_requests / window_ms`` tokens per millisecond, so bursts up to the
    capacity pass while the sustained rate stays at the configured average.
    """

    strategy = RateLimitStrategy.TOKEN_BUCKET
    key_prefix = "bucket"

    def _refill(self, state: BucketState, now: int) -> float:
        capacity = self.config.max_requests
        elapsed_ms = max(0, now - state.last_refill)
        tokens_to_add = elapsed_ms * capacity / self.config.window_ms
        return min(float(capacity), state.tokens + tokens_to_add)

    def _ms_until(self, tokens_needed: float) -> int:
        return math.ceil(tokens_needed * self.config.window_ms / self.config.max_requests)

    async def _check(self, key: str, now: int) -> RateLimitResult:
        capacity = self.config.max_requests

        raw = await self.store.get(key)
        if raw:
            tokens = self._refill(BucketState.from_json(raw), now)
        else:
            tokens = float(capacity)

        if tokens < 1:
            await self.store.set_with_expiry(
                key, self.config.window_seconds, BucketState(tokens, now).to_json()
            )
            return self._result(False, capacity, now + self._ms_until(1 - tokens))

        tokens -= 1
        await self.store.set_with_expiry(
            key, self.config.window_seconds, BucketState(tokens, now).to_json()
        )

        remaining = math.floor(tokens)
        return self._result(
            True, capacity - remaining, now + self._ms_until(capacity - tokens)
        )


LIMITER_CLASSES: dict[RateLimitStrategy, type[BaseLimiter]] = {
    RateLimitStrategy.FIXED_WINDOW: FixedWindowLimiter,
    RateLimitStrategy.SLIDING_WINDOW: SlidingWindowLimiter,
    RateLimitStrategy.TOKEN_BUCKET: TokenBucketLimiter,
}
