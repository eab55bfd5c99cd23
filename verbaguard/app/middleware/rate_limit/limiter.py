"""RateLimiter facade.

Owns the store, the policy table and a cache of strategy instances, and
composes the per-identity checks the middleware runs for each request.
"""

import time
from typing import Callable, Optional, Union

from verbaguard.app.core.config import settings
from verbaguard.app.core.logging import get_log_context, get_logger
from verbaguard.app.core.metrics import get_metrics_collector
from verbaguard.app.core.store import KeyValueStore, get_store
from verbaguard.app.middleware.rate_limit.backends import LIMITER_CLASSES, BaseLimiter
from verbaguard.app.middleware.rate_limit.models import (
    IdentifierScope,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
)
from verbaguard.app.middleware.rate_limit.policies import (
    GLOBAL_IP_POLICY,
    GLOBAL_USER_POLICY,
    PolicyTable,
    RateLimitPolicy,
)

logger = get_logger(__name__)

StrategyLike = Union[RateLimitStrategy, str, None]


class RateLimiter:
    """Entry point for rate limit checks.

    Limiter instances are created lazily per ``(strategy, config)`` and
    reused. Two coroutines racing on the first lookup may both build one;
    limiters hold no state of their own, so the duplicate is harmless.

    Example:
        >>> limiter = RateLimiter(store=InMemoryStore())
        >>> result = await limiter.check_user_limit("42", "/api/translate")
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        policies: Optional[PolicyTable] = None,
        default_strategy: StrategyLike = None,
        clock: Optional[Callable[[], float]] = None,
        timeout: Optional[float] = None,
        fail_closed: Optional[bool] = None,
    ):
        """Initialize the rate limiter.

        Args:
            store: Backing store (default: the process store)
            policies: Policy table (default: built from settings)
            default_strategy: Strategy for policies without a preference
            clock: Time source returning UNIX time in seconds
            timeout: Per-check store timeout override
            fail_closed: Reject on store failure instead of allowing
        """
        self.store = store if store is not None else get_store()
        self.policies = policies if policies is not None else PolicyTable.from_settings(settings)
        self.default_strategy = RateLimitStrategy(
            default_strategy or settings.rate_limit_strategy
        )
        self._clock = clock or time.time
        self._timeout = timeout
        self._fail_closed = fail_closed
        self._limiters: dict[tuple[RateLimitStrategy, RateLimitConfig], BaseLimiter] = {}

    def now_ms(self) -> int:
        return round(self._clock() * 1000)

    def _get_limiter(self, config: RateLimitConfig, strategy: RateLimitStrategy) -> BaseLimiter:
        cache_key = (strategy, config)
        limiter = self._limiters.get(cache_key)
        if limiter is None:
            limiter = LIMITER_CLASSES[strategy](
                config,
                self.store,
                clock=self._clock,
                timeout=self._timeout,
                fail_closed=self._fail_closed,
            )
            self._limiters[cache_key] = limiter
        return limiter

    def _resolve_strategy(
        self, strategy: StrategyLike, policy: Optional[RateLimitPolicy] = None
    ) -> RateLimitStrategy:
        if strategy:
            return RateLimitStrategy(strategy)
        if policy is not None and policy.strategy is not None:
            return policy.strategy
        return self.default_strategy

    async def check_limit(
        self,
        identifier: str,
        config: RateLimitConfig,
        strategy: StrategyLike = None,
    ) -> RateLimitResult:
        """Check an identifier against a policy.

        Args:
            identifier: Composed identifier, e.g. ``ip:1.2.3.4:/api/login``
            config: Policy to enforce
            strategy: Algorithm to use (default: the facade default)

        Returns:
            RateLimitResult; never raises for store failures
        """
        resolved = self._resolve_strategy(strategy)
        result = await self._get_limiter(config, resolved).check_limit(identifier)
        await get_metrics_collector().record_check(config.name, resolved.value, result.allowed)

        if not result.allowed:
            logger.warning(
                f"Rate limit exceeded for {identifier}: "
                f"{result.total_hits}/{config.max_requests} in {config.window_ms}ms",
                extra=get_log_context(
                    identifier=identifier,
                    policy=config.name,
                    strategy=resolved.value,
                ),
            )
        return result

    async def _check_policy(
        self, identifier: str, policy: RateLimitPolicy, strategy: StrategyLike = None
    ) -> RateLimitResult:
        return await self.check_limit(
            identifier, policy.config, self._resolve_strategy(strategy, policy)
        )

    async def check_user_limit(
        self, user_id: str, endpoint: str, strategy: StrategyLike = None
    ) -> RateLimitResult:
        policy = self.policies.resolve(endpoint)
        return await self._check_policy(f"user:{user_id}:{endpoint}", policy, strategy)

    async def check_ip_limit(
        self, ip: str, endpoint: str, strategy: StrategyLike = None
    ) -> RateLimitResult:
        policy = self.policies.resolve(endpoint)
        return await self._check_policy(f"ip:{ip}:{endpoint}", policy, strategy)

    async def check_global_user_limit(self, user_id: str) -> RateLimitResult:
        return await self._check_policy(
            f"global:user:{user_id}", self.policies[GLOBAL_USER_POLICY]
        )

    async def check_global_ip_limit(self, ip: str) -> RateLimitResult:
        return await self._check_policy(f"global:ip:{ip}", self.policies[GLOBAL_IP_POLICY])

    async def check_request(
        self,
        endpoint: str,
        ip: str,
        user_id: Optional[str] = None,
        scope: Union[IdentifierScope, str] = IdentifierScope.BOTH,
        include_global: bool = False,
    ) -> Optional[RateLimitResult]:
        """Run every check that applies to one request.

        IP is checked first, then the user when one is known, then the
        global limits if requested. The first rejection is returned as is.
        When everything passes, the allowed result with the fewest remaining
        requests is returned so the response headers show the tightest limit.

        Args:
            endpoint: Request path
            ip: Client address
            user_id: Authenticated user id, if any
            scope: Which identities to check
            include_global: Also apply the global per-user/per-IP limits

        Returns:
            The deciding result, or None when no check applied
            (user scope with an anonymous caller)
        """
        scope = IdentifierScope(scope)
        check_ip = scope in (IdentifierScope.IP, IdentifierScope.BOTH)
        check_user = bool(user_id) and scope in (IdentifierScope.USER, IdentifierScope.BOTH)

        checks = []
        if check_ip:
            checks.append(lambda: self.check_ip_limit(ip, endpoint))
        if check_user:
            checks.append(lambda: self.check_user_limit(user_id, endpoint))
        if include_global and check_ip:
            checks.append(lambda: self.check_global_ip_limit(ip))
        if include_global and check_user:
            checks.append(lambda: self.check_global_user_limit(user_id))

        tightest: Optional[RateLimitResult] = None
        for check in checks:
            result = await check()
            if not result.allowed:
                return result
            if tightest is None or result.remaining < tightest.remaining:
                tightest = result
        return tightest

    def get_config_for_endpoint(self, endpoint: str) -> RateLimitConfig:
        return self.policies.resolve(endpoint).config

    async def reset(
        self,
        identifier: str,
        config: RateLimitConfig,
        strategy: StrategyLike = None,
    ) -> None:
        """Forget all state for an identifier under a policy.

        Fixed-window counters are keyed by window start, so the current and
        previous windows are both cleared.
        """
        resolved = self._resolve_strategy(strategy)
        limiter = self._get_limiter(config, resolved)
        key = limiter.build_key(identifier)

        if resolved is RateLimitStrategy.FIXED_WINDOW:
            window_start = (self.now_ms() // config.window_ms) * config.window_ms
            keys = [f"{key}:{window_start}", f"{key}:{window_start - config.window_ms}"]
        else:
            keys = [key]

        await self.store.delete(*keys)
        logger.info(
            f"Rate limit state reset for {identifier}",
            extra=get_log_context(
                identifier=identifier, policy=config.name, strategy=resolved.value
            ),
        )


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the process rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = None
