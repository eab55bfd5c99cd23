"""Per-endpoint rate limit policies.

Maps a request path to the policy that governs it. The defaults below can be
tuned per deployment through ``RATE_LIMIT_POLICIES``.
"""

from dataclasses import dataclass, replace
from typing import Iterable, Optional

from verbaguard.app.middleware.rate_limit.models import RateLimitConfig, RateLimitStrategy

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS

DEFAULT_POLICY = "default"
GLOBAL_USER_POLICY = "global_user"
GLOBAL_IP_POLICY = "global_ip"


@dataclass(frozen=True)
class RateLimitPolicy:
    """A named policy and the path fragments that select it.

    Attributes:
        name: Policy name (also used in logs and metrics)
        config: Window and limit
        patterns: Path fragments matched as substrings of the endpoint
        strategy: Preferred strategy, None to use the limiter default
    """
    name: str
    config: RateLimitConfig
    patterns: tuple[str, ...] = ()
    strategy: Optional[RateLimitStrategy] = None


def _policy(
    name: str,
    window_ms: int,
    max_requests: int,
    patterns: tuple[str, ...] = (),
    strategy: Optional[RateLimitStrategy] = None,
) -> RateLimitPolicy:
    return RateLimitPolicy(
        name=name,
        config=RateLimitConfig(window_ms=window_ms, max_requests=max_requests, name=name),
        patterns=patterns,
        strategy=strategy,
    )


# Login is audit-sensitive, so it gets the precise sliding window
DEFAULT_POLICIES: tuple[RateLimitPolicy, ...] = (
    _policy("login", 15 * MINUTE_MS, 5, ("auth/login",), RateLimitStrategy.SLIDING_WINDOW),
    _policy("register", HOUR_MS, 3, ("auth/register",)),
    _policy("logout", MINUTE_MS, 10, ("auth/logout",)),
    _policy("translation", MINUTE_MS, 30, ("translate",)),
    _policy("vocabulary", MINUTE_MS, 100, ("vocabulary",)),
    _policy("practice", MINUTE_MS, 50, ("practice",)),
    _policy(GLOBAL_USER_POLICY, MINUTE_MS, 200),
    _policy(GLOBAL_IP_POLICY, MINUTE_MS, 100),
    _policy(DEFAULT_POLICY, MINUTE_MS, 60),
)


class PolicyTable:
    """Ordered collection of policies with endpoint resolution."""

    def __init__(self, policies: Iterable[RateLimitPolicy] = DEFAULT_POLICIES):
        self._policies: dict[str, RateLimitPolicy] = {}
        for policy in policies:
            self._policies[policy.name] = policy
        for required in (DEFAULT_POLICY, GLOBAL_USER_POLICY, GLOBAL_IP_POLICY):
            if required not in self._policies:
                raise ValueError(f"Policy table is missing the '{required}' policy")

    @classmethod
    def from_settings(cls, settings) -> "PolicyTable":
        """Build the default table with RATE_LIMIT_POLICIES applied.

        Overrides were validated when the settings loaded; a name that is
        not in the defaults adds a new policy matched on its own name.
        """
        policies = {policy.name: policy for policy in DEFAULT_POLICIES}
        for name, override in settings.rate_limit_policies.items():
            base = policies.get(name) or _policy(
                name, MINUTE_MS, 60, patterns=(name,)
            )
            config = RateLimitConfig(
                window_ms=override.get("window_ms", base.config.window_ms),
                max_requests=override.get("max_requests", base.config.max_requests),
                name=name,
            )
            strategy = override.get("strategy")
            policies[name] = replace(
                base,
                config=config,
                strategy=RateLimitStrategy(strategy) if strategy else base.strategy,
            )
        return cls(policies.values())

    def __getitem__(self, name: str) -> RateLimitPolicy:
        return self._policies[name]

    def __contains__(self, name: str) -> bool:
        return name in self._policies

    def __iter__(self):
        return iter(self._policies.values())

    def resolve(self, endpoint: str) -> RateLimitPolicy:
        """Find the policy for an endpoint path.

        Patterns match as substrings; the longest matching pattern wins and
        ties go to table order. Unmatched endpoints get the default policy.
        """
        best: Optional[RateLimitPolicy] = None
        best_length = 0
        for policy in self._policies.values():
            for pattern in policy.patterns:
                if pattern in endpoint and len(pattern) > best_length:
                    best = policy
                    best_length = len(pattern)
        return best or self._policies[DEFAULT_POLICY]
