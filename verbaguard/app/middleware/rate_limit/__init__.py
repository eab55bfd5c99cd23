"""Rate limiting for the language-learning API.

Three strategies (fixed window, sliding window, token bucket) over a shared
key-value store, a facade that maps endpoints to policies, and the HTTP
middleware and route dependencies that enforce them.
"""

# Re-export models
from verbaguard.app.middleware.rate_limit.models import (
    BucketState,
    IdentifierScope,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStrategy,
)

# Re-export strategies
from verbaguard.app.middleware.rate_limit.backends import (
    BaseLimiter,
    FixedWindowLimiter,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)

from verbaguard.app.middleware.rate_limit.policies import PolicyTable, RateLimitPolicy
from verbaguard.app.middleware.rate_limit.identifiers import (
    get_client_ip,
    get_composite_id,
    get_user_agent,
    get_user_id,
)
from verbaguard.app.middleware.rate_limit.limiter import (
    RateLimiter,
    get_rate_limiter,
    reset_rate_limiter,
)
from verbaguard.app.middleware.rate_limit.middleware import (
    RateLimitMiddleware,
    public_route,
    rate_limit,
    rate_limit_response,
    secure_route,
)

__all__ = [
    # Models
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitStrategy",
    "IdentifierScope",
    "BucketState",
    # Strategies
    "BaseLimiter",
    "FixedWindowLimiter",
    "SlidingWindowLimiter",
    "TokenBucketLimiter",
    # Policies and identifiers
    "RateLimitPolicy",
    "PolicyTable",
    "get_client_ip",
    "get_user_agent",
    "get_composite_id",
    "get_user_id",
    # Main classes
    "RateLimiter",
    "get_rate_limiter",
    "reset_rate_limiter",
    "RateLimitMiddleware",
    "rate_limit",
    "rate_limit_response",
    "secure_route",
    "public_route",
]
