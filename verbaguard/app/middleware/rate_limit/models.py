"""Rate limiting data models.

This module contains dataclasses for policies, limiter state and results.
"""

import json
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from verbaguard.app.exceptions import PolicyConfigurationError


class RateLimitStrategy(str, Enum):
    """Algorithm used to enforce a policy."""
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


class IdentifierScope(str, Enum):
    """Which identities the middleware checks for a request."""
    USER = "user"
    IP = "ip"
    BOTH = "both"


@dataclass(frozen=True)
class RateLimitConfig:
    """One logical limiting policy, e.g. login attempts or translation calls.

    Attributes:
        window_ms: Window length in milliseconds
        max_requests: Requests allowed per window (bucket capacity for
            the token bucket)
        key_generator: Optional mapping from identifier to store key
        name: Policy name used in logs and metrics
    """
    window_ms: int
    max_requests: int
    key_generator: Optional[Callable[[str], str]] = None
    name: str = "custom"

    def __post_init__(self) -> None:
        for field_name in ("window_ms", "max_requests"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise PolicyConfigurationError(
                    f"Policy '{self.name}': {field_name} must be a positive integer, got {value!r}"
                )

    @property
    def window_seconds(self) -> int:
        """TTL in whole seconds for keys written under this policy."""
        return math.ceil(self.window_ms / 1000)


@dataclass
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Requests left before rejection, never negative
        reset_time: Epoch milliseconds when the quota frees up
        total_hits: Hits counted against the policy
        limit: The policy's max_requests
    """
    allowed: bool
    remaining: int
    reset_time: int
    total_hits: int
    limit: int

    def retry_after_seconds(self, now_ms: int) -> int:
        """Whole seconds until reset_time, at least 1 for a rejection."""
        seconds = math.ceil((self.reset_time - now_ms) / 1000)
        if not self.allowed:
            return max(1, seconds)
        return max(0, seconds)


@dataclass
class BucketState:
    """Token bucket state for token bucket algorithm."""
    tokens: float
    last_refill: int

    def to_json(self) -> str:
        return json.dumps({"tokens": self.tokens, "lastRefill": self.last_refill})

    @classmethod
    def from_json(cls, raw: str) -> "BucketState":
        data = json.loads(raw)
        return cls(tokens=float(data["tokens"]), last_refill=int(data["lastRefill"]))
