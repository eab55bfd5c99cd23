import json
import re
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


STRATEGY_NAMES = ("fixed_window", "sliding_window", "token_bucket")
POLICY_FIELDS = {"window_ms", "max_requests", "strategy"}


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    parts = [p for p in re.split(r"[,\s]+", raw) if p]
    if "*" in parts:
        return ["*"]
    return parts


def _parse_path_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(v).strip() for v in raw if str(v).strip()]

    raw = str(raw).strip()
    if raw.startswith("["):
        parsed = json.loads(raw)
        return [str(v).strip() for v in parsed if str(v).strip()]
    return [p for p in re.split(r"[,\s]+", raw) if p]


def _parse_policy_overrides(raw: Any) -> dict[str, dict[str, Any]]:
    """Parse and validate RATE_LIMIT_POLICIES.

    Accepts a JSON object (or an already decoded dict) mapping a policy name
    to ``{"window_ms": int, "max_requests": int, "strategy": str}``. Every
    field is optional so a single limit can be tuned without restating the
    others, but whatever is given must be valid.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"RATE_LIMIT_POLICIES is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("RATE_LIMIT_POLICIES must be a JSON object")

    policies: dict[str, dict[str, Any]] = {}
    for name, override in raw.items():
        if not isinstance(override, dict):
            raise ValueError(f"Policy '{name}' must be an object")
        unknown = set(override) - POLICY_FIELDS
        if unknown:
            raise ValueError(f"Policy '{name}' has unknown fields: {sorted(unknown)}")
        for field in ("window_ms", "max_requests"):
            if field in override:
                value = override[field]
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise ValueError(f"Policy '{name}': {field} must be a positive integer")
        strategy = override.get("strategy")
        if strategy is not None and strategy not in STRATEGY_NAMES:
            raise ValueError(f"Policy '{name}': unknown strategy '{strategy}'")
        policies[str(name)] = dict(override)
    return policies


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional, in-memory store otherwise)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_connect_timeout: float = 10.0
    redis_command_timeout: float = 5.0

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_strategy: Literal["fixed_window", "sliding_window", "token_bucket"] = (
        "fixed_window"
    )
    rate_limit_scope: Literal["user", "ip", "both"] = "both"
    rate_limit_include_global: bool = False
    rate_limit_store_timeout: float = 0.5  # Seconds before a check fails open
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the store is unavailable
    )
    rate_limit_policies: Annotated[dict[str, dict[str, Any]], NoDecode] = Field(
        default_factory=dict
    )
    rate_limit_exempt_paths: Annotated[list[str], NoDecode] = ["/health", "/metrics"]

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("rate_limit_exempt_paths", mode="before")
    @classmethod
    def decode_exempt_paths(cls, v: Any) -> list[str]:
        return _parse_path_list(v)

    @field_validator("rate_limit_policies", mode="before")
    @classmethod
    def decode_rate_limit_policies(cls, v: Any) -> dict[str, dict[str, Any]]:
        """Reject malformed policy overrides at load time, not at check time."""
        return _parse_policy_overrides(v)

    @field_validator(
        "rate_limit_store_timeout",
        "redis_connect_timeout",
        "redis_command_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
