"""In-process counters for throttling decisions.

Fail-open events are counted separately so a sustained store outage shows
up on dashboards even though no request is ever rejected because of it.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class PolicyMetrics:
    """Counters for a single (policy, strategy) pair."""

    checks: int = 0
    rejected: int = 0


@dataclass
class MetricsCollector:
    """Collects and stores rate limiting metrics.

    Collects:
    - Checks and rejections per policy and strategy
    - Fail-open events per strategy and reason
    """

    _policies: Dict[tuple[str, str], PolicyMetrics] = field(
        default_factory=lambda: defaultdict(PolicyMetrics)
    )
    _fail_open: Dict[tuple[str, str], int] = field(
        default_factory=lambda: defaultdict(int)
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def record_check(self, policy: str, strategy: str, allowed: bool) -> None:
        """Record one limiter decision.

        Args:
            policy: Policy name
            strategy: Strategy name
            allowed: Whether the request was allowed
        """
        async with self._lock:
            metrics = self._policies[(policy, strategy)]
            metrics.checks += 1
            if not allowed:
                metrics.rejected += 1

    async def record_fail_open(self, strategy: str, reason: str) -> None:
        """Record a check that was allowed because the store failed.

        Args:
            strategy: Strategy name
            reason: timeout | store_error | unexpected
        """
        async with self._lock:
            self._fail_open[(strategy, reason)] += 1

    async def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        async with self._lock:
            total_checks = sum(m.checks for m in self._policies.values())
            total_rejected = sum(m.rejected for m in self._policies.values())

            policies: Dict[str, Dict[str, Any]] = {}
            for (policy, strategy), metrics in self._policies.items():
                policies.setdefault(policy, {})[strategy] = {
                    "checks": metrics.checks,
                    "rejected": metrics.rejected,
                }

            fail_open: Dict[str, int] = defaultdict(int)
            for (_, reason), count in self._fail_open.items():
                fail_open[reason] += count

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "total_checks": total_checks,
                "total_rejected": total_rejected,
                "rejection_rate": round(total_rejected / total_checks, 4)
                if total_checks > 0
                else 0,
                "policies": policies,
                "fail_open": dict(fail_open),
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP ratelimit_checks_total Total rate limit checks")
            lines.append("# TYPE ratelimit_checks_total counter")
            for (policy, strategy), metrics in self._policies.items():
                lines.append(
                    f'ratelimit_checks_total{{policy="{policy}",strategy="{strategy}"}} {metrics.checks}'
                )

            lines.append("\n# HELP ratelimit_rejected_total Requests rejected by a limiter")
            lines.append("# TYPE ratelimit_rejected_total counter")
            for (policy, strategy), metrics in self._policies.items():
                lines.append(
                    f'ratelimit_rejected_total{{policy="{policy}",strategy="{strategy}"}} {metrics.rejected}'
                )

            lines.append(
                "\n# HELP ratelimit_fail_open_total Checks allowed because the store failed"
            )
            lines.append("# TYPE ratelimit_fail_open_total counter")
            for (strategy, reason), count in self._fail_open.items():
                lines.append(
                    f'ratelimit_fail_open_total{{strategy="{strategy}",reason="{reason}"}} {count}'
                )

            lines.append("\n# HELP ratelimit_uptime_seconds Process uptime in seconds")
            lines.append("# TYPE ratelimit_uptime_seconds gauge")
            lines.append(
                f"ratelimit_uptime_seconds{{}} {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    """Reset the global metrics collector (useful for testing)."""
    global _metrics_collector
    _metrics_collector = None
