"""
Source health checks.

Runs every client's ``healthcheck()`` concurrently and grades the system:

    >= 80% healthy  -> "healthy"
    >= 50% healthy  -> "degraded"
    otherwise       -> "unhealthy"

Reports are cached for a short TTL so a burst of batches does not hammer the
upstream APIs with probes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Mapping, Optional

from token_scout.modules.sources.base import SourceClient
from token_scout.shared.cache import TTLCache

logger = logging.getLogger(__name__)

CACHE_KEY = "health:sources"


@dataclass(frozen=True)
class SourceHealth:
    service: str
    healthy: bool
    latency_ms: float
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthReport:
    overall: str
    services: List[SourceHealth]
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def healthy_services(self) -> int:
        return sum(1 for s in self.services if s.healthy)

    def is_healthy(self, service: str) -> bool:
        return any(s.service == service and s.healthy for s in self.services)

    def to_dict(self) -> dict:
        return {
            "overall": self.overall,
            "healthy_services": self.healthy_services,
            "total_services": len(self.services),
            "checked_at": self.checked_at.isoformat(),
            "services": {
                s.service: {"healthy": s.healthy, "latency_ms": round(s.latency_ms, 1), "error": s.error}
                for s in self.services
            },
        }


def grade(healthy: int, total: int) -> str:
    if total == 0:
        return "unhealthy"
    ratio = healthy / total
    if ratio >= 0.8:
        return "healthy"
    if ratio >= 0.5:
        return "degraded"
    return "unhealthy"


class HealthChecker:

    def __init__(self, clients: Mapping[str, SourceClient], cache: TTLCache, ttl_seconds: float = 30):
        self.clients = dict(clients)
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def _check_one(self, name: str, client: SourceClient) -> SourceHealth:
        start = time.monotonic()
        try:
            healthy = bool(await client.healthcheck())
            error = None
        except Exception as e:
            healthy, error = False, str(e)
        return SourceHealth(name, healthy, (time.monotonic() - start) * 1000, error)

    async def check(self, use_cache: bool = True) -> HealthReport:
        if use_cache:
            cached = self.cache.get(CACHE_KEY)
            if cached is not None:
                return cached

        results = await asyncio.gather(
            *(self._check_one(name, client) for name, client in self.clients.items())
        )
        report = HealthReport(
            overall=grade(sum(1 for r in results if r.healthy), len(results)),
            services=list(results),
        )
        self.cache.set(CACHE_KEY, report, ttl=self.ttl_seconds)

        logger.info(
            "Source health: %s (%d/%d healthy)",
            report.overall, report.healthy_services, len(report.services),
        )
        return report
