"""Shared fakes for the pipeline tests."""

import asyncio
from typing import List, Optional

import pytest

from token_scout.modules.pipeline.aggregator import TokenAggregator
from token_scout.modules.pipeline.events import EventBus
from token_scout.modules.pipeline.schemas import TokenCandidate
from token_scout.modules.sources.health import HealthChecker
from token_scout.modules.sources.schemas import (
    DexScreenerData,
    JupiterData,
    RugCheckData,
    SolscanData,
    SourceName,
)
from token_scout.shared.cache import TTLCache
from token_scout.shared.rate_limiter import RateLimitConfig, RateLimiter


class FakeClock:
    """Manual clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, now: float = 1_000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def no_sleep(seconds: float) -> None:
    return None


def sample_data():
    return {
        SourceName.DEXSCREENER: DexScreenerData(
            address="Mint111", symbol="SCOUT", name="Scout",
            price_usd=0.01, liquidity_usd=50_000, volume_24h=20_000,
            market_cap=500_000, price_change_24h=12.0, age_hours=6.0,
        ),
        SourceName.RUGCHECK: RugCheckData(
            safety_score=8, liquidity_locked=True, holder_concentration=30, holder_count=450,
        ),
        SourceName.JUPITER: JupiterData(routing_available=True, slippage_estimate=2.0, route_count=2),
        SourceName.SOLSCAN: SolscanData(
            creator_wallet="Creator1", creator_created_tokens=1,
            top_holders_percentage=25, holder_count=500, funding_pattern="organic",
        ),
    }


class FakeSource:
    """Source client double with a call counter and optional gate."""

    def __init__(self, name: SourceName, data=None, error: Optional[Exception] = None, healthy: bool = True):
        self.name = name.value
        self.data = data
        self.error = error
        self.healthy = healthy
        self.calls = 0
        self.gate: Optional[asyncio.Event] = None
        self.candidates: List[TokenCandidate] = []
        self.discover_calls = 0

    async def fetch(self, address: str):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.data

    async def discover(self, chain: str = "solana") -> List[TokenCandidate]:
        self.discover_calls += 1
        return list(self.candidates)

    async def healthcheck(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        return None


def make_limiter(max_retries: int = 2) -> RateLimiter:
    configs = {
        name.value: RateLimitConfig(
            service=name.value, max_requests=1000, window_ms=1000,
            backoff_base_ms=1, max_retries=max_retries,
        )
        for name in SourceName
    }
    return RateLimiter(configs, sleep=no_sleep)


@pytest.fixture
def sources():
    return {name: FakeSource(name, data) for name, data in sample_data().items()}


@pytest.fixture
def events():
    bus = EventBus()
    received = []
    bus.subscribe(received.append)
    bus.received = received
    return bus


@pytest.fixture
def make_aggregator(sources, events):
    def factory(filter_specs=(), with_health=False, **kwargs):
        cache = TTLCache(default_ttl=60, max_size=100)
        health = HealthChecker({n.value: s for n, s in sources.items()}, cache) if with_health else None
        return TokenAggregator(
            sources=sources,
            rate_limiter=make_limiter(),
            cache=cache,
            events=events,
            filter_specs=filter_specs,
            health_checker=health,
            **kwargs,
        )
    return factory
