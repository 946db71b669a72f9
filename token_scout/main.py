"""
Token Scout - FastAPI Application

Builds the discovery pipeline once at startup and runs it in the background:

    settings -> cache -> rate limiter -> sources -> filters -> event bus
             -> aggregator -> scheduler (+ store / notifier subscribers)

Only service endpoints are exposed: /, /health and /metrics.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from token_scout.config import (
    Settings,
    build_filter_specs,
    build_rate_limit_configs,
    build_scoring_weights,
    critical_sources,
    settings,
)
from token_scout.database import check_health, close_pool, init_pool, is_initialised
from token_scout.modules.filters.pipeline import FilterPipeline
from token_scout.modules.outputs.notifier import WebhookNotifier
from token_scout.modules.outputs.store import PersistenceSubscriber, PostgresStore
from token_scout.modules.pipeline.aggregator import TokenAggregator
from token_scout.modules.pipeline.events import EventBus
from token_scout.modules.scheduler.scheduler import Scheduler
from token_scout.modules.sources.dexscreener import DexScreenerClient
from token_scout.modules.sources.health import HealthChecker
from token_scout.modules.sources.jupiter import JupiterClient
from token_scout.modules.sources.rugcheck import RugCheckClient
from token_scout.modules.sources.schemas import SourceName
from token_scout.modules.sources.solscan import SolscanClient
from token_scout.shared.cache import TTLCache
from token_scout.shared.prometheus import get_metrics, platform_db_connected, platform_uptime_seconds
from token_scout.shared.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

START_TIME = time.time()


def build_sources(s: Settings) -> Dict[SourceName, Any]:
    return {
        SourceName.DEXSCREENER: DexScreenerClient(s.DEXSCREENER_URL, timeout=s.DEXSCREENER_TIMEOUT, chain=s.CHAIN),
        SourceName.RUGCHECK: RugCheckClient(s.RUGCHECK_URL, timeout=s.RUGCHECK_TIMEOUT),
        SourceName.JUPITER: JupiterClient(s.JUPITER_URL, timeout=s.JUPITER_TIMEOUT, api_key=s.JUPITER_API_KEY),
        SourceName.SOLSCAN: SolscanClient(s.SOLSCAN_URL, timeout=s.SOLSCAN_TIMEOUT, api_key=s.SOLSCAN_API_KEY),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    logger.info("Token Scout starting...")

    # 1. Database (optional: without it analyses are only published as events)
    if settings.DATABASE_URL:
        try:
            await init_pool(settings.DATABASE_URL)
        except Exception as e:
            logger.warning("Database unavailable, persistence disabled: %s", e)

    # 2. Shared infrastructure
    cache = TTLCache(
        default_ttl=settings.CACHE_TTL_SECONDS,
        max_size=settings.CACHE_MAX_SIZE,
        sweep_interval=settings.CACHE_SWEEP_INTERVAL_SECONDS,
    )
    limiter = RateLimiter(build_rate_limit_configs(settings))
    sources = build_sources(settings)
    events = EventBus()

    # 3. Pipeline
    aggregator = TokenAggregator(
        sources=sources,
        rate_limiter=limiter,
        cache=cache,
        events=events,
        filter_specs=build_filter_specs(settings),
        filter_pipeline=FilterPipeline(),
        weights=build_scoring_weights(settings),
        health_checker=HealthChecker(
            {name.value: client for name, client in sources.items()},
            cache,
            ttl_seconds=settings.HEALTH_CACHE_TTL_SECONDS,
        ),
        critical_sources=critical_sources(settings),
        source_cache_ttl=settings.SOURCE_CACHE_TTL_SECONDS,
        max_tokens_per_run=settings.MAX_TOKENS_PER_RUN,
        max_concurrent_jobs=settings.MAX_CONCURRENT_JOBS,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        chain=settings.CHAIN,
    )
    scheduler = Scheduler(
        aggregator,
        discovery_interval=settings.DISCOVERY_INTERVAL_SECONDS,
        metrics_interval=settings.METRICS_REFRESH_INTERVAL_SECONDS,
        cleanup_interval=settings.CLEANUP_INTERVAL_SECONDS,
        stale_grace=settings.SCHEDULER_STALE_GRACE_SECONDS,
    )

    # 4. Outputs
    if is_initialised():
        PersistenceSubscriber(PostgresStore()).attach(events)
    notifier = WebhookNotifier(settings.WEBHOOK_URL, method=settings.WEBHOOK_METHOD)
    notifier.attach(events)

    app.state.cache = cache
    app.state.rate_limiter = limiter
    app.state.sources = sources
    app.state.aggregator = aggregator
    app.state.scheduler = scheduler
    app.state.notifier = notifier

    # 5. Background work
    await cache.start()
    if settings.SCHEDULER_ENABLED:
        await scheduler.start()

    async def update_uptime():
        while True:
            platform_uptime_seconds.set(time.time() - START_TIME)
            await asyncio.sleep(10)

    uptime_task = asyncio.create_task(update_uptime())
    logger.info("Token Scout ready on port %d", settings.API_PORT)

    yield  # Application runs

    logger.info("Token Scout shutting down...")
    uptime_task.cancel()
    await scheduler.stop()
    abandoned = await aggregator.drain(settings.SHUTDOWN_GRACE_SECONDS)
    if abandoned:
        logger.warning("%d job(s) abandoned on shutdown", abandoned)
    await events.wait_idle(timeout=5)
    await cache.stop()
    for client in sources.values():
        await client.close()
    await close_pool()
    logger.info("Token Scout stopped")


app = FastAPI(
    title="Token Scout",
    description="Token discovery and multi-source risk/opportunity analysis pipeline",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/")
async def root(request: Request):
    """Service info and pipeline counters."""
    aggregator = request.app.state.aggregator
    return {
        "service": "token-scout",
        "version": "1.0.0",
        "uptime": round(time.time() - START_TIME, 1),
        "pipeline": aggregator.get_stats().to_dict(),
        "last_runs": [run.to_dict() for run in aggregator.get_run_history(5)],
    }


@app.get("/health")
async def global_health(request: Request):
    """Scheduler, source and database health."""
    state = request.app.state
    db_ok = await check_health() if is_initialised() else False
    platform_db_connected.set(1 if db_ok else 0)

    scheduler_health = state.scheduler.get_health_status()
    source_health = await state.aggregator.health_checker.check()

    healthy = scheduler_health["status"] != "stale" and source_health.overall != "unhealthy"
    return {
        "status": "healthy" if healthy else "degraded",
        "db_connected": db_ok,
        "uptime_seconds": round(time.time() - START_TIME, 1),
        "scheduler": {**scheduler_health, "tasks": state.scheduler.get_metrics()},
        "sources": source_health.to_dict(),
        "rate_limits": {
            name: state.rate_limiter.get_stats(name) for name in state.rate_limiter.services
        },
        "aggregator": state.aggregator.get_status(),
        "notifier": state.notifier.status,
    }


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    return get_metrics()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "token_scout.main:app",
        host="0.0.0.0",
        port=settings.API_PORT,
        reload=False,
        log_level=settings.LOG_LEVEL.lower(),
    )
