"""
Configuration for Token Scout

Single pydantic-settings class holding every environment variable, plus
builders that turn it into the typed objects the components take at
construction. Components never read ``settings`` themselves.

Usage:
    from token_scout.config import settings, build_rate_limit_configs

    limiter = RateLimiter(build_rate_limit_configs(settings))
"""

from typing import Dict, List

from pydantic_settings import BaseSettings

from token_scout.modules.filters.specs import FilterSpec, FilterType
from token_scout.modules.pipeline.scoring import ScoringWeights
from token_scout.modules.sources.schemas import SourceName
from token_scout.shared.errors import ConfigurationError
from token_scout.shared.rate_limiter import RateLimitConfig


class Settings(BaseSettings):
    """Central settings loaded from environment variables / .env file."""

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------
    DATABASE_URL: str = ""

    # ------------------------------------------------------------------
    # Rate limits (per source)
    # ------------------------------------------------------------------
    DEXSCREENER_MAX_REQUESTS: int = 300
    DEXSCREENER_WINDOW_MS: int = 60_000
    DEXSCREENER_BACKOFF_MS: int = 1000
    DEXSCREENER_MAX_RETRIES: int = 3

    RUGCHECK_MAX_REQUESTS: int = 100
    RUGCHECK_WINDOW_MS: int = 60_000
    RUGCHECK_BACKOFF_MS: int = 2000
    RUGCHECK_MAX_RETRIES: int = 3

    JUPITER_MAX_REQUESTS: int = 600
    JUPITER_WINDOW_MS: int = 60_000
    JUPITER_BACKOFF_MS: int = 500
    JUPITER_MAX_RETRIES: int = 3

    SOLSCAN_MAX_REQUESTS: int = 100
    SOLSCAN_WINDOW_MS: int = 60_000
    SOLSCAN_BACKOFF_MS: int = 2000
    SOLSCAN_MAX_RETRIES: int = 3

    # Shared retry policy
    RETRY_BACKOFF_FACTOR: float = 2.0
    RETRY_MAX_DELAY_MS: int = 30_000

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    DEXSCREENER_URL: str = "https://api.dexscreener.com"
    DEXSCREENER_TIMEOUT: float = 10.0
    RUGCHECK_URL: str = "https://api.rugcheck.xyz/v1"
    RUGCHECK_TIMEOUT: float = 15.0
    JUPITER_URL: str = "https://api.jup.ag/swap/v1"
    JUPITER_TIMEOUT: float = 10.0
    JUPITER_API_KEY: str = ""
    SOLSCAN_URL: str = "https://pro-api.solscan.io/v2.0"
    SOLSCAN_TIMEOUT: float = 20.0
    SOLSCAN_API_KEY: str = ""
    CHAIN: str = "solana"

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    CACHE_TTL_SECONDS: int = 300
    CACHE_MAX_SIZE: int = 10_000
    CACHE_SWEEP_INTERVAL_SECONDS: int = 60
    SOURCE_CACHE_TTL_SECONDS: int = 120
    HEALTH_CACHE_TTL_SECONDS: int = 30

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------
    DISCOVERY_INTERVAL_SECONDS: int = 300
    METRICS_REFRESH_INTERVAL_SECONDS: int = 60
    CLEANUP_INTERVAL_SECONDS: int = 21_600
    SCHEDULER_STALE_GRACE_SECONDS: int = 120
    SCHEDULER_ENABLED: bool = True

    # ------------------------------------------------------------------
    # Filters (0 / empty disables a threshold)
    # ------------------------------------------------------------------
    FILTER_MIN_LIQUIDITY: float = 5_000
    FILTER_MIN_VOLUME_24H: float = 1_000
    FILTER_MIN_MARKET_CAP: float = 0
    FILTER_MAX_MARKET_CAP: float = 0
    FILTER_MAX_AGE_HOURS: float = 72
    FILTER_MIN_SAFETY_SCORE: float = 6
    FILTER_MAX_SLIPPAGE: float = 10
    FILTER_MAX_CREATOR_RUGS: int = 0          # -1 disables
    FILTER_MAX_TOP_HOLDERS_PERCENTAGE: float = 60
    FILTER_MAX_RISK_SCORE: float = 0
    FILTER_MIN_OVERALL_SCORE: float = 0
    FILTER_REQUIRE_ROUTING: bool = True
    FILTER_NO_HONEYPOT: bool = True
    FILTER_NOT_BLACKLISTED: bool = True

    # ------------------------------------------------------------------
    # Scoring weights (per source, renormalized over present sources)
    # ------------------------------------------------------------------
    SCORE_WEIGHT_DEXSCREENER: float = 25
    SCORE_WEIGHT_RUGCHECK: float = 35
    SCORE_WEIGHT_JUPITER: float = 20
    SCORE_WEIGHT_SOLSCAN: float = 20
    RISK_WEIGHT_RUGCHECK: float = 50
    RISK_WEIGHT_SOLSCAN: float = 30
    RISK_WEIGHT_JUPITER: float = 20
    OPPORTUNITY_WEIGHT_DEXSCREENER: float = 70
    OPPORTUNITY_WEIGHT_JUPITER: float = 30

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    MAX_TOKENS_PER_RUN: int = 100
    MAX_CONCURRENT_JOBS: int = 10
    JOB_TIMEOUT_SECONDS: int = 90
    SHUTDOWN_GRACE_SECONDS: int = 30
    CRITICAL_SOURCES: str = "dexscreener"

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------
    WEBHOOK_URL: str = ""
    WEBHOOK_METHOD: str = "POST"

    # ------------------------------------------------------------------
    # General
    # ------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    API_PORT: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False


def build_rate_limit_configs(s: Settings) -> Dict[str, RateLimitConfig]:
    configs = {}
    for source in SourceName:
        prefix = source.value.upper()
        configs[source.value] = RateLimitConfig(
            service=source.value,
            max_requests=getattr(s, f"{prefix}_MAX_REQUESTS"),
            window_ms=getattr(s, f"{prefix}_WINDOW_MS"),
            backoff_base_ms=getattr(s, f"{prefix}_BACKOFF_MS"),
            max_retries=getattr(s, f"{prefix}_MAX_RETRIES"),
            backoff_factor=s.RETRY_BACKOFF_FACTOR,
            max_delay_ms=s.RETRY_MAX_DELAY_MS,
        )
    return configs


def build_filter_specs(s: Settings) -> List[FilterSpec]:
    specs: List[FilterSpec] = []

    def threshold(filter_type: FilterType, value: float) -> None:
        if value:
            specs.append(FilterSpec(filter_type, value=value))

    threshold(FilterType.MIN_LIQUIDITY, s.FILTER_MIN_LIQUIDITY)
    threshold(FilterType.MIN_VOLUME_24H, s.FILTER_MIN_VOLUME_24H)
    if s.FILTER_MIN_MARKET_CAP or s.FILTER_MAX_MARKET_CAP:
        specs.append(FilterSpec(
            FilterType.MARKET_CAP_RANGE,
            min=s.FILTER_MIN_MARKET_CAP or None,
            max=s.FILTER_MAX_MARKET_CAP or None,
        ))
    if s.FILTER_MAX_AGE_HOURS:
        specs.append(FilterSpec(FilterType.AGE_RANGE, min=0, max=s.FILTER_MAX_AGE_HOURS))
    threshold(FilterType.MIN_SAFETY_SCORE, s.FILTER_MIN_SAFETY_SCORE)
    threshold(FilterType.MAX_SLIPPAGE, s.FILTER_MAX_SLIPPAGE)
    threshold(FilterType.MAX_TOP_HOLDERS_PERCENTAGE, s.FILTER_MAX_TOP_HOLDERS_PERCENTAGE)
    threshold(FilterType.MAX_RISK_SCORE, s.FILTER_MAX_RISK_SCORE)
    threshold(FilterType.MIN_OVERALL_SCORE, s.FILTER_MIN_OVERALL_SCORE)

    if s.FILTER_MAX_CREATOR_RUGS >= 0:
        specs.append(FilterSpec(FilterType.MAX_CREATOR_RUGS, value=s.FILTER_MAX_CREATOR_RUGS))
    if s.FILTER_REQUIRE_ROUTING:
        specs.append(FilterSpec(FilterType.REQUIRE_ROUTING))
    if s.FILTER_NO_HONEYPOT:
        specs.append(FilterSpec(FilterType.NO_HONEYPOT))
    if s.FILTER_NOT_BLACKLISTED:
        specs.append(FilterSpec(FilterType.NOT_BLACKLISTED))
    return specs


def build_scoring_weights(s: Settings) -> ScoringWeights:
    return ScoringWeights(
        overall={
            SourceName.DEXSCREENER: s.SCORE_WEIGHT_DEXSCREENER,
            SourceName.RUGCHECK: s.SCORE_WEIGHT_RUGCHECK,
            SourceName.JUPITER: s.SCORE_WEIGHT_JUPITER,
            SourceName.SOLSCAN: s.SCORE_WEIGHT_SOLSCAN,
        },
        risk={
            SourceName.RUGCHECK: s.RISK_WEIGHT_RUGCHECK,
            SourceName.SOLSCAN: s.RISK_WEIGHT_SOLSCAN,
            SourceName.JUPITER: s.RISK_WEIGHT_JUPITER,
        },
        opportunity={
            SourceName.DEXSCREENER: s.OPPORTUNITY_WEIGHT_DEXSCREENER,
            SourceName.JUPITER: s.OPPORTUNITY_WEIGHT_JUPITER,
        },
    )


def critical_sources(s: Settings) -> List[SourceName]:
    names = [n.strip().lower() for n in s.CRITICAL_SOURCES.split(",") if n.strip()]
    try:
        return [SourceName(n) for n in names]
    except ValueError as e:
        raise ConfigurationError(f"CRITICAL_SOURCES: {e}") from None


# Process-wide instance, read only by the entry point.
settings = Settings()
