"""Tests for the settings builders."""

import pytest

from token_scout.config import (
    Settings,
    build_filter_specs,
    build_rate_limit_configs,
    build_scoring_weights,
    critical_sources,
)
from token_scout.modules.filters.specs import FilterType
from token_scout.modules.sources.schemas import SourceName
from token_scout.shared.errors import ConfigurationError


def make_settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_rate_limit_configs_cover_every_source():
    configs = build_rate_limit_configs(make_settings(JUPITER_MAX_REQUESTS=42))

    assert set(configs) == {s.value for s in SourceName}
    assert configs["jupiter"].max_requests == 42
    assert configs["rugcheck"].backoff_base_ms == 2000


def test_invalid_rate_limit_setting_fails_fast():
    with pytest.raises(ConfigurationError):
        build_rate_limit_configs(make_settings(SOLSCAN_WINDOW_MS=0))


def test_default_filter_specs():
    types = [spec.type for spec in build_filter_specs(make_settings())]

    assert FilterType.MIN_LIQUIDITY in types
    assert FilterType.AGE_RANGE in types
    assert FilterType.MAX_CREATOR_RUGS in types
    assert FilterType.NO_HONEYPOT in types
    # zero thresholds are disabled
    assert FilterType.MARKET_CAP_RANGE not in types
    assert FilterType.MAX_RISK_SCORE not in types


def test_disabled_filters_are_left_out():
    specs = build_filter_specs(make_settings(
        FILTER_MIN_LIQUIDITY=0,
        FILTER_MAX_CREATOR_RUGS=-1,
        FILTER_REQUIRE_ROUTING=False,
        FILTER_MAX_MARKET_CAP=1_000_000,
    ))
    by_type = {spec.type: spec for spec in specs}

    assert FilterType.MIN_LIQUIDITY not in by_type
    assert FilterType.MAX_CREATOR_RUGS not in by_type
    assert FilterType.REQUIRE_ROUTING not in by_type
    assert by_type[FilterType.MARKET_CAP_RANGE].max == 1_000_000
    assert by_type[FilterType.MARKET_CAP_RANGE].min is None


def test_scoring_weights_from_settings():
    weights = build_scoring_weights(make_settings(SCORE_WEIGHT_SOLSCAN=0))

    assert weights.overall[SourceName.SOLSCAN] == 0
    assert weights.risk[SourceName.RUGCHECK] == 50


def test_critical_sources_parsing():
    assert critical_sources(make_settings(CRITICAL_SOURCES=" DexScreener, rugcheck ,")) == [
        SourceName.DEXSCREENER, SourceName.RUGCHECK,
    ]
    assert critical_sources(make_settings(CRITICAL_SOURCES="")) == []
    with pytest.raises(ConfigurationError):
        critical_sources(make_settings(CRITICAL_SOURCES="dexscreener,birdeye"))
