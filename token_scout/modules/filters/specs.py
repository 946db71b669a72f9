"""
Declarative filter specifications.

A ``FilterSpec`` names one predicate over a flat token record (a mapping or
any object exposing the same attribute names). Specs are validated when they
are built, so a typo in the configuration fails at startup instead of
silently letting every token through.

Record fields used by the filters:

    liquidity, volume_24h, market_cap, age_hours, price_change_24h,
    risk_score, holder_count, safety_score, slippage, routing_available,
    honeypot_risk, blacklisted, creator_rugged_tokens,
    top_holders_percentage, overall_score

All numeric bounds are inclusive. A field that is missing (``None``), for
example because its source was degraded, fails the predicate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional, Union

from token_scout.shared.errors import ConfigurationError


class FilterType(str, Enum):
    MIN_LIQUIDITY = "min_liquidity"
    MIN_VOLUME_24H = "min_volume_24h"
    VOLUME_RANGE = "volume_range"
    MARKET_CAP_RANGE = "market_cap_range"
    AGE_RANGE = "age_range"
    MAX_RISK_SCORE = "max_risk_score"
    MIN_HOLDERS = "min_holders"
    PRICE_CHANGE_RANGE = "price_change_range"
    MIN_SAFETY_SCORE = "min_safety_score"
    MAX_SLIPPAGE = "max_slippage"
    REQUIRE_ROUTING = "require_routing"
    NO_HONEYPOT = "no_honeypot"
    NOT_BLACKLISTED = "not_blacklisted"
    MAX_CREATOR_RUGS = "max_creator_rugs"
    MAX_TOP_HOLDERS_PERCENTAGE = "max_top_holders_percentage"
    MIN_OVERALL_SCORE = "min_overall_score"


class _Rule(NamedTuple):
    field: str
    kind: str                     # "min" | "max" | "range" | "true" | "false"
    lower: Optional[float] = None  # smallest legal threshold
    upper: Optional[float] = None  # largest legal threshold


RULES = {
    FilterType.MIN_LIQUIDITY: _Rule("liquidity", "min", 0),
    FilterType.MIN_VOLUME_24H: _Rule("volume_24h", "min", 0),
    FilterType.VOLUME_RANGE: _Rule("volume_24h", "range", 0),
    FilterType.MARKET_CAP_RANGE: _Rule("market_cap", "range", 0),
    FilterType.AGE_RANGE: _Rule("age_hours", "range", 0),
    FilterType.MAX_RISK_SCORE: _Rule("risk_score", "max", 0, 100),
    FilterType.MIN_HOLDERS: _Rule("holder_count", "min", 0),
    FilterType.PRICE_CHANGE_RANGE: _Rule("price_change_24h", "range", -100),
    FilterType.MIN_SAFETY_SCORE: _Rule("safety_score", "min", 0, 10),
    FilterType.MAX_SLIPPAGE: _Rule("slippage", "max", 0),
    FilterType.REQUIRE_ROUTING: _Rule("routing_available", "true"),
    FilterType.NO_HONEYPOT: _Rule("honeypot_risk", "false"),
    FilterType.NOT_BLACKLISTED: _Rule("blacklisted", "false"),
    FilterType.MAX_CREATOR_RUGS: _Rule("creator_rugged_tokens", "max", 0),
    FilterType.MAX_TOP_HOLDERS_PERCENTAGE: _Rule("top_holders_percentage", "max", 0, 100),
    FilterType.MIN_OVERALL_SCORE: _Rule("overall_score", "min", 0, 100),
}

# camelCase names used by dashboards and stored filter presets
_TYPE_ALIASES = {
    "minLiquidity": FilterType.MIN_LIQUIDITY,
    "minVolume": FilterType.MIN_VOLUME_24H,
    "minVolume24h": FilterType.MIN_VOLUME_24H,
    "volumeRange": FilterType.VOLUME_RANGE,
    "marketCapRange": FilterType.MARKET_CAP_RANGE,
    "ageRange": FilterType.AGE_RANGE,
    "maxRiskScore": FilterType.MAX_RISK_SCORE,
    "minHolders": FilterType.MIN_HOLDERS,
    "priceChangeRange": FilterType.PRICE_CHANGE_RANGE,
    "minSafetyScore": FilterType.MIN_SAFETY_SCORE,
    "maxSlippage": FilterType.MAX_SLIPPAGE,
    "requireRouting": FilterType.REQUIRE_ROUTING,
    "noHoneypot": FilterType.NO_HONEYPOT,
    "notBlacklisted": FilterType.NOT_BLACKLISTED,
    "maxCreatorRugs": FilterType.MAX_CREATOR_RUGS,
    "maxTopHoldersPercentage": FilterType.MAX_TOP_HOLDERS_PERCENTAGE,
    "minOverallScore": FilterType.MIN_OVERALL_SCORE,
}

_MIN_KEYS = ("min", "minValue", "min_value", "minHours", "minPercent")
_MAX_KEYS = ("max", "maxValue", "max_value", "maxHours", "maxPercent")


def parse_filter_type(raw: Union[str, FilterType]) -> FilterType:
    if isinstance(raw, FilterType):
        return raw
    if raw in _TYPE_ALIASES:
        return _TYPE_ALIASES[raw]
    try:
        return FilterType(raw)
    except ValueError:
        raise ConfigurationError(f"Unknown filter type: {raw!r}") from None


def read_field(token: Any, field: str) -> Any:
    """Read ``field`` from a mapping or an attribute-style record."""
    if isinstance(token, Mapping):
        return token.get(field)
    return getattr(token, field, None)


@dataclass(frozen=True)
class FilterSpec:
    """One validated filter predicate.

    Threshold filters (``min_*``/``max_*``) use ``value``, range filters use
    ``min`` and/or ``max``, boolean filters take no argument.
    """
    type: FilterType
    value: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "type", parse_filter_type(self.type))
        rule = RULES[self.type]
        name = self.type.value

        if rule.kind in ("min", "max"):
            if self.value is None:
                raise ConfigurationError(f"{name}: 'value' is required")
            self._check_number(name, "value", self.value, rule)
        elif rule.kind == "range":
            if self.min is None and self.max is None:
                raise ConfigurationError(f"{name}: at least one of 'min'/'max' is required")
            if self.min is not None:
                self._check_number(name, "min", self.min, rule)
            if self.max is not None:
                self._check_number(name, "max", self.max, rule)
            if self.min is not None and self.max is not None and self.min > self.max:
                raise ConfigurationError(f"{name}: min ({self.min}) > max ({self.max})")

    @staticmethod
    def _check_number(name: str, label: str, number: Any, rule: _Rule) -> None:
        if isinstance(number, bool) or not isinstance(number, (int, float)):
            raise ConfigurationError(f"{name}: '{label}' must be a number, got {number!r}")
        if number != number:
            raise ConfigurationError(f"{name}: '{label}' must not be NaN")
        if rule.lower is not None and number < rule.lower:
            raise ConfigurationError(f"{name}: '{label}' must be >= {rule.lower}, got {number}")
        if rule.upper is not None and number > rule.upper:
            raise ConfigurationError(f"{name}: '{label}' must be <= {rule.upper}, got {number}")

    @property
    def field(self) -> str:
        return RULES[self.type].field

    def matches(self, token: Any) -> bool:
        rule = RULES[self.type]
        actual = read_field(token, rule.field)

        if rule.kind == "true":
            return actual is True
        if rule.kind == "false":
            return actual is False
        if actual is None or isinstance(actual, bool):
            return False

        if rule.kind == "min":
            return actual >= self.value
        if rule.kind == "max":
            return actual <= self.value
        if self.min is not None and actual < self.min:
            return False
        if self.max is not None and actual > self.max:
            return False
        return True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FilterSpec":
        """Build a spec from a loose mapping (camelCase keys accepted)."""
        if "type" not in raw:
            raise ConfigurationError(f"Filter spec without 'type': {dict(raw)!r}")
        return cls(
            type=parse_filter_type(raw["type"]),
            value=raw.get("value"),
            min=_first(raw, _MIN_KEYS),
            max=_first(raw, _MAX_KEYS),
        )

    @classmethod
    def coerce(cls, spec: Union["FilterSpec", Mapping[str, Any]]) -> "FilterSpec":
        if isinstance(spec, FilterSpec):
            return spec
        if isinstance(spec, Mapping):
            return cls.from_dict(spec)
        raise ConfigurationError(f"Not a filter spec: {spec!r}")

    def to_dict(self) -> dict:
        data = {"type": self.type.value}
        for key in ("value", "min", "max"):
            if getattr(self, key) is not None:
                data[key] = getattr(self, key)
        return data


def _first(raw: Mapping[str, Any], keys) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None
