"""
Filter Pipeline

Side-effect-free predicate evaluation over token records. Inputs are never
mutated; every call returns a new list in input order.

Usage:
    pipeline = FilterPipeline()
    specs = [FilterSpec("min_liquidity", value=10_000), {"type": "noHoneypot"}]

    survivors = pipeline.apply_filter_chain(tokens, specs)
    result = pipeline.apply_filter_chain_with_stats(tokens, specs)
    result.stats.rejection_reasons   # {"min_liquidity": 3, "no_honeypot": 1}
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Union

from token_scout.modules.filters.specs import FilterSpec

logger = logging.getLogger(__name__)

SpecLike = Union[FilterSpec, Mapping[str, Any]]


@dataclass(frozen=True)
class FilterStats:
    original_count: int
    filtered_count: int
    rejected_count: int
    rejection_rate: float
    rejection_reasons: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "original_count": self.original_count,
            "filtered_count": self.filtered_count,
            "rejected_count": self.rejected_count,
            "rejection_rate": self.rejection_rate,
            "rejection_reasons": dict(self.rejection_reasons),
        }


@dataclass(frozen=True)
class FilterResult:
    filtered: List[Any]
    stats: FilterStats


def _build_stats(original: int, filtered: int, reasons: Dict[str, int]) -> FilterStats:
    rejected = original - filtered
    return FilterStats(
        original_count=original,
        filtered_count=filtered,
        rejected_count=rejected,
        rejection_rate=(rejected / original) if original else 0.0,
        rejection_reasons=reasons,
    )


class FilterPipeline:
    """Stateless evaluator for ``FilterSpec`` chains."""

    @staticmethod
    def validate(specs: Iterable[SpecLike]) -> List[FilterSpec]:
        """Coerce every spec, raising ``ConfigurationError`` on the first bad one."""
        return [FilterSpec.coerce(spec) for spec in specs]

    def apply_filter(self, tokens: Sequence[Any], spec: SpecLike) -> List[Any]:
        spec = FilterSpec.coerce(spec)
        return [token for token in tokens if spec.matches(token)]

    def apply_filter_chain(self, tokens: Sequence[Any], specs: Sequence[SpecLike]) -> List[Any]:
        """Keep tokens matching every spec (logical AND, order-independent)."""
        chain = self.validate(specs)
        return [token for token in tokens if all(spec.matches(token) for spec in chain)]

    def apply_custom_filter(
        self, tokens: Sequence[Any], predicate: Callable[[Any], bool],
    ) -> List[Any]:
        return [token for token in tokens if predicate(token)]

    def failed_filters(self, token: Any, specs: Sequence[SpecLike]) -> List[str]:
        """Names of every filter ``token`` fails, in chain order."""
        return [spec.type.value for spec in self.validate(specs) if not spec.matches(token)]

    def apply_filter_with_stats(self, tokens: Sequence[Any], spec: SpecLike) -> FilterResult:
        spec = FilterSpec.coerce(spec)
        filtered = [token for token in tokens if spec.matches(token)]
        rejected = len(tokens) - len(filtered)
        reasons = {spec.type.value: rejected} if rejected else {}
        return FilterResult(filtered, _build_stats(len(tokens), len(filtered), reasons))

    def apply_filter_chain_with_stats(
        self, tokens: Sequence[Any], specs: Sequence[SpecLike],
    ) -> FilterResult:
        """Like ``apply_filter_chain`` but every spec is evaluated on every token.

        A token rejected by several filters counts once towards
        ``rejected_count`` and once towards each filter it failed in
        ``rejection_reasons``.
        """
        chain = self.validate(specs)
        filtered: List[Any] = []
        reasons: Dict[str, int] = {}

        for token in tokens:
            failed = [spec.type.value for spec in chain if not spec.matches(token)]
            if not failed:
                filtered.append(token)
                continue
            for name in failed:
                reasons[name] = reasons.get(name, 0) + 1

        stats = _build_stats(len(tokens), len(filtered), reasons)
        if tokens:
            logger.debug(
                "Filter chain (%d specs): %d/%d passed, reasons=%s",
                len(chain), stats.filtered_count, stats.original_count, reasons,
            )
        return FilterResult(filtered, stats)
