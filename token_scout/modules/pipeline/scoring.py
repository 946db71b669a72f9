"""
Scoring of a combined analysis.

Every source contributes 0-100 sub-scores. The three published scores are
weighted averages over the sources that answered; a degraded source is left
out and the remaining weights are renormalized, so a missing source never
counts as a zero.

    overall     = blend(dex, rugcheck, jupiter, solscan quality)
    risk        = blend(rugcheck, solscan, jupiter risk)         higher = riskier
    opportunity = blend(dexscreener, jupiter market potential)

Weights are configuration (``ScoringWeights``); the sub-score formulas below
are the defaults.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

from pydantic import BaseModel

from token_scout.modules.sources.schemas import (
    DexScreenerData,
    JupiterData,
    RugCheckData,
    SolscanData,
    SourceName,
)


def _weights(**kw: float) -> Callable[[], Dict[SourceName, float]]:
    return lambda: {SourceName(k): v for k, v in kw.items()}


@dataclass(frozen=True)
class ScoringWeights:
    overall: Dict[SourceName, float] = field(
        default_factory=_weights(dexscreener=25, rugcheck=35, jupiter=20, solscan=20)
    )
    risk: Dict[SourceName, float] = field(
        default_factory=_weights(rugcheck=50, solscan=30, jupiter=20)
    )
    opportunity: Dict[SourceName, float] = field(
        default_factory=_weights(dexscreener=70, jupiter=30)
    )


class Scores(NamedTuple):
    overall: float
    risk: float
    opportunity: float


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


# ---------------------------------------------------------------------------
# Quality sub-scores (overall)
# ---------------------------------------------------------------------------

def dex_quality(d: DexScreenerData) -> float:
    score = 50.0
    if d.liquidity_usd > 10_000:
        score += 20
    if d.volume_24h > 5_000:
        score += 15
    if d.age_hours is not None and 1 < d.age_hours < 24:
        score += 15
    return _clamp(score)


def rugcheck_quality(d: RugCheckData) -> float:
    score = d.safety_score * 10
    if d.honeypot_risk:
        score = min(score, 10.0)
    return _clamp(score)


def jupiter_quality(d: JupiterData) -> float:
    if not d.routing_available:
        return 0.0
    score = 60.0
    if d.slippage_estimate < 5:
        score += 25
    elif d.slippage_estimate < 10:
        score += 15
    if not d.blacklisted:
        score += 15
    return _clamp(score)


def solscan_quality(d: SolscanData) -> float:
    score = 50.0
    if d.creator_rugged_tokens == 0:
        score += 25
    elif d.creator_rugged_tokens <= 1:
        score += 10
    if d.top_holders_percentage < 40:
        score += 15
    elif d.top_holders_percentage < 60:
        score += 5
    if d.funding_pattern == "organic":
        score += 10
    return _clamp(score)


# ---------------------------------------------------------------------------
# Risk sub-scores
# ---------------------------------------------------------------------------

def rugcheck_risk(d: RugCheckData) -> float:
    risk = 100 - d.safety_score * 10
    if d.honeypot_risk:
        risk = max(risk, 90.0)
    return _clamp(risk)


def solscan_risk(d: SolscanData) -> float:
    risk = d.top_holders_percentage * 0.5 + min(d.creator_rugged_tokens, 4) * 12.5
    if d.funding_pattern == "suspicious":
        risk += 10
    elif d.funding_pattern == "coordinated":
        risk += 20
    return _clamp(risk)


def jupiter_risk(d: JupiterData) -> float:
    if not d.routing_available or d.blacklisted:
        return 100.0
    return _clamp(d.slippage_estimate * 5)


# ---------------------------------------------------------------------------
# Opportunity sub-scores
# ---------------------------------------------------------------------------

def dex_opportunity(d: DexScreenerData) -> float:
    turnover = (d.volume_24h / d.liquidity_usd) if d.liquidity_usd > 0 else 0.0
    score = min(40.0, turnover * 20)
    score += min(30.0, max(0.0, d.price_change_24h) * 0.3)
    if d.age_hours is not None:
        if d.age_hours < 24:
            score += 30
        elif d.age_hours < 72:
            score += 15
    return _clamp(score)


def jupiter_opportunity(d: JupiterData) -> float:
    if not d.routing_available or d.blacklisted:
        return 0.0
    return _clamp(100 - d.slippage_estimate * 5)


QUALITY = {
    SourceName.DEXSCREENER: dex_quality,
    SourceName.RUGCHECK: rugcheck_quality,
    SourceName.JUPITER: jupiter_quality,
    SourceName.SOLSCAN: solscan_quality,
}
RISK = {
    SourceName.RUGCHECK: rugcheck_risk,
    SourceName.SOLSCAN: solscan_risk,
    SourceName.JUPITER: jupiter_risk,
}
OPPORTUNITY = {
    SourceName.DEXSCREENER: dex_opportunity,
    SourceName.JUPITER: jupiter_opportunity,
}


def blend(
    present: Mapping[SourceName, BaseModel],
    weights: Mapping[SourceName, float],
    scorers: Mapping[SourceName, Callable[[Any], float]],
) -> float:
    """Weighted mean over present sources only; 0 when none contributes."""
    total_weight = 0.0
    total = 0.0
    for source, scorer in scorers.items():
        weight = weights.get(source, 0.0)
        if source not in present or weight <= 0:
            continue
        total += scorer(present[source]) * weight
        total_weight += weight
    if total_weight == 0:
        return 0.0
    return round(total / total_weight, 2)


def compute_scores(present: Mapping[SourceName, BaseModel], weights: ScoringWeights) -> Scores:
    return Scores(
        overall=blend(present, weights.overall, QUALITY),
        risk=blend(present, weights.risk, RISK),
        opportunity=blend(present, weights.opportunity, OPPORTUNITY),
    )


def build_record(
    address: str,
    present: Mapping[SourceName, BaseModel],
    scores: Scores,
    has_errors: bool,
    blacklisted: bool = False,
    symbol: str = "",
    name: str = "",
) -> Dict[str, Any]:
    """Flatten the present sources into the record the filters read.

    Fields of a degraded source stay ``None`` so filters on them fail.
    """
    dex: Optional[DexScreenerData] = present.get(SourceName.DEXSCREENER)
    rug: Optional[RugCheckData] = present.get(SourceName.RUGCHECK)
    jup: Optional[JupiterData] = present.get(SourceName.JUPITER)
    sol: Optional[SolscanData] = present.get(SourceName.SOLSCAN)

    holder_count = None
    if sol is not None and sol.holder_count is not None:
        holder_count = sol.holder_count
    elif rug is not None:
        holder_count = rug.holder_count

    return {
        "address": address,
        "symbol": (dex.symbol if dex and dex.symbol else symbol),
        "name": (dex.name if dex and dex.name else name),
        "liquidity": dex.liquidity_usd if dex else None,
        "volume_24h": dex.volume_24h if dex else None,
        "market_cap": dex.market_cap if dex else None,
        "price_usd": dex.price_usd if dex else None,
        "price_change_24h": dex.price_change_24h if dex else None,
        "age_hours": dex.age_hours if dex else None,
        "safety_score": rug.safety_score if rug else None,
        "honeypot_risk": rug.honeypot_risk if rug else None,
        "holder_concentration": rug.holder_concentration if rug else None,
        "holder_count": holder_count,
        "routing_available": jup.routing_available if jup else None,
        "slippage": jup.slippage_estimate if jup else None,
        "blacklisted": True if blacklisted else (jup.blacklisted if jup else None),
        "creator_rugged_tokens": sol.creator_rugged_tokens if sol else None,
        "top_holders_percentage": sol.top_holders_percentage if sol else None,
        "overall_score": scores.overall,
        "risk_score": scores.risk,
        "opportunity_score": scores.opportunity,
        "has_errors": has_errors,
    }
