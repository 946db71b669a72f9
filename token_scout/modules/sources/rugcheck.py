"""
RugCheck client: contract safety report.

The safety score starts at 10 and loses points for each red flag found in
the ``/tokens/{mint}/report`` payload:

    mint authority not renounced      -2
    freeze authority not renounced    -2
    top-10 holders own > 60%          -3   (> 40%: -1)
    liquidity not locked              -3
    suspicious name / symbol          -1
"""

import logging
from typing import Any, Dict, List

from token_scout.modules.sources.base import SourceClient, to_float
from token_scout.modules.sources.schemas import RugCheckData, SourceName

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.rugcheck.xyz/v1"

# USDT mint, always present in RugCheck
HEALTH_PROBE_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

SUSPICIOUS_PATTERNS = ("test", "scam", "rug", "fake", "copy", "honey")
HONEYPOT_INDICATORS = ("honeypot", "honey", "trap", "cant sell")

LOCKED_LP_PCT = 50.0


class RugCheckClient(SourceClient):
    name = SourceName.RUGCHECK.value

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout: float = 15.0, **kwargs: Any):
        super().__init__(base_url, timeout=timeout, **kwargs)

    async def fetch(self, address: str) -> RugCheckData:
        report = await self._get_json(f"/tokens/{address}/report") or {}
        return self._analyze(report)

    def _analyze(self, report: Dict[str, Any]) -> RugCheckData:
        risks: List[str] = []
        warnings: List[str] = []
        score = 10.0

        mint_authority = report.get("mintAuthority") is not None
        if mint_authority:
            risks.append("Mint authority not renounced")
            score -= 2

        freeze_authority = report.get("freezeAuthority") is not None
        if freeze_authority:
            risks.append("Freeze authority not renounced")
            score -= 2

        top_holders = report.get("topHolders") or []
        concentration = self._holder_concentration(top_holders)
        if concentration > 60:
            risks.append(f"High holder concentration: {concentration:.1f}%")
            score -= 3
        elif concentration > 40:
            warnings.append(f"Moderate holder concentration: {concentration:.1f}%")
            score -= 1

        lp_locked = max(
            (to_float((m.get("lp") or {}).get("lpLockedPct")) for m in report.get("markets") or []),
            default=0.0,
        )
        liquidity_locked = lp_locked >= LOCKED_LP_PCT
        if not liquidity_locked:
            risks.append("Liquidity not locked")
            score -= 3

        meta = report.get("tokenMeta") or {}
        label = f"{meta.get('name') or ''} {meta.get('symbol') or ''}".lower()
        if any(p in label for p in SUSPICIOUS_PATTERNS):
            warnings.append("Suspicious token name pattern")
            score -= 1

        reported = [str(r.get("name") or "") for r in report.get("risks") or []]
        for name in reported:
            if name and name not in risks:
                warnings.append(name)

        holder_count = report.get("totalHolders")
        honeypot = (
            concentration > 90
            or (holder_count is not None and holder_count < 5)
            or any(i in label for i in HONEYPOT_INDICATORS)
            or any("honeypot" in name.lower() for name in reported)
        )

        return self._build(
            RugCheckData,
            safety_score=max(0.0, score),
            honeypot_risk=honeypot,
            mint_authority=mint_authority,
            freeze_authority=freeze_authority,
            liquidity_locked=liquidity_locked,
            holder_concentration=concentration,
            holder_count=holder_count,
            risks=risks,
            warnings=warnings,
        )

    @staticmethod
    def _holder_concentration(top_holders: List[Dict[str, Any]]) -> float:
        """Percentage of supply held by the ten largest holders (100 if unknown)."""
        if not top_holders:
            return 100.0
        pcts = sorted((to_float(h.get("pct")) for h in top_holders), reverse=True)
        return min(100.0, sum(pcts[:10]))

    async def healthcheck(self) -> bool:
        return await self._probe(f"/tokens/{HEALTH_PROBE_MINT}/report/summary")
