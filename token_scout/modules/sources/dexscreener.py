"""
DexScreener client: market data and the discovery feed.

No API key required. Pair data comes from ``/latest/dex/tokens/{address}``;
when a token trades in several pools the deepest (highest USD liquidity)
pair is used. New tokens are discovered from the latest token-profiles feed.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from token_scout.modules.pipeline.schemas import TokenCandidate
from token_scout.modules.sources.base import SourceClient, to_float
from token_scout.modules.sources.schemas import DexScreenerData, SourceName
from token_scout.shared.errors import PermanentSourceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"


class DexScreenerClient(SourceClient):
    name = SourceName.DEXSCREENER.value

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        chain: str = "solana",
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ):
        super().__init__(base_url, timeout=timeout, **kwargs)
        self.chain = chain
        self._clock = clock

    async def fetch(self, address: str) -> DexScreenerData:
        payload = await self._get_json(f"/latest/dex/tokens/{address}")
        pairs = [
            p for p in (payload or {}).get("pairs") or []
            if p.get("chainId", self.chain) == self.chain
        ]
        if not pairs:
            raise PermanentSourceError(self.name, f"no {self.chain} pairs for {address[:8]}")

        pair = max(pairs, key=lambda p: to_float((p.get("liquidity") or {}).get("usd")))
        return self._parse_pair(address, pair)

    def _parse_pair(self, address: str, pair: Dict[str, Any]) -> DexScreenerData:
        base = pair.get("baseToken") or {}
        created_ms = pair.get("pairCreatedAt")
        created_at: Optional[datetime] = None
        age_hours: Optional[float] = None
        if created_ms:
            created_at = datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc)
            age_hours = max(0.0, (self._clock() - created_ms / 1000) / 3600)

        liquidity = to_float((pair.get("liquidity") or {}).get("usd"))
        market_cap = to_float(pair.get("marketCap"), default=to_float(pair.get("fdv")))

        return self._build(
            DexScreenerData,
            address=address,
            symbol=base.get("symbol") or "",
            name=base.get("name") or "",
            chain=pair.get("chainId") or self.chain,
            pair_address=pair.get("pairAddress"),
            dex_id=pair.get("dexId"),
            price_usd=to_float(pair.get("priceUsd")),
            liquidity_usd=liquidity,
            volume_24h=to_float((pair.get("volume") or {}).get("h24")),
            market_cap=market_cap,
            price_change_24h=to_float((pair.get("priceChange") or {}).get("h24")),
            pair_created_at=created_at,
            age_hours=age_hours,
        )

    async def discover(self, chain: Optional[str] = None) -> List[TokenCandidate]:
        """Newest token profiles on ``chain``, deduplicated, feed order kept."""
        chain = chain or self.chain
        payload = await self._get_json("/token-profiles/latest/v1")
        if isinstance(payload, dict):
            payload = [payload]

        seen = set()
        candidates: List[TokenCandidate] = []
        for profile in payload or []:
            address = profile.get("tokenAddress")
            if not address or profile.get("chainId") != chain or address in seen:
                continue
            seen.add(address)
            candidates.append(TokenCandidate(
                address=address,
                symbol=profile.get("symbol") or "",
                name=profile.get("name") or "",
                chain=chain,
            ))

        logger.info("DexScreener discovery: %d %s candidates", len(candidates), chain)
        return candidates

    async def healthcheck(self) -> bool:
        return await self._probe("/latest/dex/search", {"q": "SOL"})
