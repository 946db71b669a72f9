"""
Solscan client: creator and holder forensics.

Three calls per token (Pro API v2, ``token`` header):

    /token/meta        -> creator wallet
    /token/holders     -> top-holder concentration + funding pattern
    /account/metadata  -> creator labels (flagged as rugger/scammer or not)

Creator history is approximated from Solscan's account tags: a creator
tagged as rug/scam counts as one rugged token. Solscan exposes no "tokens
created by" listing.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from token_scout.modules.sources.base import SourceClient, to_float
from token_scout.modules.sources.schemas import SolscanData, SourceName
from token_scout.shared.errors import PermanentSourceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://pro-api.solscan.io/v2.0"

TOP_HOLDERS = 3
HOLDER_PAGE_SIZE = 40
MIN_ORGANIC_HOLDERS = 10

FLAGGED_TAGS = ("rug", "scam", "exploit", "phish")

SUSPICIOUS_WALLETS = [
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I),
    re.compile(r"^test", re.I),
    re.compile(r"^temp", re.I),
    re.compile(r"^fake", re.I),
]


class SolscanClient(SourceClient):
    name = SourceName.SOLSCAN.value

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 20.0,
        api_key: str = "",
        **kwargs: Any,
    ):
        headers = {"token": api_key} if api_key else {}
        super().__init__(base_url, timeout=timeout, headers=headers, **kwargs)

    async def fetch(self, address: str) -> SolscanData:
        meta = (await self._get_json("/token/meta", {"address": address}) or {}).get("data") or {}
        holders, total_holders = await self._holders(address)
        creator = meta.get("creator") or meta.get("mint_authority")

        created, rugged = 0, 0
        if creator:
            created, rugged = await self._creator_history(creator)

        top_pct = self._top_holders_percentage(holders, to_float(meta.get("supply")))
        return self._build(
            SolscanData,
            creator_wallet=creator,
            creator_created_tokens=created,
            creator_rugged_tokens=rugged,
            top_holders_percentage=top_pct,
            holder_count=total_holders if total_holders is not None else meta.get("holder"),
            funding_pattern=self._funding_pattern(holders),
        )

    async def _holders(self, address: str) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        payload = await self._get_json("/token/holders", {
            "address": address, "page": 1, "page_size": HOLDER_PAGE_SIZE,
        }) or {}
        data = payload.get("data") or {}
        return data.get("items") or [], data.get("total")

    async def _creator_history(self, creator: str) -> Tuple[int, int]:
        try:
            payload = await self._get_json("/account/metadata", {"address": creator}) or {}
        except PermanentSourceError as e:
            # Unknown accounts 404; that is "no history", not a failed fetch
            logger.debug("No Solscan metadata for creator %s: %s", creator[:8], e)
            return 0, 0

        data = payload.get("data") or {}
        tags = [str(t).lower() for t in data.get("account_tags") or []]
        label = str(data.get("account_label") or "").lower()
        flagged = any(f in tag for tag in tags + [label] for f in FLAGGED_TAGS)
        created = int(to_float(data.get("tokens_created")))
        return max(created, int(flagged)), int(flagged)

    @staticmethod
    def _top_holders_percentage(holders: List[Dict[str, Any]], supply: float) -> float:
        if not holders:
            return 100.0
        amounts = sorted((to_float(h.get("amount")) for h in holders), reverse=True)
        total = supply if supply > 0 else sum(amounts)
        if total <= 0:
            return 100.0
        return min(100.0, sum(amounts[:TOP_HOLDERS]) / total * 100)

    @staticmethod
    def _funding_pattern(holders: List[Dict[str, Any]]) -> str:
        if not holders:
            return "unknown"
        if len(holders) < MIN_ORGANIC_HOLDERS:
            return "suspicious"

        amounts = [to_float(h.get("amount")) for h in holders]
        total = sum(amounts)
        if total > 0 and max(amounts) / total > 0.5:
            return "suspicious"

        flagged = sum(
            1 for h in holders
            if any(p.search(str(h.get("owner") or h.get("address") or "")) for p in SUSPICIOUS_WALLETS)
        )
        if flagged > len(holders) * 0.3:
            return "coordinated"
        return "organic"

    async def healthcheck(self) -> bool:
        return await self._probe("/token/meta", {"address": "So11111111111111111111111111111111111111112"})
