"""
Jupiter client: routing and slippage probe.

Asks the Quote API for a USDC -> token swap of a fixed probe size. A token
with no route is a valid answer (``routing_available=False``), not a source
failure.
"""

import logging
from typing import Any, Iterable, Optional

from token_scout.modules.sources.base import SourceClient, to_float
from token_scout.modules.sources.schemas import JupiterData, SourceName
from token_scout.shared.errors import PermanentSourceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.jup.ag/swap/v1"

USDC_MINT = "EPjFWdd5AufqSSqeM2qUz2cWyXN4zYYtAu7uPXQi5CmT"
SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_DECIMALS = 6

PROBE_AMOUNT_USD = 500
PROBE_SLIPPAGE_BPS = 300

# Slippage recorded when no route exists
NO_ROUTE_SLIPPAGE_PCT = 50.0


class JupiterClient(SourceClient):
    name = SourceName.JUPITER.value

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        api_key: str = "",
        probe_amount_usd: float = PROBE_AMOUNT_USD,
        blacklist: Optional[Iterable[str]] = None,
        **kwargs: Any,
    ):
        headers = {"x-api-key": api_key} if api_key else {}
        super().__init__(base_url, timeout=timeout, headers=headers, **kwargs)
        self.probe_amount_usd = probe_amount_usd
        self.blacklist = set(blacklist or ())

    async def fetch(self, address: str) -> JupiterData:
        params = {
            "inputMint": USDC_MINT,
            "outputMint": address,
            "amount": str(int(self.probe_amount_usd * 10 ** USDC_DECIMALS)),
            "slippageBps": str(PROBE_SLIPPAGE_BPS),
        }
        blacklisted = address in self.blacklist

        try:
            quote = await self._get_json("/quote", params) or {}
        except PermanentSourceError as e:
            if e.status_code != 400:
                raise
            # 400 = COULD_NOT_FIND_ANY_ROUTE / TOKEN_NOT_TRADABLE
            logger.debug("No Jupiter route for %s: %s", address[:8], e)
            return self._build(
                JupiterData,
                routing_available=False,
                slippage_estimate=NO_ROUTE_SLIPPAGE_PCT,
                route_count=0,
                blacklisted=blacklisted,
            )

        routes = quote.get("routePlan") or []
        out_amount = int(to_float(quote.get("outAmount")))
        # priceImpactPct is a fraction ("0.0123" == 1.23%)
        impact_pct = abs(to_float(quote.get("priceImpactPct"))) * 100

        return self._build(
            JupiterData,
            routing_available=out_amount > 0 and bool(routes),
            slippage_estimate=impact_pct if out_amount > 0 else NO_ROUTE_SLIPPAGE_PCT,
            route_count=len(routes),
            blacklisted=blacklisted,
        )

    async def healthcheck(self) -> bool:
        return await self._probe("/quote", {
            "inputMint": SOL_MINT,
            "outputMint": USDC_MINT,
            "amount": "1000000",
            "slippageBps": "50",
        })
