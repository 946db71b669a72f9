"""
Pydantic models for the per-source results.

Each model carries a ``source`` literal that tags it in serialized analyses.
The aggregator checks every fetched or cached result against
``SOURCE_MODELS``. The models are what the pipeline works with; they are only
serialized at the persistence boundary.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SourceName(str, Enum):
    DEXSCREENER = "dexscreener"
    RUGCHECK = "rugcheck"
    JUPITER = "jupiter"
    SOLSCAN = "solscan"


# =================================================================
# Market data
# =================================================================

class DexScreenerData(BaseModel):
    source: Literal["dexscreener"] = "dexscreener"
    address: str
    symbol: str = ""
    name: str = ""
    chain: str = "solana"
    pair_address: Optional[str] = None
    dex_id: Optional[str] = None
    price_usd: float = Field(0.0, ge=0)
    liquidity_usd: float = Field(0.0, ge=0)
    volume_24h: float = Field(0.0, ge=0)
    market_cap: float = Field(0.0, ge=0)
    price_change_24h: float = 0.0
    pair_created_at: Optional[datetime] = None
    age_hours: Optional[float] = Field(None, ge=0)


# =================================================================
# Contract safety
# =================================================================

class RugCheckData(BaseModel):
    source: Literal["rugcheck"] = "rugcheck"
    safety_score: float = Field(..., ge=0, le=10)
    honeypot_risk: bool = False
    mint_authority: bool = False
    freeze_authority: bool = False
    liquidity_locked: bool = False
    holder_concentration: float = Field(100.0, ge=0, le=100)
    holder_count: Optional[int] = Field(None, ge=0)
    risks: List[str] = []
    warnings: List[str] = []


# =================================================================
# Tradability
# =================================================================

class JupiterData(BaseModel):
    source: Literal["jupiter"] = "jupiter"
    routing_available: bool
    slippage_estimate: float = Field(..., ge=0, description="Price impact in percent")
    route_count: int = Field(0, ge=0)
    blacklisted: bool = False


# =================================================================
# Creator / holder forensics
# =================================================================

class SolscanData(BaseModel):
    source: Literal["solscan"] = "solscan"
    creator_wallet: Optional[str] = None
    creator_created_tokens: int = Field(0, ge=0)
    creator_rugged_tokens: int = Field(0, ge=0)
    top_holders_percentage: float = Field(100.0, ge=0, le=100)
    holder_count: Optional[int] = Field(None, ge=0)
    funding_pattern: Literal["organic", "suspicious", "coordinated", "unknown"] = "unknown"


SOURCE_MODELS = {
    SourceName.DEXSCREENER: DexScreenerData,
    SourceName.RUGCHECK: RugCheckData,
    SourceName.JUPITER: JupiterData,
    SourceName.SOLSCAN: SolscanData,
}
