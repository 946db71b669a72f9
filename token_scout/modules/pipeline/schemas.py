"""
In-memory shapes of the aggregation pipeline.

SourceResult is a closed two-variant union: a source either answered
(``Present``) or gave up after its retries (``Degraded``). There is no third
"missing" state, so a partial analysis is always explicit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from token_scout.modules.sources.schemas import SourceName


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenCandidate:
    address: str
    symbol: str = ""
    name: str = ""
    chain: str = "solana"
    first_detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "chain": self.chain,
            "first_detected_at": self.first_detected_at.isoformat(),
        }


# =================================================================
# Source results
# =================================================================

@dataclass(frozen=True)
class Present:
    source: SourceName
    data: BaseModel
    latency_ms: float = 0.0
    cached: bool = False

    @property
    def is_present(self) -> bool:
        return True

    def to_dict(self) -> dict:
        return {
            "status": "present",
            "latency_ms": round(self.latency_ms, 1),
            "cached": self.cached,
            "data": self.data.model_dump(mode="json"),
        }


@dataclass(frozen=True)
class Degraded:
    source: SourceName
    last_error: BaseException
    attempts: int = 1

    @property
    def is_present(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "status": "degraded",
            "attempts": self.attempts,
            "error": f"{type(self.last_error).__name__}: {self.last_error}",
        }


SourceResult = Union[Present, Degraded]


# =================================================================
# Job state machine
# =================================================================

class JobState(str, Enum):
    DISCOVERED = "discovered"
    FETCHING = "fetching"
    COMBINING = "combining"
    SCORING = "scoring"
    FILTERING = "filtering"
    PASSED = "passed"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.PASSED, JobState.REJECTED, JobState.FAILED)


_TRANSITIONS: Dict[JobState, Tuple[JobState, ...]] = {
    JobState.DISCOVERED: (JobState.FETCHING,),
    JobState.FETCHING: (JobState.COMBINING,),
    # All sources degraded is decided once results are combined
    JobState.COMBINING: (JobState.SCORING, JobState.FAILED),
    JobState.SCORING: (JobState.FILTERING,),
    JobState.FILTERING: (JobState.PASSED, JobState.REJECTED),
}


class JobTracker:
    """Walks one job through the state machine; skipping a state is a bug."""

    def __init__(self, address: str):
        self.address = address
        self.state = JobState.DISCOVERED
        self.history: List[JobState] = [JobState.DISCOVERED]

    def advance(self, new_state: JobState) -> None:
        allowed = _TRANSITIONS.get(self.state, ())
        if new_state not in allowed:
            raise RuntimeError(
                f"Invalid job transition for {self.address[:8]}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


# =================================================================
# Analysis
# =================================================================

@dataclass(frozen=True)
class CombinedAnalysis:
    token_address: str
    sources: Dict[SourceName, SourceResult]
    overall_score: float
    risk_score: float
    opportunity_score: float
    passed: bool
    failed_filters: List[str]
    has_errors: bool
    timestamp: datetime
    state: JobState
    symbol: str = ""
    name: str = ""
    record: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded_sources(self) -> List[SourceName]:
        return [name for name, result in self.sources.items() if not result.is_present]

    def data(self, source: SourceName) -> Optional[BaseModel]:
        result = self.sources.get(source)
        return result.data if isinstance(result, Present) else None

    def to_dict(self) -> dict:
        return {
            "token_address": self.token_address,
            "symbol": self.symbol,
            "name": self.name,
            "state": self.state.value,
            "overall_score": self.overall_score,
            "risk_score": self.risk_score,
            "opportunity_score": self.opportunity_score,
            "passed": self.passed,
            "failed_filters": list(self.failed_filters),
            "has_errors": self.has_errors,
            "degraded_sources": [s.value for s in self.degraded_sources],
            "sources": {name.value: result.to_dict() for name, result in self.sources.items()},
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PipelineStats:
    """Process-lifetime counters. ``rejected`` is derived."""
    processed: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0

    @property
    def rejected(self) -> int:
        return self.processed - self.passed - self.failed - self.errors

    @property
    def success_rate(self) -> float:
        return (self.passed / self.processed) if self.processed else 0.0

    def snapshot(self) -> "PipelineStats":
        return PipelineStats(self.processed, self.passed, self.failed, self.errors)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "passed": self.passed,
            "rejected": self.rejected,
            "failed": self.failed,
            "errors": self.errors,
            "success_rate": self.success_rate,
        }


@dataclass
class AggregationRun:
    """One discovery batch, kept in the bounded run history."""
    id: str
    started_at: datetime
    status: str = "running"          # running | completed | failed | skipped
    completed_at: Optional[datetime] = None
    tokens_discovered: int = 0
    tokens_processed: int = 0
    tokens_passed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def finish(self, status: str) -> None:
        self.status = status
        self.completed_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "tokens_discovered": self.tokens_discovered,
            "tokens_processed": self.tokens_processed,
            "tokens_passed": self.tokens_passed,
            "errors": list(self.errors),
        }
