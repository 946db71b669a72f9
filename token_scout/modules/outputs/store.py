"""
Postgres persistence for discovered tokens and analyses.

The schema lives with the database migrations, not here. Writes are
idempotent upserts so at-least-once delivery from the event bus is safe.

Usage:
    store = PostgresStore()
    subscriber = PersistenceSubscriber(store)
    subscriber.attach(event_bus)
"""

import json
import logging
from typing import Any, Callable, List

import asyncpg

from token_scout import database as db
from token_scout.modules.pipeline.events import (
    AnalysisFailed,
    AnalysisPassed,
    EventBus,
    MetricsRefreshed,
    TokenDiscovered,
)
from token_scout.modules.pipeline.schemas import CombinedAnalysis, TokenCandidate
from token_scout.shared.errors import PersistenceError
from token_scout.shared.prometheus import store_writes_total

logger = logging.getLogger(__name__)


UPSERT_TOKEN = """
    INSERT INTO tokens (address, symbol, name, chain, first_detected_at)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (address) DO UPDATE SET
        symbol = COALESCE(NULLIF(EXCLUDED.symbol, ''), tokens.symbol),
        name = COALESCE(NULLIF(EXCLUDED.name, ''), tokens.name),
        updated_at = NOW()
"""

INSERT_ANALYSIS = """
    INSERT INTO token_analyses (
        token_address, analyzed_at, overall_score, risk_score, opportunity_score,
        passed, failed_filters, has_errors, degraded_sources, sources
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
    ON CONFLICT (token_address, analyzed_at) DO NOTHING
"""


class PostgresStore:
    """Store collaborator backed by the shared asyncpg pool."""

    def __init__(self, execute: Callable[..., Any] = db.execute):
        self._execute = execute

    async def upsert_token(self, candidate: TokenCandidate) -> None:
        await self._write(
            "token", UPSERT_TOKEN,
            candidate.address, candidate.symbol, candidate.name,
            candidate.chain, candidate.first_detected_at,
        )

    async def save_analysis(self, analysis: CombinedAnalysis) -> None:
        payload = analysis.to_dict()
        await self._write(
            "analysis", INSERT_ANALYSIS,
            analysis.token_address,
            analysis.timestamp,
            analysis.overall_score,
            analysis.risk_score,
            analysis.opportunity_score,
            analysis.passed,
            list(analysis.failed_filters),
            analysis.has_errors,
            payload["degraded_sources"],
            json.dumps(payload["sources"]),
        )

    async def _write(self, entity: str, query: str, *args: Any) -> None:
        try:
            await self._execute(query, *args)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
            store_writes_total.labels(entity=entity, status="error").inc()
            raise PersistenceError(f"failed to write {entity}: {e}") from e
        store_writes_total.labels(entity=entity, status="ok").inc()


class PersistenceSubscriber:
    """Persists pipeline events; a failed write is logged, never propagated."""

    def __init__(self, store: PostgresStore):
        self.store = store
        self.failures = 0

    def attach(self, events: EventBus) -> List[Callable[[], None]]:
        return [
            events.subscribe(self.on_discovered, TokenDiscovered),
            events.subscribe(self.on_analysis, AnalysisPassed, AnalysisFailed, MetricsRefreshed),
        ]

    async def on_discovered(self, event: TokenDiscovered) -> None:
        try:
            await self.store.upsert_token(event.candidate)
        except PersistenceError as e:
            self.failures += 1
            logger.error("Could not persist token %s: %s", event.candidate.address[:8], e)

    async def on_analysis(self, event: Any) -> None:
        analysis = event.analysis
        try:
            await self.store.save_analysis(analysis)
        except PersistenceError as e:
            self.failures += 1
            logger.error("Could not persist analysis for %s: %s", analysis.token_address[:8], e)
