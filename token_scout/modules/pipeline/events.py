"""
Typed pipeline events and a small in-process event bus.

The aggregator only ever calls ``EventBus.publish``. Subscribers (store,
notifier, websocket bridge, tests) register with ``subscribe`` and may be
plain functions or coroutines. Delivery is fire-and-forget: a handler that
raises is logged and never affects the pipeline, coroutine handlers run as
background tasks that ``publish`` does not wait for.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, Union

from token_scout.modules.pipeline.schemas import (
    CombinedAnalysis,
    PipelineStats,
    TokenCandidate,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenDiscovered:
    candidate: TokenCandidate
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AnalysisPassed:
    analysis: CombinedAnalysis
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AnalysisFailed:
    """The analysis completed but was rejected by at least one filter."""
    analysis: CombinedAnalysis
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MetricsRefreshed:
    """A watched token was re-analyzed; carries no pass/fail verdict."""
    analysis: CombinedAnalysis
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PipelineErrorEvent:
    """A job failed at the pipeline level (all sources degraded or a bug)."""
    token_address: Optional[str]
    error: str
    degraded_sources: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StatsUpdated:
    stats: PipelineStats
    timestamp: datetime = field(default_factory=utcnow)


PipelineEvent = Union[
    TokenDiscovered, AnalysisPassed, AnalysisFailed, MetricsRefreshed, PipelineErrorEvent, StatsUpdated,
]

Handler = Callable[[Any], Any]


class EventBus:

    def __init__(self):
        self._subscribers: List[Tuple[Handler, Optional[Tuple[Type, ...]]]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, handler: Handler, *event_types: Type) -> Callable[[], None]:
        """Register ``handler`` for ``event_types`` (all events when none given).

        Returns a callable that removes the subscription.
        """
        entry = (handler, tuple(event_types) or None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: PipelineEvent) -> None:
        for handler, types in list(self._subscribers):
            if types is not None and not isinstance(event, types):
                continue
            try:
                result = handler(event)
            except Exception as e:
                logger.error(
                    "Event handler %s failed on %s: %s",
                    _name(handler), type(event).__name__, e, exc_info=True,
                )
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event handler failed: %s", exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait for background handler tasks (used on shutdown and in tests)."""
        if not self._pending:
            return
        await asyncio.wait(list(self._pending), timeout=timeout)


def _name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)
