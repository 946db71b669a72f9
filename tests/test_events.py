"""Tests for the in-process event bus."""

from token_scout.modules.pipeline.events import (
    EventBus,
    PipelineErrorEvent,
    StatsUpdated,
    TokenDiscovered,
)
from token_scout.modules.pipeline.schemas import PipelineStats, TokenCandidate


async def test_typed_subscription_only_sees_its_events():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append, TokenDiscovered)

    bus.publish(StatsUpdated(PipelineStats()))
    bus.publish(TokenDiscovered(TokenCandidate("A")))

    assert [type(e) for e in seen] == [TokenDiscovered]


async def test_failing_handler_does_not_block_others(caplog):
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("handler bug")

    async def broken_async(event):
        raise RuntimeError("async handler bug")

    bus.subscribe(broken)
    bus.subscribe(broken_async)
    bus.subscribe(seen.append)

    bus.publish(PipelineErrorEvent("A", "boom"))
    await bus.wait_idle(timeout=1)

    assert len(seen) == 1
    assert bus.pending == 0
    assert "handler bug" in caplog.text
    assert "async handler bug" in caplog.text


async def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    bus.publish(StatsUpdated(PipelineStats()))

    assert seen == []


def test_stats_rejected_is_derived():
    stats = PipelineStats(processed=10, passed=3, failed=2, errors=1)

    assert stats.rejected == 4
    assert stats.success_rate == 0.3
    assert stats.snapshot() == stats
    assert stats.snapshot() is not stats
