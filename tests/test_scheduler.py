"""Tests for the interval scheduler."""

import asyncio

import pytest

from token_scout.modules.pipeline.schemas import TokenCandidate
from token_scout.modules.scheduler.scheduler import Scheduler

from conftest import FakeClock


class FakeAggregator:

    def __init__(self, fail_discovery=False):
        self.fail_discovery = fail_discovery
        self.discovery_calls = 0
        self.metrics_calls = 0
        self.cleanup_calls = 0

    async def process_new_tokens(self):
        self.discovery_calls += 1
        if self.fail_discovery:
            raise RuntimeError("dexscreener down")
        return [TokenCandidate("A"), TokenCandidate("B")]

    async def update_token_metrics(self):
        self.metrics_calls += 1
        return 0

    def cleanup(self):
        self.cleanup_calls += 1
        return {"cache_entries_expired": 0}


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def test_failing_task_keeps_scheduler_running():
    aggregator = FakeAggregator(fail_discovery=True)
    scheduler = Scheduler(aggregator, discovery_interval=0.01, metrics_interval=0.01, cleanup_interval=0.01)

    await scheduler.start()
    try:
        await wait_for(lambda: aggregator.discovery_calls >= 2)
        await wait_for(lambda: aggregator.metrics_calls >= 2 and aggregator.cleanup_calls >= 2)

        assert scheduler.running is True
        discovery = scheduler.get_metrics()["token_discovery"]
        assert discovery["total_errors"] >= 1
        assert discovery["last_error"] == "dexscreener down"
        assert scheduler.get_metrics()["metrics_update"]["total_errors"] == 0
    finally:
        await scheduler.stop()

    assert scheduler.running is False


async def test_start_is_idempotent_and_stop_is_safe():
    scheduler = Scheduler(FakeAggregator())

    await scheduler.stop()
    await scheduler.start()
    loops = list(scheduler._loops)
    await scheduler.start()
    assert scheduler._loops == loops
    assert len(loops) == 3

    await scheduler.stop()
    assert all(loop.done() for loop in loops)
    await scheduler.stop()


async def test_manual_triggers_record_metrics():
    aggregator = FakeAggregator()
    scheduler = Scheduler(aggregator)

    found = await scheduler.execute_token_discovery()
    await scheduler.execute_metrics_update()
    await scheduler.execute_cleanup()

    assert [c.address for c in found] == ["A", "B"]
    assert (aggregator.discovery_calls, aggregator.metrics_calls, aggregator.cleanup_calls) == (1, 1, 1)

    metrics = scheduler.get_metrics()
    assert metrics["token_discovery"]["tokens_discovered"] == 2
    assert metrics["token_discovery"]["total_executions"] == 1
    assert metrics["token_discovery"]["last_execution"] is not None
    assert "tokens_discovered" not in metrics["cleanup"]


async def test_manual_trigger_failure_is_counted_not_raised():
    scheduler = Scheduler(FakeAggregator(fail_discovery=True))

    assert await scheduler.execute_token_discovery() is None

    metrics = scheduler.get_metrics()["token_discovery"]
    assert metrics["total_errors"] == 1
    assert metrics["error_rate"] == 1.0


async def test_stale_task_produces_warning():
    clock = FakeClock(10_000.0)
    scheduler = Scheduler(FakeAggregator(), discovery_interval=300, stale_grace=120, clock=clock)

    assert scheduler.get_health_status()["status"] == "stopped"

    await scheduler.start()
    try:
        assert scheduler.get_health_status()["warnings"] == []

        clock.advance(8 * 60)
        health = scheduler.get_health_status()
        assert health["status"] == "stale"
        assert health["is_running"] is True
        assert health["uptime"] == pytest.approx(480)
        assert "Token discovery last ran more than 7 minutes ago" in health["warnings"]
        assert not any(w.startswith("Cleanup") for w in health["warnings"])
    finally:
        await scheduler.stop()


@pytest.mark.parametrize("kwargs", [
    dict(discovery_interval=0),
    dict(metrics_interval=-1),
    dict(cleanup_interval=0),
])
def test_non_positive_interval_rejected(kwargs):
    with pytest.raises(ValueError):
        Scheduler(FakeAggregator(), **kwargs)
