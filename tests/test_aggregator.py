"""Tests for the token aggregator."""

import asyncio
import time

import httpx
import pytest

from token_scout.modules.outputs.notifier import WebhookNotifier
from token_scout.modules.pipeline.aggregator import ALL_DEGRADED, normalize_address
from token_scout.modules.pipeline.events import (
    AnalysisFailed,
    AnalysisPassed,
    MetricsRefreshed,
    PipelineErrorEvent,
    StatsUpdated,
    TokenDiscovered,
)
from token_scout.modules.pipeline.schemas import Degraded, JobState, Present, TokenCandidate
from token_scout.modules.sources.schemas import SourceName
from token_scout.shared.errors import (
    ExhaustedRetries,
    PermanentSourceError,
    PipelineError,
    TransientSourceError,
)

DEX = SourceName.DEXSCREENER
JUP = SourceName.JUPITER


def of_type(events, event_type):
    return [e for e in events.received if isinstance(e, event_type)]


async def test_full_analysis_passes_without_filters(make_aggregator, events):
    agg = make_aggregator()

    analysis = await agg.aggregate("Mint111")

    assert analysis.state is JobState.PASSED
    assert analysis.passed is True
    assert analysis.has_errors is False
    assert analysis.degraded_sources == []
    assert analysis.overall_score == pytest.approx(93.0)
    assert analysis.risk_score == pytest.approx(15.75)
    assert analysis.opportunity_score == pytest.approx(56.12)
    assert analysis.symbol == "SCOUT"

    assert len(of_type(events, AnalysisPassed)) == 1
    assert isinstance(events.received[-1], StatsUpdated)
    assert agg.get_stats().passed == 1


async def test_degraded_source_keeps_job_alive(make_aggregator, sources, events):
    sources[JUP].error = TransientSourceError("jupiter", "HTTP 503", status_code=503)
    agg = make_aggregator()

    analysis = await agg.aggregate("Mint111")

    assert sources[JUP].calls == 3
    result = analysis.sources[JUP]
    assert isinstance(result, Degraded)
    assert result.attempts == 3
    assert isinstance(result.last_error, TransientSourceError)

    assert analysis.has_errors is True
    assert analysis.degraded_sources == [JUP]
    assert analysis.passed is True
    # weights of the answering sources are renormalized
    assert analysis.overall_score == pytest.approx(7300 / 80)
    assert analysis.risk_score == pytest.approx(1375 / 80, abs=0.01)
    assert analysis.opportunity_score == pytest.approx(41.6)
    assert analysis.record["slippage"] is None


async def test_filter_on_degraded_field_rejects(make_aggregator, sources, events):
    sources[JUP].error = PermanentSourceError("jupiter", "HTTP 401", status_code=401)
    agg = make_aggregator(filter_specs=[{"type": "requireRouting"}])

    analysis = await agg.aggregate("Mint111")

    assert sources[JUP].calls == 1
    assert analysis.state is JobState.REJECTED
    assert analysis.failed_filters == ["require_routing"]
    assert of_type(events, AnalysisFailed)[0].analysis is analysis


async def test_rejected_by_threshold(make_aggregator, events):
    agg = make_aggregator(filter_specs=[{"type": "minLiquidity", "value": 1_000_000}])

    analysis = await agg.aggregate("Mint111")

    assert analysis.passed is False
    assert analysis.failed_filters == ["min_liquidity"]
    stats = agg.get_stats()
    assert (stats.processed, stats.passed, stats.rejected) == (1, 0, 1)
    assert of_type(events, AnalysisPassed) == []


async def test_all_sources_degraded_fails_job(make_aggregator, sources, events):
    for source in sources.values():
        source.error = PermanentSourceError(source.name, "HTTP 404", status_code=404)
    agg = make_aggregator()

    analysis = await agg.aggregate("Mint111")

    assert analysis.state is JobState.FAILED
    assert analysis.failed_filters == [ALL_DEGRADED]
    assert analysis.passed is False
    assert agg.get_stats().failed == 1

    errors = of_type(events, PipelineErrorEvent)
    assert len(errors) == 1
    assert errors[0].error == ALL_DEGRADED
    assert set(errors[0].degraded_sources) == {s.value for s in SourceName}
    assert of_type(events, AnalysisPassed) == []


async def test_concurrent_calls_share_one_job(make_aggregator, sources):
    gate = asyncio.Event()
    sources[DEX].gate = gate
    agg = make_aggregator()

    pending = asyncio.gather(agg.aggregate("Mint111"), agg.aggregate(" Mint111 "))
    for _ in range(5):
        await asyncio.sleep(0)
    assert agg.get_status()["in_flight"] == 1
    gate.set()
    first, second = await pending

    assert first is second
    assert sources[DEX].calls == 1
    assert agg.get_status()["in_flight"] == 0


async def test_source_results_are_cached(make_aggregator, sources):
    agg = make_aggregator()

    await agg.aggregate("Mint111")
    second = await agg.aggregate("Mint111")

    assert sources[DEX].calls == 1
    assert isinstance(second.sources[DEX], Present)
    assert second.sources[DEX].cached is True


async def test_wrong_result_type_degrades_source(make_aggregator, sources):
    sources[JUP].data = {"routing_available": True}
    agg = make_aggregator()

    analysis = await agg.aggregate("Mint111")

    assert analysis.degraded_sources == [JUP]
    assert isinstance(analysis.sources[JUP].last_error, PermanentSourceError)


def test_normalize_address():
    assert normalize_address("  AbC  ") == "AbC"
    with pytest.raises(ValueError):
        normalize_address("   ")


async def test_process_new_tokens_skips_known_and_blacklisted(make_aggregator, sources, events):
    sources[DEX].candidates = [TokenCandidate("A", "AAA"), TokenCandidate("B"), TokenCandidate("C")]
    agg = make_aggregator()
    agg.add_to_blacklist("B", "rugged")

    new = await agg.process_new_tokens()

    assert [c.address for c in new] == ["A", "C"]
    assert [e.candidate.address for e in of_type(events, TokenDiscovered)] == ["A", "C"]
    assert sources[DEX].calls == 2

    run = agg.get_run_history()[0]
    assert run.status == "completed"
    assert (run.tokens_discovered, run.tokens_processed, run.tokens_passed) == (2, 2, 2)

    # already processed tokens are not analyzed again
    assert await agg.process_new_tokens() == []
    assert len(agg.get_run_history()) == 2


async def test_process_new_tokens_respects_batch_cap(make_aggregator, sources):
    sources[DEX].candidates = [TokenCandidate(f"T{i}") for i in range(5)]
    agg = make_aggregator(max_tokens_per_run=2)

    new = await agg.process_new_tokens()

    assert [c.address for c in new] == ["T0", "T1"]


async def test_batch_skipped_when_critical_source_unhealthy(make_aggregator, sources):
    sources[DEX].healthy = False
    sources[DEX].candidates = [TokenCandidate("A")]
    agg = make_aggregator(with_health=True)

    assert await agg.process_new_tokens() == []
    assert sources[DEX].discover_calls == 0
    assert agg.get_run_history()[0].status == "skipped"
    assert agg.get_status()["source_health"]["overall"] == "degraded"


async def test_non_critical_outage_does_not_skip(make_aggregator, sources):
    sources[JUP].healthy = False
    sources[DEX].candidates = [TokenCandidate("A")]
    agg = make_aggregator(with_health=True)

    new = await agg.process_new_tokens()

    assert [c.address for c in new] == ["A"]


async def test_discovery_failure_marks_run_failed(make_aggregator, sources):
    async def broken(chain="solana"):
        raise TransientSourceError("dexscreener", "HTTP 502", status_code=502)

    sources[DEX].discover = broken
    agg = make_aggregator()

    with pytest.raises(ExhaustedRetries):
        await agg.process_new_tokens()
    run = agg.get_run_history()[0]
    assert run.status == "failed"
    assert run.errors


async def test_update_token_metrics_bypasses_cache(make_aggregator, sources):
    agg = make_aggregator()
    assert await agg.update_token_metrics() == 0

    await agg.aggregate("Mint111")
    await agg.aggregate("Mint111")
    assert sources[DEX].calls == 1

    assert await agg.update_token_metrics() == 1
    assert sources[DEX].calls == 2


async def test_metrics_refresh_does_not_realert(make_aggregator, events):
    posts = []

    def handler(request):
        posts.append(request)
        return httpx.Response(200)

    notifier = WebhookNotifier(
        "https://hooks.example.com/alert", transport=httpx.MockTransport(handler), retry_delay=0,
    )
    notifier.attach(events)
    agg = make_aggregator()

    await agg.aggregate("Mint111")
    assert await agg.update_token_metrics() == 1
    assert await agg.update_token_metrics() == 1
    await events.wait_idle(timeout=1)

    assert len(posts) == 1
    assert len(of_type(events, AnalysisPassed)) == 1
    refreshed = of_type(events, MetricsRefreshed)
    assert [e.analysis.token_address for e in refreshed] == ["Mint111", "Mint111"]
    stats = agg.get_stats()
    assert (stats.processed, stats.passed) == (1, 1)


async def test_not_blacklisted_rejects_when_jupiter_degraded(make_aggregator, sources):
    sources[JUP].error = PermanentSourceError("jupiter", "HTTP 401", status_code=401)
    agg = make_aggregator(filter_specs=[{"type": "notBlacklisted"}])

    analysis = await agg.aggregate("Mint111")

    assert analysis.record["blacklisted"] is None
    assert analysis.failed_filters == ["not_blacklisted"]


async def test_blacklisted_token_is_flagged_in_record(make_aggregator):
    agg = make_aggregator(filter_specs=[{"type": "notBlacklisted"}])
    agg.add_to_blacklist("Mint111")

    analysis = await agg.aggregate("Mint111")

    assert analysis.record["blacklisted"] is True
    assert analysis.failed_filters == ["not_blacklisted"]
    assert agg.remove_from_blacklist("Mint111") is True
    assert agg.is_blacklisted("Mint111") is False


async def test_cleanup_prunes_old_memory(make_aggregator):
    agg = make_aggregator(processed_retention=10, watchlist_retention=10)
    await agg.aggregate("Mint111")
    now = time.time()
    agg._processed.update({"old": now - 100, "fresh": now})
    agg._watchlist["Stale"] = (None, now - 100)

    result = agg.cleanup()

    assert result["processed_pruned"] == 1
    assert result["watchlist_pruned"] == 1
    assert agg.get_status()["processed_tokens"] == 1
    assert agg.get_status()["watched_tokens"] == 1


async def test_drain_abandons_stuck_jobs_and_refuses_new_ones(make_aggregator, sources):
    sources[DEX].gate = asyncio.Event()
    agg = make_aggregator()

    caller = asyncio.ensure_future(agg.aggregate("Mint111"))
    for _ in range(5):
        await asyncio.sleep(0)

    assert await agg.drain(timeout=0.01) == 1
    with pytest.raises(asyncio.CancelledError):
        await caller
    with pytest.raises(PipelineError):
        await agg.aggregate("Other")
    assert agg.get_status()["accepting"] is False


async def test_drain_waits_for_finishing_jobs(make_aggregator, sources):
    gate = asyncio.Event()
    sources[DEX].gate = gate
    agg = make_aggregator()

    caller = asyncio.ensure_future(agg.aggregate("Mint111"))
    for _ in range(5):
        await asyncio.sleep(0)
    asyncio.get_running_loop().call_later(0.01, gate.set)

    assert await agg.drain(timeout=5) == 0
    assert (await caller).passed is True


async def test_timed_out_job_keeps_its_slot(make_aggregator, sources):
    gate = asyncio.Event()
    sources[DEX].gate = gate
    agg = make_aggregator(max_concurrent_jobs=1, job_timeout=0.01)

    assert await agg.aggregate_many(["Mint111"]) == []
    assert agg.get_status()["in_flight"] == 1

    waiting = asyncio.ensure_future(agg.aggregate("Mint222"))
    for _ in range(5):
        await asyncio.sleep(0)
    # the abandoned job still holds the only slot
    assert sources[DEX].calls == 1

    gate.set()
    assert (await waiting).token_address == "Mint222"
    assert sources[DEX].calls == 2
    assert agg.get_status()["in_flight"] == 0


async def test_foreign_cache_entry_is_refetched(make_aggregator, sources):
    agg = make_aggregator()
    agg.cache.set("dexscreener:Mint111", {"liquidity_usd": 1})

    analysis = await agg.aggregate("Mint111")

    assert sources[DEX].calls == 1
    assert analysis.sources[DEX].cached is False
    assert analysis.degraded_sources == []


async def test_aggregate_many_drops_failed_jobs(make_aggregator, sources):
    agg = make_aggregator()

    results = await agg.aggregate_many(["Mint111", "   ", "Mint222"])

    assert [a.token_address for a in results] == ["Mint111", "Mint222"]
