"""Tests for the persistence subscriber and the webhook notifier."""

import json

import asyncpg
import httpx
import pytest

from token_scout.modules.outputs.notifier import MAX_ATTEMPTS, WebhookNotifier
from token_scout.modules.outputs.store import (
    INSERT_ANALYSIS,
    UPSERT_TOKEN,
    PersistenceSubscriber,
    PostgresStore,
)
from token_scout.modules.pipeline.events import (
    AnalysisFailed,
    AnalysisPassed,
    EventBus,
    MetricsRefreshed,
    TokenDiscovered,
)
from token_scout.modules.pipeline.schemas import (
    CombinedAnalysis,
    Degraded,
    JobState,
    Present,
    TokenCandidate,
    utcnow,
)
from token_scout.modules.sources.schemas import SourceName
from token_scout.shared.errors import PersistenceError, TransientSourceError

from conftest import sample_data


def make_analysis(passed=True):
    data = sample_data()
    sources = {
        SourceName.DEXSCREENER: Present(SourceName.DEXSCREENER, data[SourceName.DEXSCREENER], 12.5),
        SourceName.JUPITER: Degraded(SourceName.JUPITER, TransientSourceError("jupiter", "timeout"), 3),
    }
    return CombinedAnalysis(
        token_address="Mint111",
        sources=sources,
        overall_score=80.0,
        risk_score=20.0,
        opportunity_score=55.0,
        passed=passed,
        failed_filters=[] if passed else ["min_liquidity"],
        has_errors=True,
        timestamp=utcnow(),
        state=JobState.PASSED if passed else JobState.REJECTED,
        symbol="SCOUT",
        name="Scout",
        record={"liquidity": 50_000, "volume_24h": 20_000, "market_cap": 500_000},
    )


class RecordingExecute:

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def __call__(self, query, *args):
        self.calls.append((query, args))
        if self.error is not None:
            raise self.error
        return "INSERT 0 1"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

async def test_upsert_token_passes_candidate_fields():
    execute = RecordingExecute()
    store = PostgresStore(execute=execute)
    candidate = TokenCandidate("Mint111", "SCOUT", "Scout")

    await store.upsert_token(candidate)

    query, args = execute.calls[0]
    assert query == UPSERT_TOKEN
    assert args[:4] == ("Mint111", "SCOUT", "Scout", "solana")


async def test_save_analysis_serializes_sources():
    execute = RecordingExecute()
    store = PostgresStore(execute=execute)

    await store.save_analysis(make_analysis())

    query, args = execute.calls[0]
    assert query == INSERT_ANALYSIS
    assert args[0] == "Mint111"
    assert args[8] == ["jupiter"]
    sources = json.loads(args[9])
    assert sources["dexscreener"]["status"] == "present"
    assert sources["dexscreener"]["data"]["symbol"] == "SCOUT"
    assert sources["jupiter"] == {
        "status": "degraded", "attempts": 3, "error": "TransientSourceError: jupiter: timeout",
    }


@pytest.mark.parametrize("error", [
    asyncpg.PostgresError("boom"),
    ConnectionRefusedError("db down"),
    RuntimeError("pool not initialised"),
])
async def test_store_wraps_driver_errors(error):
    store = PostgresStore(execute=RecordingExecute(error))

    with pytest.raises(PersistenceError):
        await store.upsert_token(TokenCandidate("Mint111"))


async def test_subscriber_persists_events():
    execute = RecordingExecute()
    events = EventBus()
    subscriber = PersistenceSubscriber(PostgresStore(execute=execute))
    subscriber.attach(events)

    events.publish(TokenDiscovered(TokenCandidate("Mint111")))
    events.publish(AnalysisPassed(make_analysis()))
    events.publish(AnalysisFailed(make_analysis(passed=False)))
    events.publish(MetricsRefreshed(make_analysis()))
    await events.wait_idle(timeout=1)

    queries = [q for q, _ in execute.calls]
    assert queries == [UPSERT_TOKEN, INSERT_ANALYSIS, INSERT_ANALYSIS, INSERT_ANALYSIS]
    assert subscriber.failures == 0


async def test_subscriber_swallows_write_failures(caplog):
    events = EventBus()
    subscriber = PersistenceSubscriber(PostgresStore(execute=RecordingExecute(OSError("disk full"))))
    subscriber.attach(events)

    events.publish(AnalysisPassed(make_analysis()))
    await events.wait_idle(timeout=1)

    assert subscriber.failures == 1
    assert "Could not persist analysis" in caplog.text


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

def notifier_with(statuses, method="POST"):
    requests = []
    answers = iter(statuses)

    def handler(request):
        requests.append(request)
        return httpx.Response(next(answers))

    notifier = WebhookNotifier(
        "https://hooks.example.com/alert", method=method,
        transport=httpx.MockTransport(handler), retry_delay=0,
    )
    return notifier, requests


async def test_notifier_posts_payload():
    notifier, requests = notifier_with([200])

    assert await notifier.send(make_analysis()) is True

    body = json.loads(requests[0].content)
    assert body["type"] == "token_alert"
    assert body["data"]["address"] == "Mint111"
    assert body["data"]["degraded_sources"] == ["jupiter"]
    assert notifier.status["sent"] == 1
    assert notifier.status["available"] is True


async def test_notifier_get_puts_payload_in_query():
    notifier, requests = notifier_with([204], method="get")

    assert await notifier.send(make_analysis()) is True

    assert requests[0].method == "GET"
    assert json.loads(requests[0].url.params["data"])["data"]["symbol"] == "SCOUT"


async def test_notifier_retries_server_errors():
    notifier, requests = notifier_with([500, 502, 200])

    assert await notifier.send(make_analysis()) is True
    assert len(requests) == 3


async def test_notifier_gives_up_after_max_attempts():
    notifier, requests = notifier_with([500] * MAX_ATTEMPTS)

    assert await notifier.send(make_analysis()) is False
    assert len(requests) == MAX_ATTEMPTS
    assert notifier.status["failed"] == 1
    assert notifier.status["available"] is False


async def test_notifier_does_not_retry_404():
    notifier, requests = notifier_with([404, 200])

    assert await notifier.send(make_analysis()) is False
    assert len(requests) == 1


async def test_notifier_without_url_is_a_no_op():
    assert await WebhookNotifier("").send(make_analysis()) is True


async def test_notifier_only_hears_passed_analyses():
    notifier, requests = notifier_with([200])
    events = EventBus()
    notifier.attach(events)

    events.publish(AnalysisFailed(make_analysis(passed=False)))
    events.publish(MetricsRefreshed(make_analysis()))
    events.publish(AnalysisPassed(make_analysis()))
    await events.wait_idle(timeout=1)

    assert len(requests) == 1
