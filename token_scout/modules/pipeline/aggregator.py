"""
Token Aggregator

Orchestrates one job per token address:

    discovered -> fetching -> combining -> scoring -> filtering -> passed | rejected
                                       \\-> failed  (every source degraded)

Fetching fans out to every configured source at once, each call going
through the rate limiter's retry wrapper. A source that gives up becomes
``Degraded`` for this job only; the job carries on with whatever answered.

Concurrent ``aggregate()`` calls for the same address share one job. The
aggregator never talks to storage or notification channels directly; it
publishes typed events on the ``EventBus``.

Scheduled entry points (called by the Scheduler):
    process_new_tokens()    discovery batch
    update_token_metrics()  refresh of recently passed tokens
    cleanup()               cache sweep + memory pruning
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from token_scout.modules.filters.pipeline import FilterPipeline, SpecLike
from token_scout.modules.pipeline.events import (
    AnalysisFailed,
    AnalysisPassed,
    EventBus,
    MetricsRefreshed,
    PipelineErrorEvent,
    StatsUpdated,
    TokenDiscovered,
)
from token_scout.modules.pipeline.schemas import (
    AggregationRun,
    CombinedAnalysis,
    Degraded,
    JobState,
    JobTracker,
    PipelineStats,
    Present,
    SourceResult,
    TokenCandidate,
    utcnow,
)
from token_scout.modules.pipeline.scoring import ScoringWeights, build_record, compute_scores
from token_scout.modules.sources.base import SourceClient
from token_scout.modules.sources.health import HealthChecker
from token_scout.modules.sources.schemas import SOURCE_MODELS, SourceName
from token_scout.shared.cache import TTLCache
from token_scout.shared.errors import (
    ConfigurationError,
    ExhaustedRetries,
    PermanentSourceError,
    PipelineError,
)
from token_scout.shared.prometheus import (
    pipeline_batches_skipped,
    pipeline_job_duration,
    pipeline_jobs_in_flight,
    pipeline_jobs_total,
    pipeline_source_results,
    pipeline_tokens_discovered,
)
from token_scout.shared.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

RUN_HISTORY_SIZE = 100
ALL_DEGRADED = "all_sources_degraded"


def normalize_address(address: str) -> str:
    # Solana mints are base58 and case-sensitive; only trim.
    normalized = (address or "").strip()
    if not normalized:
        raise ValueError("token address must not be empty")
    return normalized


class TokenAggregator:
    """Fan-out / combine / score / filter driver with per-address dedup."""

    def __init__(
        self,
        sources: Mapping[Union[SourceName, str], SourceClient],
        rate_limiter: RateLimiter,
        cache: TTLCache,
        events: EventBus,
        filter_specs: Sequence[SpecLike] = (),
        filter_pipeline: Optional[FilterPipeline] = None,
        weights: Optional[ScoringWeights] = None,
        health_checker: Optional[HealthChecker] = None,
        discovery_source: Union[SourceName, str] = SourceName.DEXSCREENER,
        critical_sources: Iterable[Union[SourceName, str]] = (SourceName.DEXSCREENER,),
        source_cache_ttl: float = 60,
        max_tokens_per_run: int = 100,
        max_concurrent_jobs: int = 10,
        job_timeout: float = 90,
        processed_retention: float = 24 * 3600,
        watchlist_retention: float = 6 * 3600,
        chain: str = "solana",
    ):
        if not sources:
            raise ConfigurationError("at least one source client is required")

        self.sources: Dict[SourceName, SourceClient] = {
            SourceName(name): client for name, client in sources.items()
        }
        for name in self.sources:
            rate_limiter.get_config(name.value)

        self.discovery_source = SourceName(discovery_source)
        discovery = self.sources.get(self.discovery_source)
        if discovery is None or not callable(getattr(discovery, "discover", None)):
            raise ConfigurationError(f"discovery source {self.discovery_source.value} cannot discover tokens")

        self.rate_limiter = rate_limiter
        self.cache = cache
        self.events = events
        self.filter_pipeline = filter_pipeline or FilterPipeline()
        self.filter_specs = self.filter_pipeline.validate(filter_specs)
        self.weights = weights or ScoringWeights()
        self.health_checker = health_checker
        self.critical_sources = [SourceName(s) for s in critical_sources]
        self.source_cache_ttl = source_cache_ttl
        self.max_tokens_per_run = max_tokens_per_run
        self.job_timeout = job_timeout
        self.processed_retention = processed_retention
        self.watchlist_retention = watchlist_retention
        self.chain = chain

        self._semaphore_size = max_concurrent_jobs
        self._semaphore = asyncio.Semaphore(max_concurrent_jobs)
        # (address, refresh) -> job task
        self._in_flight: Dict[tuple, asyncio.Task] = {}
        self._accepting = True

        self.stats = PipelineStats()
        self._processed: Dict[str, float] = {}
        self._blacklist: Dict[str, str] = {}
        # address -> (candidate, passed_at); insertion order = first pass
        self._watchlist: "OrderedDict[str, tuple]" = OrderedDict()
        self._runs: Deque[AggregationRun] = deque(maxlen=RUN_HISTORY_SIZE)
        self._last_health: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def aggregate(
        self,
        address: str,
        candidate: Optional[TokenCandidate] = None,
        use_cache: bool = True,
        refresh: bool = False,
    ) -> CombinedAnalysis:
        """Analyze one token, joining the in-flight job for it if there is one.

        With ``refresh=True`` the job only re-measures a watched token: it
        publishes ``MetricsRefreshed`` instead of a pass/fail event and leaves
        the pipeline counters alone. Refresh and discovery jobs never share.
        """
        address = normalize_address(address)
        key = (address, refresh)

        task = self._in_flight.get(key)
        if task is not None:
            logger.debug("Joining in-flight job for %s", address[:8])
        else:
            if not self._accepting:
                raise PipelineError("aggregator is draining, no new jobs accepted")
            task = asyncio.create_task(self._run_job(address, candidate, use_cache, refresh))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))

        # A cancelled joiner must not cancel the job other callers wait on
        return await asyncio.shield(task)

    def _forget(self, key: tuple, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if task.cancelled():
            return
        # callers that timed out never await the job
        exc = task.exception()
        if exc is not None:
            logger.debug("Job for %s ended with %s", key[0][:8], type(exc).__name__)

    async def _run_job(
        self,
        address: str,
        candidate: Optional[TokenCandidate],
        use_cache: bool,
        refresh: bool = False,
    ) -> CombinedAnalysis:
        # the slot is held by the job itself, not by whoever waits on it
        async with self._semaphore:
            if refresh:
                return await self._refresh_job(address, candidate, use_cache)
            return await self._analysis_job(address, candidate, use_cache)

    async def _refresh_job(
        self, address: str, candidate: Optional[TokenCandidate], use_cache: bool,
    ) -> CombinedAnalysis:
        start = time.monotonic()
        pipeline_jobs_in_flight.inc()
        try:
            results = await self._fetch_all(address, use_cache)
            present = {name: r.data for name, r in results.items() if isinstance(r, Present)}
            if not present:
                pipeline_jobs_total.labels(outcome="refresh_failed").inc()
                logger.warning("Metrics refresh for %s failed: all sources degraded", address[:8])
                return self._failed_analysis(address, candidate, results)

            analysis = self._evaluate(address, candidate, results, present)
            pipeline_jobs_total.labels(outcome="refreshed").inc()
            logger.debug("Refreshed %s overall=%.1f", address[:8], analysis.overall_score)
            self.events.publish(MetricsRefreshed(analysis))
            return analysis
        finally:
            pipeline_jobs_in_flight.dec()
            pipeline_job_duration.observe(time.monotonic() - start)

    def _evaluate(
        self,
        address: str,
        candidate: Optional[TokenCandidate],
        results: Dict[SourceName, SourceResult],
        present: Dict[SourceName, BaseModel],
        job: Optional[JobTracker] = None,
    ) -> CombinedAnalysis:
        has_errors = len(present) < len(results)
        if job is not None:
            job.advance(JobState.SCORING)
        scores = compute_scores(present, self.weights)
        record = build_record(
            address, present, scores, has_errors,
            blacklisted=address in self._blacklist,
            symbol=candidate.symbol if candidate else "",
            name=candidate.name if candidate else "",
        )

        if job is not None:
            job.advance(JobState.FILTERING)
        failed_filters = self.filter_pipeline.failed_filters(record, self.filter_specs)
        passed = not failed_filters
        state = JobState.PASSED if passed else JobState.REJECTED
        if job is not None:
            job.advance(state)

        return CombinedAnalysis(
            token_address=address,
            sources=results,
            overall_score=scores.overall,
            risk_score=scores.risk,
            opportunity_score=scores.opportunity,
            passed=passed,
            failed_filters=failed_filters,
            has_errors=has_errors,
            timestamp=utcnow(),
            state=state,
            symbol=record["symbol"],
            name=record["name"],
            record=record,
        )

    async def _analysis_job(
        self, address: str, candidate: Optional[TokenCandidate], use_cache: bool,
    ) -> CombinedAnalysis:
        job = JobTracker(address)
        start = time.monotonic()
        pipeline_jobs_in_flight.inc()
        try:
            job.advance(JobState.FETCHING)
            results = await self._fetch_all(address, use_cache)

            job.advance(JobState.COMBINING)
            present = {name: r.data for name, r in results.items() if isinstance(r, Present)}

            if not present:
                job.advance(JobState.FAILED)
                analysis = self._failed_analysis(address, candidate, results)
                self.stats.processed += 1
                self.stats.failed += 1
                pipeline_jobs_total.labels(outcome="failed").inc()
                degraded = {r.source.value: str(r.last_error) for r in results.values()}
                logger.error("All sources degraded for %s: %s", address[:8], degraded)
                self.events.publish(PipelineErrorEvent(address, ALL_DEGRADED, degraded))
                self.events.publish(StatsUpdated(self.stats.snapshot()))
                return analysis

            analysis = self._evaluate(address, candidate, results, present, job)

            self.stats.processed += 1
            if analysis.passed:
                self.stats.passed += 1
                self._watch(address, candidate, analysis)
                pipeline_jobs_total.labels(outcome="passed").inc()
                logger.info(
                    "Token passed: %s (%s) overall=%.1f risk=%.1f%s",
                    analysis.symbol or "?", address[:8], analysis.overall_score, analysis.risk_score,
                    " [degraded]" if analysis.has_errors else "",
                )
                self.events.publish(AnalysisPassed(analysis))
            else:
                pipeline_jobs_total.labels(outcome="rejected").inc()
                logger.debug("Token rejected: %s by %s", address[:8], analysis.failed_filters)
                self.events.publish(AnalysisFailed(analysis))

            self.events.publish(StatsUpdated(self.stats.snapshot()))
            return analysis

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.processed += 1
            self.stats.errors += 1
            pipeline_jobs_total.labels(outcome="error").inc()
            logger.error("Job for %s crashed in state %s: %s", address[:8], job.state.value, e, exc_info=True)
            self.events.publish(PipelineErrorEvent(address, f"{type(e).__name__}: {e}"))
            self.events.publish(StatsUpdated(self.stats.snapshot()))
            raise
        finally:
            pipeline_jobs_in_flight.dec()
            pipeline_job_duration.observe(time.monotonic() - start)

    def _failed_analysis(
        self,
        address: str,
        candidate: Optional[TokenCandidate],
        results: Dict[SourceName, SourceResult],
    ) -> CombinedAnalysis:
        return CombinedAnalysis(
            token_address=address,
            sources=results,
            overall_score=0.0,
            risk_score=0.0,
            opportunity_score=0.0,
            passed=False,
            failed_filters=[ALL_DEGRADED],
            has_errors=True,
            timestamp=utcnow(),
            state=JobState.FAILED,
            symbol=candidate.symbol if candidate else "",
            name=candidate.name if candidate else "",
        )

    # ------------------------------------------------------------------
    # Fan-out fetch
    # ------------------------------------------------------------------

    async def _fetch_all(self, address: str, use_cache: bool) -> Dict[SourceName, SourceResult]:
        names = list(self.sources)
        results = await asyncio.gather(
            *(self._fetch_source(name, address, use_cache) for name in names)
        )
        return dict(zip(names, results))

    async def _fetch_source(self, name: SourceName, address: str, use_cache: bool) -> SourceResult:
        cache_key = f"{name.value}:{address}"
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                cached = self._validate(name, cached)
                if isinstance(cached, Degraded):
                    self.cache.delete(cache_key)
                else:
                    pipeline_source_results.labels(source=name.value, status="cached").inc()
                    return Present(name, cached, 0.0, cached=True)

        client = self.sources[name]
        start = time.monotonic()
        try:
            data = await self.rate_limiter.run_with_retry(name.value, lambda: client.fetch(address))
        except ExhaustedRetries as e:
            pipeline_source_results.labels(source=name.value, status="degraded").inc()
            return Degraded(name, e.last_error, e.attempts)
        except PermanentSourceError as e:
            pipeline_source_results.labels(source=name.value, status="degraded").inc()
            logger.warning("%s unavailable for %s: %s", name.value, address[:8], e)
            return Degraded(name, e, 1)

        data = self._validate(name, data)
        if isinstance(data, Degraded):
            pipeline_source_results.labels(source=name.value, status="degraded").inc()
            return data

        self.cache.set(cache_key, data, ttl=self.source_cache_ttl)
        pipeline_source_results.labels(source=name.value, status="present").inc()
        return Present(name, data, (time.monotonic() - start) * 1000)

    @staticmethod
    def _validate(name: SourceName, data: Any) -> Union[BaseModel, Degraded]:
        model = SOURCE_MODELS[name]
        if isinstance(data, model):
            return data
        error = PermanentSourceError(name.value, f"unexpected result type {type(data).__name__}")
        logger.error("%s", error)
        return Degraded(name, error, 1)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def aggregate_many(
        self,
        addresses: Sequence[str],
        candidates: Optional[Mapping[str, TokenCandidate]] = None,
        use_cache: bool = True,
        refresh: bool = False,
    ) -> List[CombinedAnalysis]:
        """Analyze a batch with bounded concurrency; failures stay per job.

        A job that outlives ``job_timeout`` is no longer waited for but keeps
        its concurrency slot until it finishes.
        """
        candidates = candidates or {}
        waiters = asyncio.Semaphore(self._semaphore_size)

        async def run_one(address: str) -> Optional[CombinedAnalysis]:
            async with waiters:
                try:
                    return await asyncio.wait_for(
                        self.aggregate(address, candidates.get(address), use_cache, refresh),
                        timeout=self.job_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning("Timed out after %ss waiting for %s", self.job_timeout, address[:8])
                except Exception as e:
                    logger.warning("Aggregation of %s failed: %s", address[:8], e)
                return None

        results = await asyncio.gather(*(run_one(a) for a in addresses))
        return [r for r in results if r is not None]

    async def check_health(self) -> bool:
        """True when every critical source is healthy (or no checker is wired)."""
        if self.health_checker is None:
            return True
        report = await self.health_checker.check()
        self._last_health = report.to_dict()
        down = [s.value for s in self.critical_sources if not report.is_healthy(s.value)]
        if down:
            logger.warning("Critical source(s) unhealthy: %s (system: %s)", ", ".join(down), report.overall)
            return False
        return True

    async def process_new_tokens(self) -> List[TokenCandidate]:
        """Discovery batch: find new tokens and analyze them."""
        run = AggregationRun(id=str(uuid.uuid4()), started_at=utcnow())
        self._runs.append(run)

        if not await self.check_health():
            run.errors.append("critical source unhealthy")
            run.finish("skipped")
            pipeline_batches_skipped.inc()
            logger.warning("Discovery batch skipped: critical source unhealthy")
            return []

        discovery = self.sources[self.discovery_source]
        try:
            found = await self.rate_limiter.run_with_retry(
                self.discovery_source.value, lambda: discovery.discover(self.chain),
            )
        except Exception as e:
            run.errors.append(str(e))
            run.finish("failed")
            logger.error("Token discovery failed: %s", e)
            raise

        new: List[TokenCandidate] = []
        for candidate in found:
            address = candidate.address.strip()
            if address in self._processed or address in self._blacklist:
                continue
            new.append(candidate)
            if len(new) >= self.max_tokens_per_run:
                break

        run.tokens_discovered = len(new)
        logger.info("Discovered %d new token(s) (%d seen)", len(new), len(found))
        for candidate in new:
            pipeline_tokens_discovered.inc()
            self.events.publish(TokenDiscovered(candidate))

        analyses = await self.aggregate_many(
            [c.address for c in new], {c.address: c for c in new},
        )
        now = time.time()
        for candidate in new:
            self._processed[candidate.address.strip()] = now

        run.tokens_processed = len(analyses)
        run.tokens_passed = sum(1 for a in analyses if a.passed)
        run.finish("completed")
        logger.info(
            "Discovery run finished in %.1fs: %d processed, %d passed",
            run.duration_seconds, run.tokens_processed, run.tokens_passed,
        )
        return new

    async def update_token_metrics(self) -> int:
        """Re-measure watched tokens with fresh source data.

        Publishes ``MetricsRefreshed`` per token; never re-alerts and never
        counts toward the pipeline stats.
        """
        if not self._watchlist:
            return 0
        if not await self.check_health():
            pipeline_batches_skipped.inc()
            logger.warning("Metrics refresh skipped: critical source unhealthy")
            return 0

        watched = list(self._watchlist.items())
        analyses = await self.aggregate_many(
            [address for address, _ in watched],
            {address: entry[0] for address, entry in watched if entry[0] is not None},
            use_cache=False,
            refresh=True,
        )
        refreshed = sum(1 for a in analyses if a.state is not JobState.FAILED)
        logger.info("Refreshed metrics for %d/%d watched token(s)", refreshed, len(watched))
        return refreshed

    def _watch(self, address: str, candidate: Optional[TokenCandidate], analysis: CombinedAnalysis) -> None:
        previous = self._watchlist.get(address)
        first_passed = previous[1] if previous else time.time()
        self._watchlist[address] = (candidate or (previous[0] if previous else None), first_passed)

    def cleanup(self) -> Dict[str, int]:
        now = time.time()
        expired = self.cache.cleanup_expired()

        stale = [a for a, ts in self._processed.items() if now - ts > self.processed_retention]
        for address in stale:
            del self._processed[address]

        unwatched = [a for a, (_, ts) in self._watchlist.items() if now - ts > self.watchlist_retention]
        for address in unwatched:
            del self._watchlist[address]

        result = {
            "cache_entries_expired": expired,
            "processed_pruned": len(stale),
            "watchlist_pruned": len(unwatched),
        }
        logger.info("Cleanup: %s", result)
        return result

    # ------------------------------------------------------------------
    # Blacklist
    # ------------------------------------------------------------------

    def add_to_blacklist(self, address: str, reason: str = "") -> None:
        address = normalize_address(address)
        self._blacklist[address] = reason
        self._watchlist.pop(address, None)
        logger.info("Token blacklisted: %s (%s)", address[:8], reason or "no reason")

    def remove_from_blacklist(self, address: str) -> bool:
        removed = self._blacklist.pop(normalize_address(address), None) is not None
        if removed:
            logger.info("Token removed from blacklist: %s", address[:8])
        return removed

    def is_blacklisted(self, address: str) -> bool:
        return normalize_address(address) in self._blacklist

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self) -> PipelineStats:
        return self.stats.snapshot()

    def get_run_history(self, limit: int = 10) -> List[AggregationRun]:
        """Most recent runs first."""
        return list(reversed(self._runs))[:limit]

    def get_status(self) -> Dict[str, Any]:
        finished = [r for r in self._runs if r.duration_seconds is not None and r.status == "completed"]
        return {
            "accepting": self._accepting,
            "in_flight": len(self._in_flight),
            "processed_tokens": len(self._processed),
            "blacklisted_tokens": len(self._blacklist),
            "watched_tokens": len(self._watchlist),
            "stats": self.stats.to_dict(),
            "last_run": self._runs[-1].to_dict() if self._runs else None,
            "average_run_seconds": (
                sum(r.duration_seconds for r in finished) / len(finished) if finished else 0.0
            ),
            "source_health": self._last_health,
            "cache": self.cache.stats(),
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self, timeout: float) -> int:
        """Stop accepting jobs, wait up to ``timeout`` for in-flight ones.

        Returns the number of jobs abandoned (cancelled) at the deadline.
        """
        self._accepting = False
        tasks = list(self._in_flight.values())
        if not tasks:
            return 0

        logger.info("Draining %d in-flight job(s) (grace %ss)", len(tasks), timeout)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Abandoned %d job(s) after %ss grace period", len(pending), timeout)
        return len(pending)
