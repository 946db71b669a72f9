"""
Pipeline Scheduler.

Drives three independent interval loops against the aggregator:

    token_discovery   process_new_tokens()     every DISCOVERY_INTERVAL_SECONDS
    metrics_update    update_token_metrics()   every METRICS_REFRESH_INTERVAL_SECONDS
    cleanup           cleanup()                every CLEANUP_INTERVAL_SECONDS

Each loop sleeps first, then runs its task. A task that raises is counted
and logged; its loop and the other loops keep going.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from token_scout.shared.prometheus import (
    scheduler_errors_total,
    scheduler_executions_total,
    scheduler_task_duration,
)

logger = logging.getLogger(__name__)

TOKEN_DISCOVERY = "token_discovery"
METRICS_UPDATE = "metrics_update"
CLEANUP = "cleanup"


@dataclass
class TaskMetrics:
    total_executions: int = 0
    total_errors: int = 0
    total_duration_ms: float = 0.0
    last_execution: Optional[float] = None
    last_error: Optional[str] = None
    tokens_discovered: int = 0

    @property
    def error_rate(self) -> float:
        return (self.total_errors / self.total_executions) if self.total_executions else 0.0

    @property
    def average_execution_time(self) -> float:
        return (self.total_duration_ms / self.total_executions) if self.total_executions else 0.0

    def to_dict(self, include_discovered: bool = False) -> Dict[str, Any]:
        data = {
            "total_executions": self.total_executions,
            "total_errors": self.total_errors,
            "error_rate": self.error_rate,
            "average_execution_time": round(self.average_execution_time, 2),
            "last_execution": (
                datetime.fromtimestamp(self.last_execution, tz=timezone.utc).isoformat()
                if self.last_execution is not None else None
            ),
            "last_error": self.last_error,
        }
        if include_discovered:
            data["tokens_discovered"] = self.tokens_discovered
        return data


@dataclass
class ScheduledTask:
    name: str
    label: str
    interval: float
    run: Callable[[], Any]
    metrics: TaskMetrics = field(default_factory=TaskMetrics)


class Scheduler:
    """Interval scheduler for the aggregator's batch operations."""

    def __init__(
        self,
        aggregator,
        discovery_interval: float = 300,
        metrics_interval: float = 60,
        cleanup_interval: float = 6 * 3600,
        stale_grace: float = 120,
        clock: Callable[[], float] = time.time,
    ):
        for name, value in (
            ("discovery_interval", discovery_interval),
            ("metrics_interval", metrics_interval),
            ("cleanup_interval", cleanup_interval),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0")

        self.aggregator = aggregator
        self.stale_grace = stale_grace
        self._clock = clock

        self.tasks: Dict[str, ScheduledTask] = {
            TOKEN_DISCOVERY: ScheduledTask(
                TOKEN_DISCOVERY, "Token discovery", discovery_interval, aggregator.process_new_tokens,
            ),
            METRICS_UPDATE: ScheduledTask(
                METRICS_UPDATE, "Metrics update", metrics_interval, aggregator.update_token_metrics,
            ),
            CLEANUP: ScheduledTask(
                CLEANUP, "Cleanup", cleanup_interval, aggregator.cleanup,
            ),
        }

        self.running = False
        self.started_at: Optional[float] = None
        self._loops: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.running = True
        self.started_at = self._clock()
        self._loops = [
            asyncio.create_task(self._loop(task), name=f"scheduler:{task.name}")
            for task in self.tasks.values()
        ]
        logger.info(
            "Scheduler started (discovery: %ss, metrics: %ss, cleanup: %ss)",
            self.tasks[TOKEN_DISCOVERY].interval,
            self.tasks[METRICS_UPDATE].interval,
            self.tasks[CLEANUP].interval,
        )

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        for loop in self._loops:
            loop.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        logger.info("Scheduler stopped")

    async def _loop(self, task: ScheduledTask) -> None:
        while self.running:
            await asyncio.sleep(task.interval)
            if not self.running:
                break
            await self._execute(task)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, task: ScheduledTask) -> Any:
        metrics = task.metrics
        start = time.monotonic()
        result = None
        try:
            result = task.run()
            if inspect.isawaitable(result):
                result = await result
            if task.name == TOKEN_DISCOVERY and result:
                metrics.tokens_discovered += len(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.total_errors += 1
            metrics.last_error = str(e)
            scheduler_errors_total.labels(task=task.name).inc()
            logger.error("Scheduled task %s failed: %s", task.name, e, exc_info=True)
        finally:
            duration = time.monotonic() - start
            metrics.total_executions += 1
            metrics.total_duration_ms += duration * 1000
            metrics.last_execution = self._clock()
            scheduler_executions_total.labels(task=task.name).inc()
            scheduler_task_duration.labels(task=task.name).observe(duration)
        return result

    async def execute_token_discovery(self) -> Any:
        return await self._execute(self.tasks[TOKEN_DISCOVERY])

    async def execute_metrics_update(self) -> Any:
        return await self._execute(self.tasks[METRICS_UPDATE])

    async def execute_cleanup(self) -> Any:
        return await self._execute(self.tasks[CLEANUP])

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: task.metrics.to_dict(include_discovered=(name == TOKEN_DISCOVERY))
            for name, task in self.tasks.items()
        }

    def get_health_status(self) -> Dict[str, Any]:
        if not self.running:
            return {"status": "stopped", "is_running": False, "uptime": 0.0, "warnings": []}

        now = self._clock()
        warnings = []
        for task in self.tasks.values():
            reference = task.metrics.last_execution
            if reference is None:
                reference = self.started_at
            threshold = task.interval + self.stale_grace
            if now - reference > threshold:
                warnings.append(f"{task.label} last ran more than {threshold / 60:g} minutes ago")

        return {
            "status": "stale" if warnings else "healthy",
            "is_running": True,
            "uptime": now - self.started_at,
            "warnings": warnings,
        }
