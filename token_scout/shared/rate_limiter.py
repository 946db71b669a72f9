"""
Per-service rate limiter with exponential backoff.

Every upstream provider gets its own sliding window of accepted request
timestamps. ``admit()`` suspends the caller until the window has room,
``run_with_retry()`` wraps an async operation with admission control and
exponential backoff between failed attempts.

Usage:
    limiter = RateLimiter({
        "dexscreener": RateLimitConfig("dexscreener", max_requests=300, window_ms=60_000),
    })

    await limiter.admit("dexscreener")
    data = await limiter.run_with_retry("dexscreener", lambda: client.fetch(mint))

State is isolated per service: exhausting one provider's quota never slows
down calls to another.
"""

import asyncio
import logging
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Mapping, Optional, Tuple

from token_scout.shared.errors import (
    ConfigurationError,
    ExhaustedRetries,
    PermanentSourceError,
)
from token_scout.shared.prometheus import (
    ratelimit_exhausted,
    ratelimit_retries,
    ratelimit_waits,
)

logger = logging.getLogger(__name__)

# Jitter is drawn uniformly from [0, JITTER_FRACTION * delay)
JITTER_FRACTION = 0.1


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota and retry policy for one upstream service."""
    service: str
    max_requests: int
    window_ms: int
    backoff_base_ms: int = 1000
    max_retries: int = 3
    backoff_factor: float = 2.0
    max_delay_ms: int = 30_000

    def __post_init__(self):
        if self.max_requests < 1:
            raise ConfigurationError(f"{self.service}: max_requests must be >= 1")
        if self.window_ms <= 0:
            raise ConfigurationError(f"{self.service}: window_ms must be > 0")
        if self.backoff_base_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError(f"{self.service}: backoff delays must be >= 0")
        if self.max_retries < 0:
            raise ConfigurationError(f"{self.service}: max_retries must be >= 0")
        if self.backoff_factor < 1:
            raise ConfigurationError(f"{self.service}: backoff_factor must be >= 1")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_factor: float = 2.0

    @classmethod
    def from_rate_limit(cls, config: RateLimitConfig) -> "RetryConfig":
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.backoff_base_ms,
            max_delay_ms=config.max_delay_ms,
            backoff_factor=config.backoff_factor,
        )


def backoff_delay_ms(
    attempt: int,
    retry: RetryConfig,
    rand: Callable[[], float] = random.random,
) -> Tuple[float, float]:
    """Compute the delay before retry number ``attempt`` (0-based).

    Returns:
        ``(base, delay)`` where ``base`` is the pre-jitter delay and ``delay``
        the jittered delay actually slept. Both are capped at
        ``retry.max_delay_ms``.
    """
    base = min(retry.base_delay_ms * (retry.backoff_factor ** attempt), retry.max_delay_ms)
    jitter = rand() * JITTER_FRACTION * base
    return base, min(base + jitter, retry.max_delay_ms)


class _ServiceState:
    """Mutable limiter state of one service, guarded by its own lock."""

    def __init__(self):
        self.lock = threading.Lock()
        self.timestamps: Deque[float] = deque()
        self.backoff_ms: float = 0.0


class RateLimiter:
    """Sliding-window admission control + retry wrapper, keyed by service."""

    def __init__(
        self,
        configs: Mapping[str, RateLimitConfig],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self._configs: Dict[str, RateLimitConfig] = dict(configs)
        self._states: Dict[str, _ServiceState] = {
            name: _ServiceState() for name in self._configs
        }
        self._clock = clock
        self._sleep = sleep
        self._rand = rand

    # ------------------------------------------------------------------
    # Config lookup
    # ------------------------------------------------------------------

    def get_config(self, service: str) -> RateLimitConfig:
        config = self._configs.get(service)
        if config is None:
            raise ConfigurationError(f"No rate limit configuration found for service: {service}")
        return config

    @property
    def services(self) -> Tuple[str, ...]:
        return tuple(self._configs)

    # ------------------------------------------------------------------
    # Admission control
    # ------------------------------------------------------------------

    def _try_acquire(self, service: str, config: RateLimitConfig) -> float:
        """Record a request if the window has room.

        Returns 0 when the request was admitted, otherwise the number of
        seconds until the oldest timestamp leaves the window.
        """
        state = self._states[service]
        window = config.window_ms / 1000.0
        with state.lock:
            now = self._clock()
            while state.timestamps and now - state.timestamps[0] >= window:
                state.timestamps.popleft()

            if len(state.timestamps) < config.max_requests:
                state.timestamps.append(now)
                return 0.0

            return window - (now - state.timestamps[0])

    async def admit(self, service: str) -> None:
        """Suspend until ``service`` has a free slot, then take it."""
        config = self.get_config(service)

        while True:
            wait = self._try_acquire(service, config)
            if wait <= 0:
                return
            ratelimit_waits.labels(service=service).inc()
            logger.debug("Rate limit reached for %s, waiting %.0fms", service, wait * 1000)
            await self._sleep(wait)

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def run_with_retry(
        self,
        service: str,
        operation: Callable[[], Awaitable[Any]],
        retry_config: Optional[RetryConfig] = None,
    ) -> Any:
        """Run ``operation`` with admission control and exponential backoff.

        Every attempt waits for a slot first. A ``PermanentSourceError`` or
        ``ConfigurationError`` propagates immediately. Any other exception is
        retried until ``max_retries + 1`` attempts have been made, after which
        ``ExhaustedRetries`` is raised chained to the last error.
        """
        config = self.get_config(service)
        retry = retry_config or RetryConfig.from_rate_limit(config)
        state = self._states[service]
        attempts = retry.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            await self.admit(service)
            try:
                result = await operation()
            except (PermanentSourceError, ConfigurationError):
                raise
            except Exception as e:
                last_error = e
                if attempt == attempts - 1:
                    break

                base, delay = backoff_delay_ms(attempt, retry, self._rand)
                with state.lock:
                    state.backoff_ms = base
                ratelimit_retries.labels(service=service).inc()
                logger.warning(
                    "Attempt %d/%d failed for %s, retrying in %.0fms: %s",
                    attempt + 1, attempts, service, delay, e,
                )
                await self._sleep(delay / 1000.0)
                continue

            with state.lock:
                state.backoff_ms = 0.0
            return result

        ratelimit_exhausted.labels(service=service).inc()
        logger.error("%s: giving up after %d attempt(s): %s", service, attempts, last_error)
        raise ExhaustedRetries(service, attempts, last_error) from last_error

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_stats(self, service: str) -> Dict[str, float]:
        """Requests admitted in the current window and the last backoff delay."""
        config = self.get_config(service)
        state = self._states[service]
        window = config.window_ms / 1000.0
        with state.lock:
            now = self._clock()
            current = sum(1 for ts in state.timestamps if now - ts < window)
            return {
                "current_requests": current,
                "max_requests": config.max_requests,
                "backoff_delay_ms": state.backoff_ms,
            }

    def reset(self, service: Optional[str] = None) -> None:
        services = [service] if service else list(self._states)
        for name in services:
            self.get_config(name)
            state = self._states[name]
            with state.lock:
                state.timestamps.clear()
                state.backoff_ms = 0.0
