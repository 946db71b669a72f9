"""
Error taxonomy shared by every pipeline component.

Rate-limit waits are not errors (they are backpressure) and therefore have
no class here.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all token-scout errors."""
    pass


class SourceError(PipelineError):
    """An upstream data source failed to answer."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class TransientSourceError(SourceError):
    """Network error, timeout, HTTP 5xx or 429. Eligible for retry."""
    pass


class PermanentSourceError(SourceError):
    """HTTP 4xx, not found or malformed payload. Never retried."""
    pass


class ExhaustedRetries(PipelineError):
    """Raised by the rate limiter after the last allowed attempt failed."""

    def __init__(self, service: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{service}: operation failed after {attempts} attempt(s): {last_error}"
        )
        self.service = service
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(PipelineError, ValueError):
    """Invalid filter spec, unknown service or invalid limiter settings."""
    pass


class PersistenceError(PipelineError):
    """The store could not write a record."""
    pass
