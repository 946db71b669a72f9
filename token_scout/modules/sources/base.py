"""
Base class for upstream data source clients.

Every adapter owns one lazily created ``httpx.AsyncClient`` and goes through
``_get_json`` so transport failures are mapped onto the pipeline's error
taxonomy in exactly one place:

    timeout / connection error / HTTP 5xx / HTTP 429  -> TransientSourceError
    other HTTP 4xx / non-JSON body                    -> PermanentSourceError

Adapters do no retrying of their own; the rate limiter owns that.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from token_scout.shared.errors import PermanentSourceError, TransientSourceError

logger = logging.getLogger(__name__)


class SourceClient(ABC):
    """Contract: ``fetch(address)`` returns a validated model or raises a SourceError."""

    name: str = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json", **self.headers},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        client = self._get_client()
        try:
            resp = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientSourceError(self.name, f"timeout on {path}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(self.name, f"transport error on {path}: {e}") from e

        status = resp.status_code
        if status == 429 or status >= 500:
            raise TransientSourceError(self.name, f"HTTP {status} on {path}", status_code=status)
        if status >= 400:
            raise PermanentSourceError(self.name, f"HTTP {status} on {path}", status_code=status)

        try:
            return resp.json()
        except ValueError as e:
            raise PermanentSourceError(self.name, f"invalid JSON from {path}") from e

    def _build(self, model: type, **fields: Any) -> BaseModel:
        """Instantiate a result model, turning validation errors into permanent failures."""
        try:
            return model(**fields)
        except ValidationError as e:
            raise PermanentSourceError(self.name, f"malformed payload: {e.error_count()} error(s)") from e

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch(self, address: str) -> BaseModel:
        """Fetch and normalize this source's view of one token."""

    @abstractmethod
    async def healthcheck(self) -> bool:
        """Cheap liveness probe; never raises."""

    async def _probe(self, path: str, params: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self._get_json(path, params)
            return True
        except Exception as e:
            logger.warning("%s health check failed: %s", self.name, e)
            return False


def to_float(value: Any, default: float = 0.0) -> float:
    """Upstream APIs send numbers as strings, numbers or nulls."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return default if number != number else number
