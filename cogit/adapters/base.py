"""
cogit.adapters.base — Abstract base class for embedding / completion providers.

Every adapter turns text into a fixed-dimension vector and answers a question
from a context document.  HTTP failures are mapped onto the COGIT service
error kinds here so the operations layer never sees raw ``httpx`` errors.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx

from cogit.core.errors import (
    ServiceRateLimitedError,
    ServiceTransportError,
    ServiceUnauthorizedError,
)
from cogit.core.models import EmbeddingResult

logger = logging.getLogger("cogit.adapters")

# Transient error retry settings
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0  # seconds, doubles each retry

SYSTEM_PROMPT = (
    "You answer questions about the history of a source code repository. "
    "Use only the commit messages and diffs in the provided context. "
    "Cite commit hashes and file paths when they support the answer. "
    "If the context does not contain the answer, say so."
)


def make_timeout(seconds: float) -> httpx.Timeout:
    return httpx.Timeout(seconds, connect=min(seconds, 10.0))


class BaseAdapter(ABC):
    """
    Interface contract for all providers.

    Subclasses must implement ``embed()``, ``complete()`` and ``close()``.
    """

    provider: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        embedding_model: str,
        completion_model: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
    ) -> None:
        self._client = client
        self.embedding_model = embedding_model
        self.completion_model = completion_model
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

    @abstractmethod
    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding vector and token usage for *text*."""
        ...

    @abstractmethod
    async def complete(self, question: str, context: str) -> str:
        """Answer *question* from *context*."""
        ...

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BaseAdapter":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        POST *body* and return the decoded JSON response.

        Timeouts, connection errors, 429 and 5xx are retried with exponential
        backoff; anything left after the last attempt is raised as a
        service error of the matching kind.
        """
        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            delay = self._retry_base_delay * (2 ** attempt)
            try:
                resp = await self._client.post(url, json=body)
            except httpx.TimeoutException as exc:
                last_exc = ServiceTransportError(f"{self.provider} request timed out: {exc}")
            except httpx.TransportError as exc:
                last_exc = ServiceTransportError(f"{self.provider} connection failed: {exc}")
            else:
                if resp.status_code in (401, 403):
                    raise ServiceUnauthorizedError(
                        f"{self.provider} rejected the credential (HTTP {resp.status_code})",
                        status_code=resp.status_code,
                    )
                if resp.status_code == 429:
                    last_exc = ServiceRateLimitedError(
                        f"{self.provider} rate limit exceeded", status_code=429,
                    )
                elif resp.status_code in TRANSIENT_STATUS_CODES:
                    last_exc = ServiceTransportError(
                        f"{self.provider} HTTP {resp.status_code}: {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                elif resp.status_code >= 400:
                    raise ServiceTransportError(
                        f"{self.provider} HTTP {resp.status_code}: {resp.text[:200]}",
                        status_code=resp.status_code,
                    )
                else:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise ServiceTransportError(f"{self.provider} returned invalid JSON") from exc

            if attempt < self._max_retries:
                logger.warning(
                    "%s %s (attempt %d/%d) — retrying in %.1fs…",
                    self.provider, last_exc, attempt + 1, self._max_retries + 1, delay,
                )
                await asyncio.sleep(delay)

        assert last_exc is not None
        raise last_exc
