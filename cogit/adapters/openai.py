"""
cogit.adapters.openai — OpenAI embeddings + chat completions.

Embeddings:  POST /v1/embeddings          {model, input}
Answers:     POST /v1/chat/completions    {model, messages}

Default models: ``text-embedding-3-small`` (1536 dimensions) and
``gpt-4o-mini``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from cogit.adapters.base import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    SYSTEM_PROMPT,
    BaseAdapter,
    make_timeout,
)
from cogit.core.errors import ServiceTransportError
from cogit.core.models import EmbeddingResult

logger = logging.getLogger("cogit.adapters.openai")

OPENAI_BASE_URL = "https://api.openai.com"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_COMPLETION_MODEL = "gpt-4o-mini"


class OpenAIAdapter(BaseAdapter):
    """Talks to the OpenAI REST API (or any server speaking the same wire format)."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        completion_model: str = DEFAULT_COMPLETION_MODEL,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=make_timeout(timeout),
            transport=transport,
        )
        super().__init__(
            client,
            embedding_model=embedding_model,
            completion_model=completion_model,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
        )

    async def embed(self, text: str) -> EmbeddingResult:
        data = await self._post_json(
            "/v1/embeddings",
            {"model": self.embedding_model, "input": text},
        )
        try:
            vector = [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ServiceTransportError("OpenAI embedding response is missing data[0].embedding") from exc
        tokens = int((data.get("usage") or {}).get("total_tokens") or 0)
        logger.debug("OpenAI embedding: dim=%d tokens=%d", len(vector), tokens)
        return EmbeddingResult(vector=vector, token_count=tokens)

    async def complete(self, question: str, context: str) -> str:
        body: dict[str, Any] = {
            "model": self.completion_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {question}"},
            ],
            "temperature": 0.2,
        }
        data = await self._post_json("/v1/chat/completions", body)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ServiceTransportError("OpenAI completion response has no choices") from exc
        return (content or "").strip()
