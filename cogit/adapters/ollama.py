"""
cogit.adapters.ollama — Ollama adapter for local models.

Embeddings:  POST /api/embed   {model, input}  → {embeddings: [[...]], prompt_eval_count}
Answers:     POST /api/chat    {model, messages, stream: false}

No API key is needed; the server is expected at ``http://localhost:11434``.
"""

from __future__ import annotations

import logging

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

logger = logging.getLogger("cogit.adapters.ollama")

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_COMPLETION_MODEL = "qwen2.5-coder:7b"


class OllamaAdapter(BaseAdapter):
    provider = "ollama"

    def __init__(
        self,
        api_key: str = "",  # unused, accepted for interface consistency
        embedding_model: str = DEFAULT_EMBEDDING_MODEL,
        completion_model: str = DEFAULT_COMPLETION_MODEL,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = 120.0,  # Local models can be slow on first load
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Content-Type": "application/json"},
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
        data = await self._post_json("/api/embed", {"model": self.embedding_model, "input": text})
        try:
            vector = [float(x) for x in data["embeddings"][0]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ServiceTransportError("Ollama embed response is missing embeddings[0]") from exc
        return EmbeddingResult(vector=vector, token_count=int(data.get("prompt_eval_count") or 0))

    async def complete(self, question: str, context: str) -> str:
        data = await self._post_json(
            "/api/chat",
            {
                "model": self.completion_model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {question}"},
                ],
                "stream": False,
                "keep_alive": "10m",
            },
        )
        try:
            return (data["message"]["content"] or "").strip()
        except (KeyError, TypeError) as exc:
            raise ServiceTransportError("Ollama chat response has no message") from exc
