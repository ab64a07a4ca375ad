from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from cogit.adapters.base import BaseAdapter
from cogit.core.errors import EmbeddingServiceError
from cogit.core.models import EmbeddingResult, RepositoryConfig
from cogit.operations.engine import CogitEngine

VOCABULARY = ["login", "password", "database", "query", "hello", "world", "banana", "render"]


def keyword_vector(text: str) -> list[float]:
    """Bag-of-keywords embedding: deterministic and easy to reason about."""
    lowered = text.lower()
    return [float(lowered.count(word)) for word in VOCABULARY]


class FakeAdapter(BaseAdapter):
    """In-memory stand-in for an embedding + completion service."""

    provider = "fake"

    def __init__(
        self,
        failures: dict[str, EmbeddingServiceError] | None = None,
        delays: dict[str, float] | None = None,
        complete_error: EmbeddingServiceError | None = None,
    ) -> None:
        super().__init__(None, embedding_model="fake-embed", completion_model="fake-chat")  # type: ignore[arg-type]
        self.failures = failures or {}
        self.delays = delays or {}
        self.complete_error = complete_error
        self.embedded: list[str] = []
        self.completions: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = 0

    async def embed(self, text: str) -> EmbeddingResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for path, delay in self.delays.items():
                if f"File: {path}\n" in text:
                    await asyncio.sleep(delay)
            for path, error in self.failures.items():
                if f"File: {path}\n" in text:
                    raise error
            self.embedded.append(text)
            return EmbeddingResult(vector=keyword_vector(text), token_count=len(text.split()))
        finally:
            self.in_flight -= 1

    async def complete(self, question: str, context: str) -> str:
        if self.complete_error is not None:
            raise self.complete_error
        self.completions.append((question, context))
        return f"answer to: {question}"

    async def close(self) -> None:
        self.closed += 1


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def engine(project: Path, fake_adapter: FakeAdapter) -> CogitEngine:
    return CogitEngine.init(project, RepositoryConfig(retry_base_delay=0.0), lambda: fake_adapter)


def write(root: Path, rel: str, content: str | bytes) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_bytes(content.encode("utf-8"))
    return path
