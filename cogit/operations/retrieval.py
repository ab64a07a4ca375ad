"""
cogit.operations.retrieval — Similarity search over stored embeddings and
retrieval-augmented answers.

Relevance rule: hits below ``similarity_threshold`` are discarded first, the
rest are ranked by descending similarity and capped at ``top_k``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Sequence

from cogit.adapters.base import BaseAdapter
from cogit.core.database import Repository
from cogit.core.errors import EmbeddingServiceError, ObjectNotFoundError, ServiceFailureKind
from cogit.core.models import AskOutcome, AskResult, EmbeddingIndex, RetrievedContext

logger = logging.getLogger("cogit.operations.retrieval")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    ``dot(a, b) / (|a| * |b|)``.

    Returns 0.0 when either vector has zero magnitude or the dimensions
    differ, never NaN.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = math.fsum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(math.fsum(x * x for x in a))
    norm_b = math.sqrt(math.fsum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def rank(
    query: Sequence[float],
    indexes: Sequence[EmbeddingIndex],
    threshold: float,
    top_k: int,
    commit_order: dict[str, int] | None = None,
) -> list[tuple[float, EmbeddingIndex, int]]:
    """
    Score every FileEmbedding in *indexes* against *query*.

    Returns ``(similarity, index, file_position)`` tuples that cleared
    *threshold*, best first, at most *top_k* of them.  Ties are broken by
    commit recency (per *commit_order*) and then by path.
    """
    order = commit_order or {}
    scored: list[tuple[float, EmbeddingIndex, int]] = []
    for index in indexes:
        for pos, fe in enumerate(index.files):
            score = cosine_similarity(query, fe.vector)
            if score >= threshold:
                scored.append((score, index, pos))
    scored.sort(key=lambda t: (
        -t[0],
        order.get(t[1].commit_hash, len(order)),
        t[1].commit_hash,
        t[1].files[t[2]].path,
    ))
    return scored[:max(0, top_k)]


def _compatible(index: EmbeddingIndex, dimension: int, model: str) -> bool:
    """Vectors are only comparable within one embedding model and dimension."""
    return index.dimension == dimension and (not index.model or index.model == model)


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "unknown date"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def build_context(sources: Sequence[RetrievedContext], max_chars_per_file: int) -> str:
    """Assemble the context document sent to the completion service."""
    blocks: list[str] = []
    for n, src in enumerate(sources, start=1):
        patch = src.patch
        if len(patch) > max_chars_per_file:
            patch = patch[:max_chars_per_file] + "\n[... truncated ...]\n"
        blocks.append(
            f"### Source {n}: commit {src.commit_hash[:12]} ({_fmt_ts(src.commit_timestamp)})\n"
            f"Message: {src.commit_message}\n"
            f"File: {src.path} ({src.change.value}, similarity {src.similarity:.3f})\n"
            f"```diff\n{patch.rstrip()}\n```"
        )
    return "\n\n".join(blocks)


class Retriever:
    """Answers questions from the repository's embedding indexes."""

    def __init__(self, repo: Repository) -> None:
        self.repo = repo
        self.settings = repo.settings

    def load_indexes(self, commits: Sequence[str] | None = None) -> list[EmbeddingIndex]:
        if commits is None:
            return self.repo.embeddings.load_all()
        wanted = {self.repo.resolve_commit(ref).hash for ref in commits}
        return [i for i in (self.repo.embeddings.load(h) for h in sorted(wanted)) if i is not None]

    def _commit_order(self) -> dict[str, int]:
        try:
            return {c.hash: n for n, c in enumerate(self.repo.iter_history())}
        except ObjectNotFoundError:
            return {}

    def _to_source(self, score: float, index: EmbeddingIndex, pos: int) -> RetrievedContext:
        fe = index.files[pos]
        message, ts = "", None
        try:
            commit = self.repo.get_commit(index.commit_hash)
            message, ts = commit.message, commit.timestamp
        except ObjectNotFoundError:
            logger.warning("Embedding index refers to missing commit %s", index.commit_hash[:12])
        return RetrievedContext(
            commit_hash=index.commit_hash,
            commit_message=message,
            commit_timestamp=ts,
            path=fe.path,
            change=fe.change,
            similarity=score,
            patch=fe.patch,
        )

    async def aask(
        self,
        question: str,
        adapter_factory,
        commits: Sequence[str] | None = None,
    ) -> AskResult:
        indexes = [i for i in self.load_indexes(commits) if i.files]
        if not indexes:
            return AskResult(
                outcome=AskOutcome.NO_RELEVANT_CONTEXT,
                question=question,
                detail="No embedding index exists for the selected commits.",
            )

        adapter: BaseAdapter | None = None
        try:
            adapter = adapter_factory()
            query = await adapter.embed(question)
            compatible = [i for i in indexes if _compatible(i, len(query.vector), adapter.embedding_model)]
            if not compatible:
                stored = sorted({f"{i.model or '?'} ({i.dimension} dims)" for i in indexes})
                detail = (
                    f"Query embedding from {adapter.embedding_model} has {len(query.vector)} dims; "
                    f"stored indexes use {', '.join(stored)}. Re-index or restore the embedding model."
                )
                logger.warning("ask: %s", detail)
                return AskResult(
                    outcome=AskOutcome.SERVICE_FAILURE,
                    question=question,
                    failure_kind=ServiceFailureKind.UNCONFIGURED,
                    detail=detail,
                )
            if len(compatible) < len(indexes):
                logger.warning(
                    "Skipping %d embedding index(es) built with another model", len(indexes) - len(compatible),
                )
            hits = rank(
                query.vector,
                compatible,
                threshold=self.settings.similarity_threshold,
                top_k=self.settings.top_k,
                commit_order=self._commit_order(),
            )
            if not hits:
                return AskResult(
                    outcome=AskOutcome.NO_RELEVANT_CONTEXT,
                    question=question,
                    detail=f"No stored change reached similarity {self.settings.similarity_threshold}.",
                )
            sources = [self._to_source(*hit) for hit in hits]
            context = build_context(sources, self.settings.max_context_chars_per_file)
            answer = await adapter.complete(question, context)
        except EmbeddingServiceError as exc:
            logger.warning("ask failed (%s): %s", exc.kind.value, exc)
            return AskResult(
                outcome=AskOutcome.SERVICE_FAILURE,
                question=question,
                failure_kind=exc.kind,
                detail=str(exc),
            )
        finally:
            if adapter is not None:
                await adapter.close()

        logger.info("Answered from %d source(s)", len(sources))
        return AskResult(outcome=AskOutcome.ANSWER, question=question, answer=answer, sources=sources)
