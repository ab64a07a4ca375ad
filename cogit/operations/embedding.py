"""
cogit.operations.embedding — Per-commit embedding generation.

For each file a commit changed, the unit of analysis (full content for new
files, the unified patch otherwise) is filtered, sent to the embedding
service through a bounded worker pool, and collected into one
:class:`EmbeddingIndex`.  Per-file failures are recorded and never cancel
sibling requests; only successes are persisted, in the original file order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, assert_never

from cogit.adapters.base import BaseAdapter
from cogit.core.database import Repository
from cogit.core.diff import DiffEngine, is_binary
from cogit.core.errors import EmbeddingServiceError, ServiceFailureKind
from cogit.core.models import (
    ChangeKind,
    EmbeddingFailure,
    EmbeddingIndex,
    EmbeddingResult,
    FileChange,
    FileDiff,
    FileEmbedding,
)

logger = logging.getLogger("cogit.operations.embedding")

AdapterFactory = Callable[[], BaseAdapter]


@dataclass
class EmbeddingJob:
    order: int
    change: FileChange
    diff: FileDiff
    text: str
    content_hash: str
    file_size: int


@dataclass
class EmbeddingOutcome:
    index: EmbeddingIndex | None = None
    failures: list[EmbeddingFailure] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EmbeddingPipeline:
    """Turns a commit's file changes into a persisted EmbeddingIndex."""

    def __init__(self, repo: Repository, adapter_factory: AdapterFactory, diff_engine: DiffEngine | None = None) -> None:
        self.repo = repo
        self.settings = repo.settings
        self._adapter_factory = adapter_factory
        self._diff = diff_engine or DiffEngine(self.settings.context_lines)

    # -- Filtering ---------------------------------------------------------

    def skip_reason(self, path: str, old: bytes | None, new: bytes | None) -> str | None:
        """Why *path* is excluded from embedding, or ``None`` if it is included."""
        suffix = PurePosixPath(path).suffix.lower()
        allowed = {e.lower() for e in self.settings.include_extensions}
        if suffix not in allowed:
            return f"extension '{suffix or '(none)'}' not in allow-list"
        size = max(len(old or b""), len(new or b""))
        if size > self.settings.max_file_size:
            return f"{size} bytes exceeds max_file_size {self.settings.max_file_size}"
        if is_binary(old or b"") or is_binary(new or b""):
            return "binary content"
        return None

    def _load(self, blob_hash: str | None) -> bytes | None:
        return self.repo.objects.get(blob_hash) if blob_hash else None

    def prepare(self, changes: list[FileChange]) -> tuple[list[EmbeddingJob], list[str]]:
        """Diff and filter *changes*; return jobs plus skipped-path notes."""
        jobs: list[EmbeddingJob] = []
        skipped: list[str] = []
        for change in changes:
            old = self._load(change.old_hash)
            new = self._load(change.new_hash)
            reason = self.skip_reason(change.path, old, new)
            if reason:
                skipped.append(f"{change.path}: {reason}")
                logger.info("Skipping %s (%s)", change.path, reason)
                continue

            diff = self._diff.diff_file(change.path, old, new, change=change.change, old_path=change.old_path)
            match change.change:
                case ChangeKind.ADDED:
                    body = (new or b"").decode("utf-8")
                    content_hash = change.new_hash or ""
                case ChangeKind.MODIFIED | ChangeKind.RENAMED:
                    body = diff.patch
                    content_hash = change.new_hash or ""
                case ChangeKind.DELETED:
                    body = diff.patch
                    content_hash = change.old_hash or ""
                case _:
                    assert_never(change.change)

            header = f"File: {change.path}\nChange: {change.change.value}\n"
            if change.old_path:
                header += f"Renamed from: {change.old_path}\n"
            jobs.append(EmbeddingJob(
                order=len(jobs),
                change=change,
                diff=diff,
                text=f"{header}\n{body}",
                content_hash=content_hash,
                file_size=len(new if new is not None else old or b""),
            ))
        return jobs, skipped

    # -- Generation --------------------------------------------------------

    async def _embed_all(
        self, adapter: BaseAdapter, jobs: list[EmbeddingJob],
    ) -> list[EmbeddingResult | BaseException]:
        sem = asyncio.Semaphore(max(1, self.settings.max_concurrency))

        async def _one(job: EmbeddingJob) -> EmbeddingResult:
            async with sem:
                logger.debug("Embedding %s", job.change.path)
                return await adapter.embed(job.text)

        return await asyncio.gather(*(_one(j) for j in jobs), return_exceptions=True)

    async def agenerate(self, commit_hash: str, changes: list[FileChange]) -> EmbeddingOutcome:
        outcome = EmbeddingOutcome()
        jobs, outcome.skipped = self.prepare(changes)
        if not jobs:
            return outcome

        started = time.perf_counter()
        try:
            adapter = self._adapter_factory()
        except EmbeddingServiceError as exc:
            outcome.failures = [
                EmbeddingFailure(path=j.change.path, kind=exc.kind, detail=str(exc)) for j in jobs
            ]
            outcome.warnings.append(f"Embeddings not generated ({exc.kind.value}): {exc}")
            logger.warning("Embedding service unavailable: %s", exc)
            return outcome

        try:
            results = await self._embed_all(adapter, jobs)
        finally:
            await adapter.close()

        embeddings: list[tuple[int, FileEmbedding]] = []
        dimension: int | None = None
        for job, result in zip(jobs, results):
            if isinstance(result, EmbeddingServiceError):
                outcome.failures.append(
                    EmbeddingFailure(path=job.change.path, kind=result.kind, detail=str(result))
                )
                logger.warning("Embedding failed for %s: %s", job.change.path, result)
                continue
            if isinstance(result, Exception):
                outcome.failures.append(
                    EmbeddingFailure(path=job.change.path, kind=ServiceFailureKind.TRANSPORT, detail=repr(result))
                )
                logger.exception("Unexpected error embedding %s", job.change.path, exc_info=result)
                continue
            if isinstance(result, BaseException):
                raise result  # Cancellation / interrupt
            if dimension is None:
                dimension = len(result.vector)
            if not result.vector or len(result.vector) != dimension:
                outcome.failures.append(EmbeddingFailure(
                    path=job.change.path,
                    kind=ServiceFailureKind.TRANSPORT,
                    detail=f"vector dimension {len(result.vector)} != {dimension}",
                ))
                continue
            embeddings.append((job.order, FileEmbedding(
                path=job.change.path,
                content_hash=job.content_hash,
                vector=result.vector,
                change=job.change.change,
                token_count=result.token_count,
                old_path=job.change.old_path,
                file_size=job.file_size,
                patch=job.diff.patch,
            )))

        embeddings.sort(key=lambda pair: pair[0])
        files = [fe for _, fe in embeddings]
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        if outcome.failures:
            kinds = sorted({f.kind.value for f in outcome.failures})
            outcome.warnings.append(
                f"Embedding failed for {len(outcome.failures)} of {len(jobs)} file(s) ({', '.join(kinds)})"
            )

        if files:
            outcome.index = EmbeddingIndex(
                commit_hash=commit_hash,
                model=adapter.embedding_model,
                files=files,
                total_tokens=sum(f.token_count for f in files),
                processing_ms=elapsed_ms,
            )
            self.repo.embeddings.save(outcome.index)
        return outcome

    def generate(self, commit_hash: str, changes: list[FileChange]) -> EmbeddingOutcome:
        return asyncio.run(self.agenerate(commit_hash, changes))
