"""
cogit.operations.engine — The programmatic COGIT operations.

``init``, ``add``, ``status``, ``diff``, ``commit``, ``log``,
``list_embedded_commits``, ``explain`` and ``ask``.  Each call works against
an explicit :class:`Repository` value; nothing is cached between calls
except the repository handle itself.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Sequence

from cogit.adapters import adapter_from_config
from cogit.core.database import Repository
from cogit.core.diff import DiffEngine
from cogit.core.errors import (
    CogitError,
    EmbeddingServiceError,
    EmptyStagingError,
    IOFailure,
    ObjectNotFoundError,
    PathNotFoundError,
)
from cogit.core.models import (
    AskOutcome,
    AskResult,
    ChangeKind,
    CogitConfig,
    Commit,
    CommitResult,
    EmbeddedCommitSummary,
    ExplainResult,
    FileChange,
    FileDiff,
    FileState,
    FileStatus,
    RepositoryConfig,
    StagingEntry,
    hash_bytes,
)
from cogit.operations.embedding import AdapterFactory, EmbeddingPipeline
from cogit.operations.retrieval import Retriever

logger = logging.getLogger("cogit.operations")

EXPLAIN_QUESTION = (
    "Explain what this commit changes, file by file, and the likely intent behind it."
)


def tree_changes(
    old_files: dict[str, str],
    new_files: dict[str, str],
    renames: dict[str, str] | None = None,
) -> list[FileChange]:
    """
    Path-level changes between two flat trees, sorted by path.

    Renames are never inferred: only pairs listed in *renames*
    (``{old_path: new_path}``) whose old side disappeared and whose new side
    appeared are reported as ``renamed``.
    """
    added = {p for p in new_files if p not in old_files}
    deleted = {p for p in old_files if p not in new_files}
    changes: list[FileChange] = []

    for old_path, new_path in (renames or {}).items():
        if old_path in deleted and new_path in added:
            deleted.discard(old_path)
            added.discard(new_path)
            changes.append(FileChange(
                path=new_path,
                change=ChangeKind.RENAMED,
                old_path=old_path,
                old_hash=old_files[old_path],
                new_hash=new_files[new_path],
            ))
        else:
            logger.warning("Ignoring rename %s -> %s: not a delete/add pair", old_path, new_path)

    changes.extend(FileChange(path=p, change=ChangeKind.ADDED, new_hash=new_files[p]) for p in added)
    changes.extend(FileChange(path=p, change=ChangeKind.DELETED, old_hash=old_files[p]) for p in deleted)
    changes.extend(
        FileChange(path=p, change=ChangeKind.MODIFIED, old_hash=old_files[p], new_hash=new_files[p])
        for p in old_files.keys() & new_files.keys()
        if old_files[p] != new_files[p]
    )
    return sorted(changes, key=lambda c: c.path)


def _under(path: str, prefix: str | None) -> bool:
    if not prefix or prefix == ".":
        return True
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class CogitEngine:
    """
    Owns a :class:`Repository` and exposes the COGIT operations.

    *adapter_factory* builds the embedding/completion adapter on demand; by
    default it is derived from the repository configuration and credential.
    It may raise :class:`ServiceUnconfiguredError`, which the operations
    report instead of crashing.
    """

    def __init__(self, repo: Repository, adapter_factory: AdapterFactory | None = None) -> None:
        self.repo = repo
        self.settings = repo.settings
        self.diff_engine = DiffEngine(self.settings.context_lines)
        self._adapter_factory = adapter_factory or (lambda: adapter_from_config(repo.config))

    # -- Construction ------------------------------------------------------

    @classmethod
    def init(
        cls,
        root: Path,
        settings: RepositoryConfig | None = None,
        adapter_factory: AdapterFactory | None = None,
    ) -> "CogitEngine":
        return cls(Repository.init(root, settings), adapter_factory)

    @classmethod
    def open(cls, config: CogitConfig, adapter_factory: AdapterFactory | None = None) -> "CogitEngine":
        return cls(Repository.open(config), adapter_factory)

    # -- Working tree ------------------------------------------------------

    def _ignored(self, rel: str) -> bool:
        name = rel.rsplit("/", 1)[-1]
        return any(
            fnmatch.fnmatch(rel, pat) or fnmatch.fnmatch(name, pat)
            for pat in self.settings.ignore_patterns
        )

    def working_files(self, prefix: str | None = None) -> dict[str, Path]:
        """All tracked-candidate files on disk: ``{posix_path: absolute_path}``."""
        root = self.repo.root
        out: dict[str, Path] = {}
        try:
            stack = [root]
            while stack:
                current = stack.pop()
                for child in current.iterdir():
                    if child.name.startswith("."):  # .cogit, .git, dotfiles
                        continue
                    rel = child.relative_to(root).as_posix()
                    if self._ignored(rel):
                        continue
                    if child.is_dir() and not child.is_symlink():
                        stack.append(child)
                    elif child.is_file() and _under(rel, prefix):
                        out[rel] = child
        except OSError as exc:
            raise IOFailure(f"Cannot scan working tree: {exc}", str(root)) from exc
        return dict(sorted(out.items()))

    @staticmethod
    def _read(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise IOFailure(f"Cannot read {path}: {exc}", str(path)) from exc

    def _relative(self, path: str | Path) -> str:
        p = Path(path)
        if not p.is_absolute():
            p = self.repo.root / p
        try:
            rel = p.resolve().relative_to(self.repo.root)
        except ValueError as exc:
            raise PathNotFoundError(f"{path} is outside the repository", str(path)) from exc
        return rel.as_posix()

    def _head_files(self) -> dict[str, str]:
        return self.repo.commit_files(self.repo.head_commit())

    # ======================================================================
    # add
    # ======================================================================

    def add(self, paths: Iterable[str | Path]) -> list[StagingEntry]:
        """
        Stage files.  Directories expand recursively (only files that differ
        from the index are staged); a missing tracked path stages its
        deletion.  Nothing is saved if any path is invalid.
        """
        area = self.repo.staging.load()
        head = self._head_files()
        staged: list[StagingEntry] = []

        def _index_hash(rel: str) -> str | None:
            entry = area.entries.get(rel)
            if entry is not None:
                return None if entry.deleted else entry.content_hash
            return head.get(rel)

        def _stage_file(rel: str, abs_path: Path) -> None:
            data = self._read(abs_path)
            key = self.repo.objects.put(data)
            entry = StagingEntry(path=rel, content_hash=key, size=len(data))
            area.entries[rel] = entry
            staged.append(entry)

        def _stage_removal(rel: str) -> None:
            if rel in head:
                entry = StagingEntry(path=rel, deleted=True)
                area.entries[rel] = entry
                staged.append(entry)
            else:
                area.entries.pop(rel, None)  # Staged then deleted before commit

        for raw in paths:
            rel = self._relative(raw)
            abs_path = self.repo.root / rel
            if rel == "." or abs_path.is_dir():
                prefix = None if rel == "." else rel
                on_disk = self.working_files(prefix)
                for file_rel, file_abs in on_disk.items():
                    if _index_hash(file_rel) != hash_bytes(self._read(file_abs)):
                        _stage_file(file_rel, file_abs)
                tracked = set(head) | {p for p, e in area.entries.items() if not e.deleted}
                for gone in sorted(p for p in tracked if _under(p, prefix) and p not in on_disk):
                    _stage_removal(gone)
            elif abs_path.is_file():
                _stage_file(rel, abs_path)
            elif rel in head or rel in area.entries:
                _stage_removal(rel)
            else:
                raise PathNotFoundError(f"pathspec '{raw}' did not match any files", str(raw))

        area.last_updated = max([area.last_updated] + [e.staged_at for e in staged])
        self.repo.staging.save(area)
        logger.info("Staged %d path(s)", len(staged))
        return staged

    # ======================================================================
    # status
    # ======================================================================

    def status(self) -> list[FileStatus]:
        """Three-way status of every path known to disk, staging or HEAD."""
        area = self.repo.staging.load()
        head = self._head_files()
        disk = self.working_files()

        out: list[FileStatus] = []
        for path in sorted(set(disk) | set(area.entries) | set(head)):
            work = hash_bytes(self._read(disk[path])) if path in disk else None
            entry = area.entries.get(path)
            staged = entry.content_hash if entry and not entry.deleted else None
            head_hash = head.get(path)

            if work is None:
                state = FileState.STAGED if entry is not None and entry.deleted else FileState.DELETED
            elif entry is not None and not entry.deleted:
                if staged != work:
                    state = FileState.MODIFIED
                elif staged != head_hash:
                    state = FileState.STAGED
                else:
                    state = FileState.UNCHANGED
            elif entry is not None:
                state = FileState.MODIFIED  # Removal staged, file came back
            elif head_hash is not None:
                state = FileState.UNCHANGED if head_hash == work else FileState.MODIFIED
            else:
                state = FileState.UNTRACKED

            out.append(FileStatus(
                path=path, state=state, working_hash=work, staged_hash=staged, head_hash=head_hash,
            ))
        return out

    # ======================================================================
    # diff
    # ======================================================================

    def diff(self, path: str | Path | None = None, staged: bool = False) -> list[FileDiff]:
        """
        ``staged=False``: working tree against the index (staged entry, else
        HEAD), untracked files shown as additions.  ``staged=True``: staged
        entries against HEAD.
        """
        prefix = self._relative(path) if path is not None else None
        area = self.repo.staging.load()
        head = self._head_files()
        objects = self.repo.objects
        diffs: list[FileDiff] = []

        if staged:
            for rel in sorted(area.entries):
                if not _under(rel, prefix):
                    continue
                entry = area.entries[rel]
                old = objects.get(head[rel]) if rel in head else None
                new = None if entry.deleted else objects.get(entry.content_hash)
                if old == new or (old is None and new is None):
                    continue
                diffs.append(self.diff_engine.diff_file(rel, old, new))
            return diffs

        index_view = dict(head)
        for rel, entry in area.entries.items():
            if entry.deleted:
                index_view.pop(rel, None)
            else:
                index_view[rel] = entry.content_hash
        disk = self.working_files(prefix)
        for rel in sorted(set(disk) | {p for p in index_view if _under(p, prefix)}):
            old = objects.get(index_view[rel]) if rel in index_view else None
            new = self._read(disk[rel]) if rel in disk else None
            if old == new:
                continue
            diffs.append(self.diff_engine.diff_file(rel, old, new))
        return diffs

    # ======================================================================
    # commit
    # ======================================================================

    def commit(
        self,
        message: str,
        generate_embeddings: bool = True,
        renames: dict[str, str] | None = None,
    ) -> CommitResult:
        """
        Snapshot the staging area into a new commit on the current branch.

        The commit is durable (objects written, ref advanced, staging
        cleared) before any embedding work starts; embedding failures are
        reported on the result and never undo the commit.
        """
        area = self.repo.staging.load()
        if area.is_empty:
            raise EmptyStagingError()

        parent = self.repo.head_commit()
        parent_files = self.repo.commit_files(parent)
        files = dict(parent_files)
        for rel, entry in area.entries.items():
            if entry.deleted:
                files.pop(rel, None)
            elif not self.repo.objects.exists(entry.content_hash):
                raise ObjectNotFoundError(entry.content_hash, f"staged blob for {rel} is missing")
            else:
                files[rel] = entry.content_hash

        tree_hash = self.repo.store_tree(files)
        commit = Commit(message=message, parent=parent.hash if parent else None, tree_hash=tree_hash)
        self.repo.store_commit(commit)
        self.repo.refs.advance_head(commit.hash)
        self.repo.staging.clear()

        changes = tree_changes(parent_files, files, renames)
        result = CommitResult(commit=commit, changes=changes, embeddings_requested=generate_embeddings)
        logger.info("Committed %s (%d change(s))", commit.short_hash, len(changes))

        if generate_embeddings and changes:
            pipeline = EmbeddingPipeline(self.repo, self._adapter_factory, self.diff_engine)
            try:
                outcome = pipeline.generate(commit.hash, changes)
            except CogitError as exc:
                logger.error("Embedding generation aborted for %s: %s", commit.short_hash, exc)
                result.warnings.append(f"Embedding generation aborted: {exc}")
            else:
                result.embedding_index = outcome.index
                result.embedding_failures = outcome.failures
                result.skipped = outcome.skipped
                result.warnings.extend(outcome.warnings)
        return result

    # ======================================================================
    # log / embeddings
    # ======================================================================

    def log(self, limit: int | None = None) -> list[Commit]:
        out: list[Commit] = []
        for commit in self.repo.iter_history():
            if limit is not None and len(out) >= limit:
                break
            out.append(commit)
        return out

    def list_embedded_commits(self) -> list[EmbeddedCommitSummary]:
        return self.repo.embeddings.summaries()

    # ======================================================================
    # explain / ask
    # ======================================================================

    def commit_diffs(self, commit: Commit) -> list[FileDiff]:
        """Diffs introduced by *commit* relative to its parent."""
        parent = self.repo.get_commit(commit.parent) if commit.parent else None
        changes = tree_changes(self.repo.commit_files(parent), self.repo.commit_files(commit))
        objects = self.repo.objects
        return [
            self.diff_engine.diff_file(
                c.path,
                objects.get(c.old_hash) if c.old_hash else None,
                objects.get(c.new_hash) if c.new_hash else None,
                change=c.change,
                old_path=c.old_path,
            )
            for c in changes
        ]

    def _explain_context(self, commit: Commit, diffs: Sequence[FileDiff]) -> str:
        limit = self.settings.max_context_chars_per_file
        parts = [
            f"Commit {commit.hash}",
            f"Parent: {commit.parent or '(root commit)'}",
            f"Message: {commit.message}",
        ]
        index = self.repo.embeddings.load(commit.hash)
        if index is not None:
            parts.append(f"Embedded files: {len(index.files)} ({index.total_tokens} tokens)")
        for d in diffs:
            patch = d.patch if len(d.patch) <= limit else d.patch[:limit] + "\n[... truncated ...]\n"
            parts.append(f"\nFile: {d.path} ({d.change.value})\n```diff\n{patch.rstrip()}\n```")
        return "\n".join(parts)

    async def _aexplain(self, commit: Commit, diffs: list[FileDiff]) -> ExplainResult:
        adapter = None
        try:
            adapter = self._adapter_factory()
            text = await adapter.complete(EXPLAIN_QUESTION, self._explain_context(commit, diffs))
        except EmbeddingServiceError as exc:
            logger.warning("explain failed (%s): %s", exc.kind.value, exc)
            return ExplainResult(
                outcome=AskOutcome.SERVICE_FAILURE,
                commit=commit,
                diffs=diffs,
                failure_kind=exc.kind,
                detail=str(exc),
            )
        finally:
            if adapter is not None:
                await adapter.close()
        return ExplainResult(outcome=AskOutcome.ANSWER, commit=commit, diffs=diffs, explanation=text)

    def explain(self, ref: str = "HEAD") -> ExplainResult:
        """Ask the completion service to explain one commit's changes."""
        commit = self.repo.resolve_commit(ref)
        return asyncio.run(self._aexplain(commit, self.commit_diffs(commit)))

    def ask(self, question: str, commits: Sequence[str] | None = None) -> AskResult:
        """
        Answer *question* from the embedding indexes (optionally only those
        of *commits*).  The outcome is ``answer``, ``no_relevant_context`` or
        ``service_failure``.
        """
        retriever = Retriever(self.repo)
        return asyncio.run(retriever.aask(question, self._adapter_factory, commits))
