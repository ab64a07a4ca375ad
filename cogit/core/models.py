"""
cogit.core.models — Pydantic schemas for the COGIT object graph.

Every object in a repository is content addressed.  Trees and commits are
stored as canonical JSON (sorted keys, no whitespace), so their identity is:

    hash = SHA-256( canonical_json(object without its own hash) )

A commit's hash therefore changes if and only if its message, timestamp,
parent or tree changes.
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from cogit.core.errors import ServiceFailureKind


COGIT_DIR = ".cogit"


def discover_cogit_root(start: Path | None = None) -> Path | None:
    """
    Walk up from *start* (default: CWD) looking for a ``.cogit/`` directory,
    similar to how Git walks up to find ``.git/``.

    Returns the **project root** (parent of ``.cogit/``), or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / COGIT_DIR
        if candidate.is_dir():
            return current
        parent = current.parent
        if parent == current:
            break  # Reached filesystem root
        current = parent
    return None


def canonical_json(obj: Any) -> bytes:
    """Deterministic serialisation for hashing (sorted keys, no whitespace)."""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class EntryKind(StrEnum):
    BLOB = "blob"
    TREE = "tree"


class ChangeKind(StrEnum):
    """How a file changed between two commits."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class LineKind(StrEnum):
    CONTEXT = "context"
    ADDED = "added"
    REMOVED = "removed"


class FileState(StrEnum):
    """Working-tree status of a single path."""
    UNTRACKED = "untracked"
    MODIFIED = "modified"
    STAGED = "staged"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


class AskOutcome(StrEnum):
    ANSWER = "answer"
    NO_RELEVANT_CONTEXT = "no_relevant_context"
    SERVICE_FAILURE = "service_failure"


# ---------------------------------------------------------------------------
# Trees and commits
# ---------------------------------------------------------------------------

class TreeEntry(BaseModel):
    name: str
    kind: EntryKind
    hash: str


class Tree(BaseModel):
    """A single directory snapshot.  Entries are kept sorted by name."""
    entries: list[TreeEntry] = Field(default_factory=list)

    @field_validator("entries")
    @classmethod
    def _sorted_unique(cls, entries: list[TreeEntry]) -> list[TreeEntry]:
        names = [e.name for e in entries]
        if len(names) != len(set(names)):
            raise ValueError("tree contains duplicate entry names")
        return sorted(entries, key=lambda e: e.name)

    def canonical_bytes(self) -> bytes:
        return canonical_json([e.model_dump(mode="json") for e in self.entries])


class Commit(BaseModel):
    """
    A single node of the history.  ``hash`` is not part of the serialised
    object; it is the content address of the other fields.
    """
    hash: str = ""
    message: str
    timestamp: float = Field(default_factory=time.time)
    parent: str | None = None
    tree_hash: str

    def canonical_bytes(self) -> bytes:
        return canonical_json(self.model_dump(mode="json", exclude={"hash", "short_hash"}))

    def compute_hash(self) -> str:
        self.hash = hash_bytes(self.canonical_bytes())
        return self.hash

    @computed_field  # type: ignore[prop-decorator]
    @property
    def short_hash(self) -> str:
        return self.hash[:12] if self.hash else ""


# ---------------------------------------------------------------------------
# Staging area
# ---------------------------------------------------------------------------

class StagingEntry(BaseModel):
    path: str
    content_hash: str = ""
    size: int = 0
    staged_at: float = Field(default_factory=time.time)
    deleted: bool = False       # Stages removal of a tracked path


class StagingArea(BaseModel):
    entries: dict[str, StagingEntry] = Field(default_factory=dict)
    last_updated: float = Field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        return not self.entries


class FileStatus(BaseModel):
    path: str
    state: FileState
    working_hash: str | None = None
    staged_hash: str | None = None
    head_hash: str | None = None


# ---------------------------------------------------------------------------
# Diffs
# ---------------------------------------------------------------------------

class DiffLine(BaseModel):
    kind: LineKind
    text: str                               # Includes the line terminator, if any
    old_lineno: int | None = None
    new_lineno: int | None = None


class DiffHunk(BaseModel):
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[DiffLine] = Field(default_factory=list)

    def old_text(self) -> str:
        """Context + Removed lines in order: the old slice this hunk covers."""
        return "".join(l.text for l in self.lines if l.kind != LineKind.ADDED)

    def new_text(self) -> str:
        """Context + Added lines in order: the new slice this hunk covers."""
        return "".join(l.text for l in self.lines if l.kind != LineKind.REMOVED)


class FileChange(BaseModel):
    """A path-level change between two trees."""
    path: str
    change: ChangeKind
    old_path: str | None = None
    old_hash: str | None = None
    new_hash: str | None = None


class FileDiff(BaseModel):
    path: str
    change: ChangeKind
    old_path: str | None = None
    old_hash: str | None = None
    new_hash: str | None = None
    is_binary: bool = False
    hunks: list[DiffHunk] = Field(default_factory=list)
    patch: str = ""

    @property
    def added_lines(self) -> int:
        return sum(1 for h in self.hunks for l in h.lines if l.kind == LineKind.ADDED)

    @property
    def removed_lines(self) -> int:
        return sum(1 for h in self.hunks for l in h.lines if l.kind == LineKind.REMOVED)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class FileEmbedding(BaseModel):
    path: str
    content_hash: str
    vector: list[float]
    change: ChangeKind
    token_count: int = 0
    created_at: float = Field(default_factory=time.time)
    old_path: str | None = None
    file_size: int = 0
    patch: str = ""                         # The diff (or content) that was embedded


class EmbeddingIndex(BaseModel):
    """All file embeddings generated for one commit."""
    commit_hash: str
    model: str = ""
    dimension: int = 0
    files: list[FileEmbedding] = Field(default_factory=list)
    total_tokens: int = 0
    processing_ms: int = 0
    created_at: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def _single_dimension(self) -> "EmbeddingIndex":
        dims = {len(f.vector) for f in self.files}
        if len(dims) > 1:
            raise ValueError(f"embedding index mixes vector dimensions {sorted(dims)}")
        if dims:
            (dim,) = dims
            if self.dimension and self.dimension != dim:
                raise ValueError(f"declared dimension {self.dimension} != vector dimension {dim}")
            self.dimension = dim
        return self


class EmbeddedCommitSummary(BaseModel):
    commit_hash: str
    file_count: int
    total_tokens: int
    model: str = ""
    created_at: float


class EmbeddingFailure(BaseModel):
    path: str
    kind: ServiceFailureKind
    detail: str = ""


class EmbeddingResult(BaseModel):
    """What an embedding service returns for one input."""
    vector: list[float]
    token_count: int = 0


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class CommitResult(BaseModel):
    commit: Commit
    changes: list[FileChange] = Field(default_factory=list)
    embeddings_requested: bool = True
    embedding_index: EmbeddingIndex | None = None
    embedding_failures: list[EmbeddingFailure] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class RetrievedContext(BaseModel):
    """One FileEmbedding that cleared the similarity threshold."""
    commit_hash: str
    commit_message: str = ""
    commit_timestamp: float | None = None
    path: str
    change: ChangeKind
    similarity: float
    patch: str = ""


class AskResult(BaseModel):
    outcome: AskOutcome
    question: str
    answer: str = ""
    sources: list[RetrievedContext] = Field(default_factory=list)
    failure_kind: ServiceFailureKind | None = None
    detail: str = ""


class ExplainResult(BaseModel):
    outcome: AskOutcome
    commit: Commit
    diffs: list[FileDiff] = Field(default_factory=list)
    explanation: str = ""
    failure_kind: ServiceFailureKind | None = None
    detail: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CODE_EXTENSIONS: list[str] = [
    ".rs", ".py", ".js", ".ts", ".java", ".cpp", ".c", ".h",
    ".go", ".rb", ".php", ".swift", ".kt", ".scala", ".clj",
    ".sh", ".bash", ".sql", ".html", ".css", ".json", ".xml",
    ".yaml", ".yml", ".toml", ".md", ".txt",
]


class RepositoryConfig(BaseModel):
    """Per-repository settings stored in ``.cogit/config.json``."""
    version: str = "0.1.0"
    created: float = Field(default_factory=time.time)
    description: str = "COGIT repository - Cognition Git"
    default_branch: str = "main"

    # Services
    provider: str = "openai"
    embedding_model: str = ""               # Empty → provider default
    completion_model: str = ""
    base_url: str = ""

    # Embedding filter
    include_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_CODE_EXTENSIONS))
    max_file_size: int = 100_000            # bytes
    ignore_patterns: list[str] = Field(default_factory=list)

    # Diff / retrieval
    context_lines: int = 3
    top_k: int = 5
    similarity_threshold: float = 0.7
    max_context_chars_per_file: int = 4000

    # Outbound calls
    max_concurrency: int = 4
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


class CogitConfig(BaseModel):
    """Runtime configuration: where the repository lives plus resolved settings."""
    root: Path
    settings: RepositoryConfig = Field(default_factory=RepositoryConfig)
    api_key: str = ""

    @property
    def cogit_dir(self) -> Path:
        return self.root / COGIT_DIR

    @property
    def objects_dir(self) -> Path:
        return self.cogit_dir / "objects"

    @property
    def staging_path(self) -> Path:
        return self.cogit_dir / "index.json"

    @property
    def embeddings_dir(self) -> Path:
        return self.cogit_dir / "index"

    @property
    def refs_dir(self) -> Path:
        return self.cogit_dir / "refs" / "heads"

    @property
    def head_path(self) -> Path:
        return self.cogit_dir / "HEAD"

    @property
    def config_path(self) -> Path:
        return self.cogit_dir / "config.json"

    @classmethod
    def for_project(cls, project_root: Path | None = None, **overrides: Any) -> "CogitConfig":
        """
        Build a config anchored to a specific project directory.

        Resolution order (highest priority first):
          1. Explicit ``overrides`` keyword arguments
          2. Environment variables (COGIT_PROVIDER, COGIT_EMBEDDING_MODEL, …)
          3. The repository's ``.cogit/config.json``
          4. Built-in defaults

        If *project_root* is ``None``, :func:`discover_cogit_root` is used to
        walk up from CWD.  If still not found, CWD is used.
        """
        if project_root is None:
            project_root = discover_cogit_root()
        if project_root is None:
            project_root = Path.cwd()
        project_root = Path(project_root).resolve()

        settings = RepositoryConfig()
        config_file = project_root / COGIT_DIR / "config.json"
        if config_file.exists():
            from cogit.core.errors import SerializationError

            try:
                settings = RepositoryConfig.model_validate_json(config_file.read_text(encoding="utf-8"))
            except ValueError as exc:
                raise SerializationError(f"Malformed {config_file}: {exc}") from exc

        # Provider resolution
        from cogit.adapters import PROVIDER_DEFAULTS  # Lazy to avoid circular import

        env_map = {
            "provider": "COGIT_PROVIDER",
            "embedding_model": "COGIT_EMBEDDING_MODEL",
            "completion_model": "COGIT_COMPLETION_MODEL",
            "base_url": "COGIT_BASE_URL",
        }
        updates: dict[str, Any] = {}
        for field, env_name in env_map.items():
            value = os.getenv(env_name)
            if value:
                updates[field] = value
        api_key = overrides.pop("api_key", None)
        for field in list(overrides):
            if field in RepositoryConfig.model_fields:
                updates[field] = overrides.pop(field)
        if updates:
            settings = settings.model_copy(update=updates)

        # API key — resolution: explicit → provider env var → empty
        if api_key is None:
            env_key = PROVIDER_DEFAULTS.get(settings.provider, {}).get("env_key", "")
            api_key = os.getenv(env_key, "") if env_key else ""

        return cls(root=project_root, settings=settings, api_key=api_key, **overrides)
