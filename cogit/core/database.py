"""
cogit.core.database — On-disk repository storage.

Layout (relative to the project root):

    .cogit/objects/<hash[:2]>/<hash[2:]>   Content-addressable objects (zstd)
    .cogit/index.json                      Staging area
    .cogit/index/<commit-hash>.json        Embedding index per commit
    .cogit/refs/heads/<branch>             Branch pointer (commit hash)
    .cogit/HEAD                            Current branch or detached commit
    .cogit/config.json                     Repository configuration

``Repository`` is the façade the operations layer works against; it is an
explicit value opened once per command and carries no global state.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterator

import zstandard as zstd
from pydantic import ValidationError

from cogit.core.errors import (
    CorruptObjectError,
    IOFailure,
    NotARepositoryError,
    ObjectNotFoundError,
    RepositoryExistsError,
    SerializationError,
)
from cogit.core.models import (
    COGIT_DIR,
    CogitConfig,
    Commit,
    EmbeddedCommitSummary,
    EmbeddingIndex,
    EntryKind,
    RepositoryConfig,
    StagingArea,
    Tree,
    TreeEntry,
    hash_bytes,
)

logger = logging.getLogger("cogit.database")

_HEX = re.compile(r"^[0-9a-f]+$")
MIN_PREFIX_LEN = 4


def atomic_write(path: Path, data: bytes) -> None:
    """Write *data* to *path* via a temp file + ``os.replace``."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as exc:
        raise IOFailure(f"Cannot write {path}: {exc}", str(path)) from exc


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise IOFailure(f"Cannot read {path}: {exc}", str(path)) from exc


# ---------------------------------------------------------------------------
# Content-Addressable Storage
# ---------------------------------------------------------------------------

class ObjectStore:
    """
    Git-style content-addressable object store.

    Objects are stored as:  .cogit/objects/<hash[:2]>/<hash[2:]>
    All objects are Zstandard-compressed before writing and re-hashed after
    reading, so on-disk damage surfaces as :class:`CorruptObjectError`.
    """

    ZSTD_LEVEL = 6

    def __init__(self, objects_dir: Path) -> None:
        self._root = objects_dir
        self._cctx = zstd.ZstdCompressor(level=self.ZSTD_LEVEL)
        self._dctx = zstd.ZstdDecompressor()

    def _path_for(self, key: str) -> Path:
        return self._root / key[:2] / key[2:]

    def put(self, data: bytes) -> str:
        """Store raw bytes, returning the SHA-256 content address."""
        key = hash_bytes(data)
        path = self._path_for(key)
        if path.exists():
            return key  # Deduplication — already stored
        atomic_write(path, self._cctx.compress(data))
        logger.debug("Stored object %s (%d bytes)", key[:12], len(data))
        return key

    def get(self, key: str) -> bytes:
        """Retrieve, decompress and verify an object by its SHA-256 key."""
        if len(key) != 64 or not _HEX.match(key):
            raise ObjectNotFoundError(key, "invalid object hash")
        path = self._path_for(key)
        if not path.exists():
            raise ObjectNotFoundError(key)
        raw = _read_bytes(path)
        try:
            data = self._dctx.decompressobj().decompress(raw)
        except zstd.ZstdError as exc:
            logger.error("Object %s failed to decompress: %s", key[:12], exc)
            raise CorruptObjectError(key) from exc
        actual = hash_bytes(data)
        if actual != key:
            logger.error("Object %s hashes to %s", key[:12], actual[:12])
            raise CorruptObjectError(key, actual)
        return data

    def exists(self, key: str) -> bool:
        return len(key) == 64 and self._path_for(key).exists()

    def keys_with_prefix(self, prefix: str) -> list[str]:
        """Return every stored key that starts with *prefix* (≥ 2 chars)."""
        bucket = self._root / prefix[:2]
        if len(prefix) < 2 or not bucket.is_dir():
            return []
        rest = prefix[2:]
        return sorted(
            prefix[:2] + p.name
            for p in bucket.iterdir()
            if p.is_file() and p.name.startswith(rest) and not p.name.startswith(".")
        )


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------

class RefStore:
    """HEAD plus ``refs/heads/<branch>`` pointers."""

    REF_PREFIX = "ref: refs/heads/"

    def __init__(self, head_path: Path, refs_dir: Path) -> None:
        self._head = head_path
        self._refs = refs_dir

    def read_head(self) -> str:
        return _read_bytes(self._head).decode("utf-8").strip()

    def set_head_branch(self, branch: str) -> None:
        atomic_write(self._head, f"{self.REF_PREFIX}{branch}\n".encode("utf-8"))

    @property
    def current_branch(self) -> str | None:
        head = self.read_head()
        if head.startswith(self.REF_PREFIX):
            return head[len(self.REF_PREFIX):]
        return None  # Detached

    def branch_hash(self, branch: str) -> str | None:
        path = self._refs / branch
        if not path.exists():
            return None  # Unborn branch
        value = _read_bytes(path).decode("utf-8").strip()
        return value or None

    def head_hash(self) -> str | None:
        branch = self.current_branch
        if branch is None:
            return self.read_head() or None
        return self.branch_hash(branch)

    def advance_head(self, commit_hash: str) -> None:
        branch = self.current_branch
        if branch is None:
            atomic_write(self._head, f"{commit_hash}\n".encode("utf-8"))
        else:
            atomic_write(self._refs / branch, f"{commit_hash}\n".encode("utf-8"))


# ---------------------------------------------------------------------------
# Staging area persistence
# ---------------------------------------------------------------------------

class StagingStore:
    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> StagingArea:
        if not self._path.exists():
            return StagingArea()
        raw = _read_bytes(self._path)
        try:
            return StagingArea.model_validate_json(raw)
        except ValidationError as exc:
            raise SerializationError(f"Malformed staging area {self._path}: {exc}") from exc

    def save(self, area: StagingArea) -> None:
        atomic_write(self._path, area.model_dump_json(indent=2).encode("utf-8"))

    def clear(self) -> None:
        self.save(StagingArea())


# ---------------------------------------------------------------------------
# Embedding index persistence
# ---------------------------------------------------------------------------

class EmbeddingStore:
    """One JSON document per embedded commit."""

    def __init__(self, index_dir: Path) -> None:
        self._dir = index_dir

    def _path_for(self, commit_hash: str) -> Path:
        return self._dir / f"{commit_hash}.json"

    def save(self, index: EmbeddingIndex) -> Path:
        path = self._path_for(index.commit_hash)
        atomic_write(path, index.model_dump_json(indent=2).encode("utf-8"))
        logger.info(
            "Saved embedding index for %s (%d files, %d tokens)",
            index.commit_hash[:12], len(index.files), index.total_tokens,
        )
        return path

    def exists(self, commit_hash: str) -> bool:
        return self._path_for(commit_hash).exists()

    def load(self, commit_hash: str) -> EmbeddingIndex | None:
        path = self._path_for(commit_hash)
        if not path.exists():
            return None
        try:
            return EmbeddingIndex.model_validate_json(_read_bytes(path))
        except ValidationError as exc:
            raise SerializationError(f"Malformed embedding index {path}: {exc}") from exc

    def commit_hashes(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json") if p.is_file())

    def load_all(self) -> list[EmbeddingIndex]:
        indexes = [self.load(h) for h in self.commit_hashes()]
        return [i for i in indexes if i is not None]

    def summaries(self) -> list[EmbeddedCommitSummary]:
        out = [
            EmbeddedCommitSummary(
                commit_hash=i.commit_hash,
                file_count=len(i.files),
                total_tokens=i.total_tokens,
                model=i.model,
                created_at=i.created_at,
            )
            for i in self.load_all()
        ]
        return sorted(out, key=lambda s: (-s.created_at, s.commit_hash))


# ---------------------------------------------------------------------------
# Repository — unified façade
# ---------------------------------------------------------------------------

class Repository:
    """
    Unified façade over the object store, refs, staging area and embedding
    indexes of one repository.
    """

    def __init__(self, config: CogitConfig) -> None:
        self.config = config
        self.root = config.root
        self.objects = ObjectStore(config.objects_dir)
        self.refs = RefStore(config.head_path, config.refs_dir)
        self.staging = StagingStore(config.staging_path)
        self.embeddings = EmbeddingStore(config.embeddings_dir)

    @property
    def settings(self) -> RepositoryConfig:
        return self.config.settings

    # -- Lifecycle ---------------------------------------------------------

    @classmethod
    def init(cls, root: Path, settings: RepositoryConfig | None = None, api_key: str = "") -> "Repository":
        """Create ``.cogit/`` under *root* and return the opened repository."""
        root = Path(root).resolve()
        cogit_dir = root / COGIT_DIR
        if cogit_dir.exists():
            raise RepositoryExistsError(str(root))
        config = CogitConfig(root=root, settings=settings or RepositoryConfig(), api_key=api_key)
        try:
            for d in (config.objects_dir, config.refs_dir, config.embeddings_dir):
                d.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"Cannot create {cogit_dir}: {exc}", str(cogit_dir)) from exc
        repo = cls(config)
        repo.refs.set_head_branch(config.settings.default_branch)
        atomic_write(config.config_path, config.settings.model_dump_json(indent=2).encode("utf-8"))
        repo.staging.clear()
        logger.info("Initialised COGIT repository at %s", cogit_dir)
        return repo

    @classmethod
    def open(cls, config: CogitConfig) -> "Repository":
        """Open an existing repository described by *config*."""
        if not config.cogit_dir.is_dir() or not config.head_path.exists():
            raise NotARepositoryError(str(config.root))
        return cls(config)

    # -- Trees -------------------------------------------------------------

    def store_tree(self, files: dict[str, str]) -> str:
        """
        Fold a flat ``{posix_path: blob_hash}`` map into nested trees,
        store every tree, and return the root tree hash.
        """
        blobs: dict[str, str] = {}
        subdirs: dict[str, dict[str, str]] = {}
        for path, blob_hash in files.items():
            head, sep, rest = path.partition("/")
            if sep:
                subdirs.setdefault(head, {})[rest] = blob_hash
            else:
                blobs[head] = blob_hash
        clash = set(blobs) & set(subdirs)
        if clash:
            raise SerializationError(f"Path is both a file and a directory: {sorted(clash)[0]}")

        entries = [TreeEntry(name=n, kind=EntryKind.BLOB, hash=h) for n, h in blobs.items()]
        entries.extend(
            TreeEntry(name=n, kind=EntryKind.TREE, hash=self.store_tree(sub))
            for n, sub in subdirs.items()
        )
        return self.objects.put(Tree(entries=entries).canonical_bytes())

    def load_tree(self, tree_hash: str) -> Tree:
        data = self.objects.get(tree_hash)
        try:
            return Tree.model_validate_json(b'{"entries":' + data + b"}")
        except ValidationError as exc:
            raise SerializationError(f"Object {tree_hash[:12]} is not a tree: {exc}") from exc

    def flatten_tree(self, tree_hash: str, prefix: str = "") -> dict[str, str]:
        """Inverse of :meth:`store_tree`: ``{posix_path: blob_hash}``."""
        out: dict[str, str] = {}
        for entry in self.load_tree(tree_hash).entries:
            path = f"{prefix}{entry.name}"
            if entry.kind == EntryKind.TREE:
                out.update(self.flatten_tree(entry.hash, prefix=f"{path}/"))
            else:
                out[path] = entry.hash
        return out

    # -- Commits -----------------------------------------------------------

    def store_commit(self, commit: Commit) -> str:
        key = self.objects.put(commit.canonical_bytes())
        commit.hash = key
        logger.info("Stored commit %s %s", commit.short_hash, commit.message[:80])
        return key

    def get_commit(self, commit_hash: str) -> Commit:
        data = self.objects.get(commit_hash)
        try:
            commit = Commit.model_validate_json(data)
        except ValidationError as exc:
            raise SerializationError(f"Object {commit_hash[:12]} is not a commit: {exc}") from exc
        commit.hash = commit_hash
        return commit

    def resolve_commit(self, ref: str) -> Commit:
        """Resolve ``HEAD``, a full hash, or a unique hash prefix to a commit."""
        ref = ref.strip().lower()
        if ref == "head":
            head = self.refs.head_hash()
            if head is None:
                raise ObjectNotFoundError("HEAD", "no commits yet")
            return self.get_commit(head)
        if len(ref) < MIN_PREFIX_LEN or not _HEX.match(ref):
            raise ObjectNotFoundError(ref, "invalid commit reference")
        if len(ref) == 64:
            return self.get_commit(ref)
        matches = []
        for key in self.objects.keys_with_prefix(ref):
            try:
                matches.append(self.get_commit(key))
            except SerializationError:
                continue  # Blob or tree sharing the prefix
        if not matches:
            raise ObjectNotFoundError(ref)
        if len(matches) > 1:
            raise ObjectNotFoundError(ref, "ambiguous commit prefix")
        return matches[0]

    def head_commit(self) -> Commit | None:
        head = self.refs.head_hash()
        return self.get_commit(head) if head else None

    def commit_files(self, commit: Commit | None) -> dict[str, str]:
        if commit is None:
            return {}
        return self.flatten_tree(commit.tree_hash)

    def iter_history(self, start: str | None = None) -> Iterator[Commit]:
        """Walk parent pointers from *start* (default HEAD) back to the root."""
        h = start if start is not None else self.refs.head_hash()
        seen: set[str] = set()
        while h and h not in seen:
            seen.add(h)
            commit = self.get_commit(h)
            yield commit
            h = commit.parent
