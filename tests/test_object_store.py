from __future__ import annotations

from pathlib import Path

import pytest
import zstandard as zstd
from pydantic import ValidationError

from cogit.core.database import ObjectStore, Repository
from cogit.core.errors import (
    CorruptObjectError,
    NotARepositoryError,
    ObjectNotFoundError,
    RepositoryExistsError,
)
from cogit.core.models import CogitConfig, Commit, EntryKind, Tree, TreeEntry, hash_bytes


@pytest.fixture
def store(tmp_path: Path) -> ObjectStore:
    return ObjectStore(tmp_path / "objects")


def _object_files(root: Path) -> list[Path]:
    return [p for p in root.rglob("*") if p.is_file()]


@pytest.mark.parametrize("data", [b"", b"hello\n", b"\x00\xff\x10binary", "naïve ünïcode".encode()])
def test_put_get_roundtrip(store: ObjectStore, data: bytes) -> None:
    key = store.put(data)
    assert key == hash_bytes(data)
    assert store.get(key) == data
    assert store.exists(key)


def test_put_is_idempotent(store: ObjectStore, tmp_path: Path) -> None:
    first = store.put(b"same bytes")
    second = store.put(b"same bytes")
    assert first == second
    assert len(_object_files(tmp_path / "objects")) == 1


def test_objects_use_prefix_layout(store: ObjectStore, tmp_path: Path) -> None:
    key = store.put(b"layout")
    assert (tmp_path / "objects" / key[:2] / key[2:]).is_file()


def test_get_missing_and_invalid(store: ObjectStore) -> None:
    with pytest.raises(ObjectNotFoundError):
        store.get("0" * 64)
    with pytest.raises(ObjectNotFoundError):
        store.get("not-a-hash")
    assert not store.exists("0" * 64)


def test_corruption_is_detected(store: ObjectStore, tmp_path: Path) -> None:
    key = store.put(b"original")
    path = tmp_path / "objects" / key[:2] / key[2:]
    path.write_bytes(zstd.ZstdCompressor().compress(b"tampered"))
    with pytest.raises(CorruptObjectError) as exc:
        store.get(key)
    assert exc.value.actual == hash_bytes(b"tampered")

    path.write_bytes(b"not zstd at all")
    with pytest.raises(CorruptObjectError):
        store.get(key)


def test_tree_roundtrip_nested(engine) -> None:
    repo = engine.repo
    files = {
        "README.md": repo.objects.put(b"readme"),
        "src/app.py": repo.objects.put(b"print('hi')\n"),
        "src/lib/util.py": repo.objects.put(b"x = 1\n"),
    }
    tree_hash = repo.store_tree(files)
    assert repo.flatten_tree(tree_hash) == files

    root = repo.load_tree(tree_hash)
    assert [(e.name, e.kind) for e in root.entries] == [
        ("README.md", EntryKind.BLOB),
        ("src", EntryKind.TREE),
    ]


def test_tree_hash_is_order_independent(engine) -> None:
    repo = engine.repo
    a, b = repo.objects.put(b"a"), repo.objects.put(b"b")
    assert repo.store_tree({"x.txt": a, "y.txt": b}) == repo.store_tree({"y.txt": b, "x.txt": a})


def test_tree_rejects_duplicate_names() -> None:
    with pytest.raises(ValidationError):
        Tree(entries=[
            TreeEntry(name="a", kind=EntryKind.BLOB, hash="1" * 64),
            TreeEntry(name="a", kind=EntryKind.BLOB, hash="2" * 64),
        ])


def test_commit_hash_depends_on_every_field() -> None:
    base = dict(message="msg", timestamp=1000.0, parent=None, tree_hash="a" * 64)
    reference = Commit(**base).compute_hash()
    assert Commit(**base).compute_hash() == reference
    for field, value in [("message", "other"), ("timestamp", 1001.0), ("parent", "b" * 64), ("tree_hash", "c" * 64)]:
        assert Commit(**{**base, field: value}).compute_hash() != reference


def test_store_commit_matches_computed_hash(engine) -> None:
    repo = engine.repo
    commit = Commit(message="m", timestamp=5.0, tree_hash=repo.store_tree({}))
    expected = Commit(message="m", timestamp=5.0, tree_hash=commit.tree_hash).compute_hash()
    assert repo.store_commit(commit) == expected
    assert repo.get_commit(expected).message == "m"


def test_resolve_commit_by_prefix(engine) -> None:
    repo = engine.repo
    commit = Commit(message="m", tree_hash=repo.store_tree({}))
    repo.store_commit(commit)
    repo.refs.advance_head(commit.hash)

    assert repo.resolve_commit(commit.hash[:8]).hash == commit.hash
    assert repo.resolve_commit("HEAD").hash == commit.hash
    with pytest.raises(ObjectNotFoundError):
        repo.resolve_commit("ab")
    with pytest.raises(ObjectNotFoundError):
        repo.resolve_commit("zzzz")


def test_repository_lifecycle(tmp_path: Path) -> None:
    with pytest.raises(NotARepositoryError):
        Repository.open(CogitConfig(root=tmp_path))

    repo = Repository.init(tmp_path)
    assert (tmp_path / ".cogit" / "HEAD").read_text() == "ref: refs/heads/main\n"
    assert (tmp_path / ".cogit" / "config.json").is_file()
    assert (tmp_path / ".cogit" / "index.json").is_file()
    assert repo.refs.head_hash() is None

    with pytest.raises(RepositoryExistsError):
        Repository.init(tmp_path)
    assert Repository.open(CogitConfig(root=tmp_path)).refs.current_branch == "main"
