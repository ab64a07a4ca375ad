from __future__ import annotations

from pathlib import Path

from conftest import FakeAdapter, write
from cogit.core.errors import (
    ServiceFailureKind,
    ServiceRateLimitedError,
    ServiceUnauthorizedError,
    ServiceUnconfiguredError,
)
from cogit.core.models import ChangeKind, RepositoryConfig
from cogit.operations.embedding import EmbeddingPipeline
from cogit.operations.engine import CogitEngine


def _stage(engine: CogitEngine, project: Path, files: dict[str, str | bytes]) -> None:
    for rel, content in files.items():
        write(project, rel, content)
    engine.add(list(files))


def test_unconfigured_service_keeps_commit(project: Path) -> None:
    def factory():
        raise ServiceUnconfiguredError("No API key for provider 'openai'. Set OPENAI_API_KEY.")

    engine = CogitEngine.init(project, adapter_factory=factory)
    _stage(engine, project, {"a.py": "x\n", "b.py": "y\n"})
    result = engine.commit("no key")

    assert engine.repo.refs.head_hash() == result.commit.hash
    assert result.embedding_index is None
    assert not engine.repo.embeddings.exists(result.commit.hash)
    assert [(f.path, f.kind) for f in result.embedding_failures] == [
        ("a.py", ServiceFailureKind.UNCONFIGURED),
        ("b.py", ServiceFailureKind.UNCONFIGURED),
    ]
    assert any("unconfigured" in w for w in result.warnings)


def test_default_factory_without_api_key_is_unconfigured(project: Path) -> None:
    engine = CogitEngine.init(project)
    _stage(engine, project, {"a.py": "x\n"})
    result = engine.commit("default provider")
    assert result.embedding_index is None
    assert result.embedding_failures[0].kind == ServiceFailureKind.UNCONFIGURED


def test_partial_failure_keeps_successes_in_order(project: Path) -> None:
    adapter = FakeAdapter(failures={"b.py": ServiceRateLimitedError("slow down", status_code=429)})
    engine = CogitEngine.init(project, adapter_factory=lambda: adapter)
    _stage(engine, project, {"a.py": "login\n", "b.py": "password\n", "c.py": "database\n"})
    result = engine.commit("three files")

    assert [f.path for f in result.embedding_index.files] == ["a.py", "c.py"]
    assert [(f.path, f.kind) for f in result.embedding_failures] == [("b.py", ServiceFailureKind.RATE_LIMITED)]
    stored = engine.repo.embeddings.load(result.commit.hash)
    assert [f.path for f in stored.files] == ["a.py", "c.py"]
    assert any("rate_limited" in w for w in result.warnings)


def test_unexpected_error_is_isolated_to_its_file(project: Path) -> None:
    adapter = FakeAdapter(failures={"b.txt": RuntimeError("boom")})  # type: ignore[dict-item]
    engine = CogitEngine.init(project, adapter_factory=lambda: adapter)
    _stage(engine, project, {"a.txt": "hello\n", "b.txt": "world\n"})
    result = engine.commit("one bad file")

    assert engine.repo.refs.head_hash() == result.commit.hash
    assert [f.path for f in result.embedding_index.files] == ["a.txt"]
    assert [f.path for f in engine.repo.embeddings.load(result.commit.hash).files] == ["a.txt"]
    (failure,) = result.embedding_failures
    assert failure.path == "b.txt"
    assert failure.kind == ServiceFailureKind.TRANSPORT
    assert "boom" in failure.detail


def test_all_failures_persist_nothing(project: Path) -> None:
    error = ServiceUnauthorizedError("bad key", status_code=401)
    adapter = FakeAdapter(failures={"a.py": error, "b.py": error})
    engine = CogitEngine.init(project, adapter_factory=lambda: adapter)
    _stage(engine, project, {"a.py": "x\n", "b.py": "y\n"})
    result = engine.commit("denied")

    assert result.embedding_index is None
    assert engine.repo.embeddings.commit_hashes() == []
    assert {f.kind for f in result.embedding_failures} == {ServiceFailureKind.UNAUTHORIZED}
    assert adapter.closed == 1


def test_concurrency_is_bounded_and_order_preserved(project: Path) -> None:
    names = [f"f{n}.py" for n in range(6)]
    # Earlier files finish last.
    adapter = FakeAdapter(delays={name: 0.01 * (len(names) - n) for n, name in enumerate(names)})
    engine = CogitEngine.init(project, RepositoryConfig(max_concurrency=2), lambda: adapter)
    _stage(engine, project, {name: f"{name} hello\n" for name in names})
    result = engine.commit("six files")

    assert [f.path for f in result.embedding_index.files] == names
    assert 1 < adapter.max_in_flight <= 2


def test_filters_skip_unsupported_files(project: Path, fake_adapter: FakeAdapter) -> None:
    engine = CogitEngine.init(project, RepositoryConfig(max_file_size=64), lambda: fake_adapter)
    _stage(engine, project, {
        "code.py": "hello\n",
        "image.png": b"\x89PNG\x00\x00",
        "blob.txt": b"\x00\x01binary",
        "big.py": "x" * 100,
        "Makefile": "all:\n",
    })
    result = engine.commit("mixed")

    assert [f.path for f in result.embedding_index.files] == ["code.py"]
    assert sorted(note.split(":")[0] for note in result.skipped) == ["Makefile", "big.py", "blob.txt", "image.png"]
    assert len(fake_adapter.embedded) == 1


def test_added_file_embeds_content_and_deleted_file_embeds_patch(engine: CogitEngine, project: Path) -> None:
    _stage(engine, project, {"keep.py": "hello world\n", "gone.py": "render banana\n"})
    pipeline = EmbeddingPipeline(engine.repo, lambda: None)
    first = engine.commit("two", generate_embeddings=False)
    jobs, skipped = pipeline.prepare(first.changes)
    assert skipped == []
    gone_job = next(j for j in jobs if j.change.path == "gone.py")
    assert gone_job.text == "File: gone.py\nChange: added\n\nrender banana\n"

    (project / "gone.py").unlink()
    engine.add(["gone.py"])
    result = engine.commit("delete")
    (fe,) = result.embedding_index.files
    assert fe.change == ChangeKind.DELETED
    assert fe.patch.startswith("--- a/gone.py\n+++ /dev/null\n")
    assert fe.content_hash == first.changes[0].new_hash


def test_embedding_summaries(engine: CogitEngine, project: Path) -> None:
    _stage(engine, project, {"a.py": "hello\n"})
    first = engine.commit("first").commit
    _stage(engine, project, {"b.py": "world\n"})
    engine.commit("no index", generate_embeddings=False)

    (summary,) = engine.list_embedded_commits()
    assert summary.commit_hash == first.hash
    assert summary.file_count == 1
    assert summary.model == "fake-embed"
