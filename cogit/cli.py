"""
cogit.cli — Command-line interface for COGIT.

Usage:
    cogit init [PATH]                 Initialise a .cogit/ directory
    cogit add PATH...                 Stage files (directories expand)
    cogit status                      Show staged / modified / untracked files
    cogit diff [PATH] [--staged]      Show changes as a unified diff
    cogit commit -m "message"         Commit staged files (+ embeddings)
    cogit log                         Show commit history
    cogit embeddings                  List commits that have an embedding index
    cogit explain [COMMIT]            Explain a commit with the completion service
    cogit ask "question"              Ask a question about the history
"""

from __future__ import annotations

import functools
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import click
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from cogit import __version__
from cogit.core.errors import CogitError

console = Console()

_STATE_STYLES = {
    "staged": "green",
    "modified": "yellow",
    "deleted": "red",
    "untracked": "magenta",
    "unchanged": "dim",
}


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _get_engine():
    from cogit.core.models import CogitConfig
    from cogit.operations.engine import CogitEngine
    return CogitEngine.open(CogitConfig.for_project())


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _abs(path: str) -> Path:
    return Path(path).resolve()


def handle_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Print COGIT errors in red and exit non-zero instead of a traceback."""
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except CogitError as exc:
            console.print(f"[red]✗[/red] {exc}")
            sys.exit(1)
    return wrapper


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.version_option(version=__version__, prog_name="cogit")
def main(verbose: bool) -> None:
    """COGIT — Cognition Git: version control with a searchable history."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------

@main.command()
@click.argument("path", default=".", type=click.Path(file_okay=False))
@click.option("--provider", default=None, help="Embedding provider (openai, ollama).")
@handle_errors
def init(path: str, provider: str | None) -> None:
    """Initialise a .cogit/ directory in PATH."""
    from cogit.core.database import Repository
    from cogit.core.models import RepositoryConfig

    settings = RepositoryConfig()
    if provider:
        settings = settings.model_copy(update={"provider": provider})
    root = _abs(path)
    root.mkdir(parents=True, exist_ok=True)
    repo = Repository.init(root, settings)

    console.print(f"[green]✓[/green] Initialised COGIT in [bold]{repo.config.cogit_dir}[/bold]")
    console.print(f"  Objects:   {repo.config.objects_dir}")
    console.print(f"  Provider:  {settings.provider}")


# ---------------------------------------------------------------------------
# add / status / diff
# ---------------------------------------------------------------------------

@main.command()
@click.argument("paths", nargs=-1, required=True)
@handle_errors
def add(paths: tuple[str, ...]) -> None:
    """Stage PATHS for the next commit."""
    engine = _get_engine()
    staged = engine.add([_abs(p) for p in paths])
    for entry in staged:
        if entry.deleted:
            console.print(f"  [red]deleted[/red]  {entry.path}")
        else:
            console.print(f"  [green]staged[/green]   {entry.path} [dim]({entry.size} bytes)[/dim]")
    if not staged:
        console.print("[dim]Nothing new to stage.[/dim]")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include unchanged files.")
@handle_errors
def status(show_all: bool) -> None:
    """Show the three-way status of the working tree."""
    engine = _get_engine()
    head = engine.repo.refs.head_hash()
    branch = engine.repo.refs.current_branch or "(detached)"

    rows = [s for s in engine.status() if show_all or s.state.value != "unchanged"]
    table = Table(title=f"COGIT Status — {branch} @ {(head or 'no commits')[:12]}")
    table.add_column("State", width=10)
    table.add_column("Path", style="white")
    for s in rows:
        style = _STATE_STYLES[s.state.value]
        table.add_row(f"[{style}]{s.state.value}[/{style}]", s.path)

    if rows:
        console.print(table)
    else:
        console.print("[green]✓[/green] Working tree clean")


@main.command()
@click.argument("path", required=False)
@click.option("--staged", is_flag=True, help="Compare staged files against HEAD.")
@handle_errors
def diff(path: str | None, staged: bool) -> None:
    """Show changes as a unified diff."""
    engine = _get_engine()
    diffs = engine.diff(_abs(path) if path else None, staged=staged)
    if not diffs:
        console.print("[dim]No changes.[/dim]")
        return
    for d in diffs:
        console.print(Syntax(d.patch, "diff", theme="ansi_dark", word_wrap=True))


# ---------------------------------------------------------------------------
# commit / log
# ---------------------------------------------------------------------------

@main.command()
@click.option("-m", "--message", required=True, help="Commit message.")
@click.option("--no-embeddings", is_flag=True, help="Skip embedding generation.")
@click.option(
    "--rename", "renames", multiple=True, metavar="OLD:NEW",
    help="Mark OLD→NEW as a rename (repeatable).",
)
@handle_errors
def commit(message: str, no_embeddings: bool, renames: tuple[str, ...]) -> None:
    """Commit staged files and index their diffs."""
    rename_map: dict[str, str] = {}
    for pair in renames:
        old, sep, new = pair.partition(":")
        if not sep or not old or not new:
            raise click.BadParameter(f"expected OLD:NEW, got '{pair}'", param_hint="--rename")
        rename_map[old] = new

    engine = _get_engine()
    result = engine.commit(message, generate_embeddings=not no_embeddings, renames=rename_map or None)

    console.print(f"[green]✓[/green] Commit [yellow]{result.commit.short_hash}[/yellow] {message}")
    for change in result.changes:
        label = f"{change.old_path} → {change.path}" if change.old_path else change.path
        console.print(f"  {change.change.value:<9} {label}")

    if result.embedding_index is not None:
        idx = result.embedding_index
        console.print(
            f"[cyan]◆[/cyan] Embedded {len(idx.files)} file(s), "
            f"{idx.total_tokens} tokens in {idx.processing_ms} ms"
        )
    for note in result.skipped:
        console.print(f"  [dim]skipped {note}[/dim]")
    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")


@main.command()
@click.option("-n", "--limit", default=20, type=int, help="Max commits to show.")
@handle_errors
def log(limit: int) -> None:
    """Show commit history from HEAD."""
    engine = _get_engine()
    embedded = set(engine.repo.embeddings.commit_hashes())

    table = Table(title="Commit Log")
    table.add_column("Hash", style="yellow", width=12)
    table.add_column("Date", style="dim", width=19)
    table.add_column("Message")
    table.add_column("Idx", width=3)
    for c in engine.log(limit=limit):
        table.add_row(c.short_hash, _fmt_ts(c.timestamp), c.message[:60], "◆" if c.hash in embedded else "")
    console.print(table)


@main.command()
@handle_errors
def embeddings() -> None:
    """List commits that carry an embedding index."""
    engine = _get_engine()
    summaries = engine.list_embedded_commits()
    if not summaries:
        console.print("[dim]No embedding indexes yet.[/dim]")
        return
    table = Table(title="Embedded Commits")
    table.add_column("Commit", style="yellow", width=12)
    table.add_column("Files", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Model", style="cyan")
    table.add_column("Created", style="dim")
    for s in summaries:
        table.add_row(s.commit_hash[:12], str(s.file_count), str(s.total_tokens), s.model, _fmt_ts(s.created_at))
    console.print(table)


# ---------------------------------------------------------------------------
# explain / ask
# ---------------------------------------------------------------------------

@main.command()
@click.argument("commit_ref", default="HEAD")
@handle_errors
def explain(commit_ref: str) -> None:
    """Explain what COMMIT_REF changed."""
    engine = _get_engine()
    result = engine.explain(commit_ref)
    console.print(f"[yellow]{result.commit.short_hash}[/yellow] {result.commit.message}")
    if result.outcome.value == "service_failure":
        console.print(f"[red]✗[/red] Service failure ({result.failure_kind}): {result.detail}")
        sys.exit(2)
    console.print(result.explanation)


@main.command()
@click.argument("question")
@click.option("-c", "--commit", "commits", multiple=True, help="Restrict to these commits (repeatable).")
@handle_errors
def ask(question: str, commits: tuple[str, ...]) -> None:
    """Ask QUESTION about the repository history."""
    engine = _get_engine()
    result = engine.ask(question, list(commits) or None)

    match result.outcome.value:
        case "answer":
            console.print(result.answer)
            table = Table(title="Sources")
            table.add_column("Commit", style="yellow", width=12)
            table.add_column("File")
            table.add_column("Change", style="cyan")
            table.add_column("Similarity", justify="right")
            for src in result.sources:
                table.add_row(src.commit_hash[:12], src.path, src.change.value, f"{src.similarity:.3f}")
            console.print(table)
        case "no_relevant_context":
            console.print(f"[yellow]![/yellow] No relevant context found. {result.detail}")
        case _:
            console.print(f"[red]✗[/red] Service failure ({result.failure_kind}): {result.detail}")
            sys.exit(2)


if __name__ == "__main__":
    main()
