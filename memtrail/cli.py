from __future__ import annotations

import logging
import sys
from pathlib import Path

import typer

from .commands.memory_cmds import (
    decisions_cmd,
    failures_cmd,
    remember_cmd,
    search_cmd,
    show_cmd,
    timeline_cmd,
)
from .commands.session_cmds import (
    capture_cmd,
    ingest_transcript_cmd,
    init_db_cmd,
    session_end_cmd,
    session_list_cmd,
    session_start_cmd,
    session_task_cmd,
)
from .store import MemoryStore

app = typer.Typer(help="memtrail: durable session memory for AI coding assistants")
session_app = typer.Typer(help="Session lifecycle")
app.add_typer(session_app, name="session")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _store(db_path: str | None) -> MemoryStore:
    return MemoryStore(db_path)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@session_app.command("start")
def session_start(
    session_id: str,
    branch: str = typer.Option(None, help="Git branch (detected when omitted)"),
    plan_file: str = typer.Option(None, help="Plan file driving this session"),
    project: str = typer.Option(None, help="Project directory (defaults to cwd)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Start a session (no-op if it already exists)."""
    session_start_cmd(
        store_from_path=_store,
        db_path=db_path,
        session_id=session_id,
        git_branch=branch,
        plan_file=plan_file,
        project=project,
    )


@session_app.command("end")
def session_end(
    session_id: str,
    status: str = typer.Option("completed", help="completed or abandoned"),
    summary: str = typer.Option(None, help="Summary text (built from observations if omitted)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """End a session."""
    session_end_cmd(
        store_from_path=_store,
        db_path=db_path,
        session_id=session_id,
        status=status,
        summary=summary,
    )


@session_app.command("list")
def session_list(
    limit: int = typer.Option(10, help="Max sessions"),
    status: str = typer.Option(None, help="Filter by status"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List sessions, newest first."""
    session_list_cmd(store_from_path=_store, db_path=db_path, limit=limit, status=status)


@session_app.command("task")
def session_task(
    task_id: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show sessions linked to a task and their merged plan progress."""
    session_task_cmd(store_from_path=_store, db_path=db_path, task_id=task_id)


@app.command()
def capture(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Record a tool event or user prompt from hook JSON on stdin."""
    capture_cmd(store_from_path=_store, db_path=db_path, raw=sys.stdin.read())


@app.command("ingest-transcript")
def ingest_transcript(
    path: Path,
    session_id: str = typer.Option(None, help="Session id (read from the transcript if omitted)"),
    from_line: int = typer.Option(
        None, help="First line to read (defaults to where the last run stopped)"
    ),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Extract observations from a JSONL transcript."""
    ingest_transcript_cmd(
        store_from_path=_store,
        db_path=db_path,
        path=path,
        session_id=session_id,
        start_line=from_line,
    )


@app.command()
def search(
    query: str,
    obs_type: str = typer.Option(None, "--type", help="Filter by observation type"),
    rule: str = typer.Option(None, help="Filter by rule id, e.g. CR-3"),
    since: str = typer.Option(None, help="ISO-8601 lower bound on creation time"),
    limit: int = typer.Option(20, help="Max results"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search observations."""
    search_cmd(
        store_from_path=_store,
        db_path=db_path,
        query=query,
        obs_type=obs_type,
        rule_id=rule,
        since=since,
        limit=limit,
        as_json=as_json,
    )


@app.command()
def timeline(
    anchor_id: int,
    before: int = typer.Option(5, help="Observations before the anchor"),
    after: int = typer.Option(5, help="Observations after the anchor"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show what happened around an observation."""
    timeline_cmd(
        store_from_path=_store,
        db_path=db_path,
        anchor_id=anchor_id,
        depth_before=before,
        depth_after=after,
    )


@app.command()
def show(
    ids: list[int],
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print observations by id."""
    show_cmd(store_from_path=_store, db_path=db_path, ids=ids, as_json=as_json)


@app.command()
def failures(
    query: str = typer.Argument(None),
    limit: int = typer.Option(20, help="Max results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List failed attempts worth not repeating."""
    failures_cmd(store_from_path=_store, db_path=db_path, query=query, limit=limit)


@app.command()
def decisions(
    query: str = typer.Argument(None),
    limit: int = typer.Option(20, help="Max results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List decisions, optionally about a topic."""
    decisions_cmd(store_from_path=_store, db_path=db_path, query=query, limit=limit)


@app.command()
def remember(
    obs_type: str,
    title: str,
    detail: str = typer.Option(None, help="Longer description"),
    importance: int = typer.Option(None, help="Override importance (1-5)"),
    rule: str = typer.Option(None, help="Rule id, e.g. CR-3"),
    plan_item: str = typer.Option(None, help="Plan item, e.g. P2-4"),
    verification: str = typer.Option(None, help="Verification tag, e.g. TEST"),
    files: list[str] = typer.Option(None, "--file", help="Repeat for multiple files"),
    evidence: str = typer.Option(None, help="Supporting output"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Record an observation in the active session."""
    remember_cmd(
        store_from_path=_store,
        db_path=db_path,
        obs_type=obs_type,
        title=title,
        detail=detail,
        importance=importance,
        rule_id=rule,
        plan_item=plan_item,
        verification_type=verification,
        files=files,
        evidence=evidence,
    )


if __name__ == "__main__":
    app()
