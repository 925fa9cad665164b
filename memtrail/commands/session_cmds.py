from __future__ import annotations

import json
import os
from pathlib import Path

import typer
from rich import print
from rich.markup import escape

from ..git_info import detect_branch, detect_repo_root
from ..ingest.pipeline import ingest_tool_event, ingest_transcript, record_user_prompt
from ..ingest.transcript import parse_transcript_from
from ..memory_tools import memory_sessions, memory_task
from ..store import NoActiveSessionError
from .common import read_stdin_json, run_tool


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        fts = "enabled" if store.fts_enabled else "[yellow]unavailable[/yellow]"
        print(f"Initialized database at {escape(str(store.db_path))} (full-text search {fts})")
    finally:
        store.close()


def session_start_cmd(
    *,
    store_from_path,
    db_path: str | None,
    session_id: str,
    git_branch: str | None,
    plan_file: str | None,
    project: str | None,
) -> None:
    """Start (or resume) a session."""

    cwd = os.getcwd()
    store = store_from_path(db_path)
    try:
        try:
            session = store.start_session(
                session_id,
                project=project or detect_repo_root(cwd) or cwd,
                git_branch=git_branch or detect_branch(cwd),
                plan_file=plan_file,
            )
        except ValueError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"Session {escape(session.session_id)} is {session.status}")
    finally:
        store.close()


def session_end_cmd(
    *,
    store_from_path,
    db_path: str | None,
    session_id: str,
    status: str,
    summary: str | None,
) -> None:
    """Close a session and store its summary."""

    store = store_from_path(db_path)
    try:
        try:
            session = store.end_session(session_id, status=status, summary=summary)
        except ValueError as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        if session is None:
            print(f"[red]Session {escape(session_id)} not found[/red]")
            raise typer.Exit(code=1)
        print(f"Session {escape(session.session_id)} marked {session.status}")
        if session.summary:
            print(escape(session.summary))
    finally:
        store.close()


def session_list_cmd(
    *, store_from_path, db_path: str | None, limit: int, status: str | None
) -> None:
    """List recent sessions, newest first."""

    run_tool(
        store_from_path, db_path, lambda store: memory_sessions(store, limit=limit, status=status)
    )


def session_task_cmd(*, store_from_path, db_path: str | None, task_id: str) -> None:
    """Show the sessions linked to a task and their merged plan progress."""

    run_tool(store_from_path, db_path, lambda store: memory_task(store, task_id))


def capture_cmd(*, store_from_path, db_path: str | None, raw: str) -> None:
    """Record one hook event: a tool call or a submitted user prompt."""

    payload = read_stdin_json(raw)
    session_id = str(payload.get("session_id") or "").strip()
    tool_name = str(payload.get("tool_name") or "").strip()
    prompt = payload.get("prompt")
    if not session_id or not (tool_name or isinstance(prompt, str)):
        print("[red]Payload needs session_id and tool_name or prompt[/red]")
        raise typer.Exit(code=1)
    tool_input = payload.get("tool_input")
    cwd = str(payload.get("cwd") or os.getcwd())

    store = store_from_path(db_path)
    try:
        session = store.start_session(session_id, project=cwd, git_branch=detect_branch(cwd))
        if session.status != "active":
            print(f"[yellow]Session {escape(session_id)} is {session.status}; skipped[/yellow]")
            return
        if not tool_name:
            number = record_user_prompt(store, session, str(prompt))
            print("skipped" if number is None else json.dumps({"prompt_number": number}))
            return
        result = ingest_tool_event(
            store,
            session,
            tool_name,
            tool_input if isinstance(tool_input, dict) else {},
            payload.get("tool_response"),
        )
        if result is None:
            print("skipped")
        else:
            print(json.dumps({"id": result.id, "created": result.created}))
    finally:
        store.close()


def _transcript_session_id(path: Path) -> str | None:
    entries, _ = parse_transcript_from(path)
    for entry in entries:
        if entry.session_id:
            return entry.session_id
    return None


def ingest_transcript_cmd(
    *,
    store_from_path,
    db_path: str | None,
    path: Path,
    session_id: str | None,
    start_line: int | None,
) -> None:
    """Backfill observations from a JSONL transcript."""

    if not path.exists():
        print(f"[red]Transcript {escape(str(path))} not found[/red]")
        raise typer.Exit(code=1)
    store = store_from_path(db_path)
    try:
        resolved_id = session_id or _transcript_session_id(path)
        try:
            if resolved_id:
                session = store.start_session(resolved_id)
            else:
                session = store.require_active_session()
        except (ValueError, NoActiveSessionError) as exc:
            print(f"[red]{escape(str(exc))}[/red]")
            raise typer.Exit(code=1) from exc
        stats = ingest_transcript(store, session, path, start_line=start_line)
        print(json.dumps(stats.to_dict()))
    finally:
        store.close()
