from __future__ import annotations

import datetime as dt
import re
import sqlite3
from pathlib import PurePath

from .. import db
from .types import Observation, Session, UserPrompt

TITLE_KEY_MAX_CHARS = 120
INCIDENT_KEY_RE = re.compile(r"incident\s*#\s*(\d+)", re.IGNORECASE)


def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def title_key(title: str) -> str:
    """Recurrence key: lowercased, whitespace-collapsed title prefix."""
    return " ".join((title or "").lower().split())[:TITLE_KEY_MAX_CHARS]


def task_id_from_plan(plan_file: str | None) -> str | None:
    """Sessions working from the same plan file share its stem as a task id."""
    if not plan_file or not plan_file.strip():
        return None
    name = PurePath(plan_file.strip()).name
    stem = name[:-3] if name.lower().endswith(".md") else name
    return stem or None


def incident_key(title: str) -> str | None:
    match = INCIDENT_KEY_RE.search(title or "")
    if not match:
        return None
    return f"Incident #{match.group(1)}"


def row_to_observation(row: sqlite3.Row) -> Observation:
    keys = row.keys()
    return Observation(
        id=int(row["id"]),
        session_id=str(row["session_id"]),
        type=str(row["type"]),
        title=str(row["title"]),
        detail=row["detail"],
        importance=int(row["importance"]),
        visibility=str(row["visibility"]),
        recurrence_count=int(row["recurrence_count"]),
        created_at=str(row["created_at"]),
        created_at_epoch=int(row["created_at_epoch"]),
        files_involved=db.json_list(row["files_involved"]),
        rule_id=row["rule_id"],
        verification_type=row["verification_type"],
        plan_item=row["plan_item"],
        evidence=row["evidence"],
        original_tokens=int(row["original_tokens"] or 0),
        score=float(row["score"]) if "score" in keys and row["score"] is not None else None,
    )


def row_to_session(row: sqlite3.Row) -> Session:
    progress = db.from_json(row["plan_progress"])
    return Session(
        id=int(row["id"]),
        session_id=str(row["session_id"]),
        status=str(row["status"]),
        started_at=str(row["started_at"]),
        started_at_epoch=int(row["started_at_epoch"]),
        ended_at=row["ended_at"],
        ended_at_epoch=row["ended_at_epoch"],
        project=row["project"],
        git_branch=row["git_branch"],
        plan_file=row["plan_file"],
        task_id=row["task_id"],
        plan_progress=progress if isinstance(progress, dict) else {},
        summary=row["summary"],
    )


def row_to_prompt(row: sqlite3.Row) -> UserPrompt:
    return UserPrompt(
        session_id=str(row["session_id"]),
        number=int(row["prompt_number"]),
        text=str(row["prompt_text"]),
        created_at=str(row["created_at"]),
    )
