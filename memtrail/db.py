from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from .config import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

# Resolved store path -> whether the full-text index is usable.
_INITIALIZED_PATHS: dict[str, bool] = {}

_CORE_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY,
    session_id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'completed', 'abandoned')),
    project TEXT,
    git_branch TEXT,
    plan_file TEXT,
    task_id TEXT,
    plan_progress TEXT NOT NULL DEFAULT '{}',
    summary TEXT,
    started_at TEXT NOT NULL,
    started_at_epoch INTEGER NOT NULL,
    ended_at TEXT,
    ended_at_epoch INTEGER
);
CREATE INDEX IF NOT EXISTS idx_sessions_status_started
    ON sessions(status, started_at_epoch DESC);

CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id),
    type TEXT NOT NULL CHECK (type IN (
        'decision', 'bugfix', 'feature', 'refactor', 'discovery',
        'rule_violation', 'verification_check', 'pattern_compliance',
        'failed_attempt', 'file_change', 'incident_near_miss'
    )),
    title TEXT NOT NULL,
    title_key TEXT NOT NULL,
    detail TEXT,
    files_involved TEXT NOT NULL DEFAULT '[]',
    plan_item TEXT,
    rule_id TEXT,
    verification_type TEXT,
    evidence TEXT,
    importance INTEGER NOT NULL DEFAULT 3 CHECK (importance BETWEEN 1 AND 5),
    visibility TEXT NOT NULL DEFAULT 'public' CHECK (visibility IN ('public', 'private')),
    recurrence_count INTEGER NOT NULL DEFAULT 1 CHECK (recurrence_count >= 1),
    original_tokens INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_observations_session_created
    ON observations(session_id, created_at_epoch, id);
CREATE INDEX IF NOT EXISTS idx_observations_type_created
    ON observations(type, created_at_epoch DESC);
CREATE INDEX IF NOT EXISTS idx_observations_type_key ON observations(type, title_key);
CREATE INDEX IF NOT EXISTS idx_observations_rule ON observations(rule_id);

CREATE TABLE IF NOT EXISTS user_prompts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id),
    prompt_number INTEGER NOT NULL,
    prompt_text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_user_prompts_session
    ON user_prompts(session_id, prompt_number);

CREATE TABLE IF NOT EXISTS memtrail_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

# Columns added after the first schema version; older files get them on open.
_ADDED_COLUMNS = [
    ("sessions", "task_id", "TEXT"),
]


_FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
    title, detail, evidence,
    content='observations',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
    INSERT INTO observations_fts(rowid, title, detail, evidence)
    VALUES (new.id, new.title, new.detail, new.evidence);
END;

CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, title, detail, evidence)
    VALUES ('delete', old.id, old.title, old.detail, old.evidence);
    INSERT INTO observations_fts(rowid, title, detail, evidence)
    VALUES (new.id, new.title, new.detail, new.evidence);
END;

CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, title, detail, evidence)
    VALUES ('delete', old.id, old.title, old.detail, old.evidence);
END;
"""


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        # A recreated file needs its DDL again.
        _INITIALIZED_PATHS.pop(registry_key(path), None)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def registry_key(db_path: Path | str) -> str:
    return str(Path(db_path).expanduser().resolve())


def is_initialized(db_path: Path | str) -> bool:
    return registry_key(db_path) in _INITIALIZED_PATHS


def reset_initialized_paths() -> None:
    _INITIALIZED_PATHS.clear()


def initialize_schema(conn: sqlite3.Connection, db_path: Path | str | None = None) -> bool:
    """Create tables and the full-text index once per store path per process.

    Returns whether the full-text index is available. When ``db_path`` is
    omitted the DDL always runs and nothing is cached.
    """

    key = registry_key(db_path) if db_path is not None else None
    if key is not None and key in _INITIALIZED_PATHS:
        return _INITIALIZED_PATHS[key]

    conn.executescript(_CORE_SCHEMA)
    for table, column, column_type in _ADDED_COLUMNS:
        _ensure_column(conn, table, column, column_type)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_task ON sessions(task_id)")
    fts_available = _create_fts(conn)
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
    conn.commit()

    if key is not None:
        _INITIALIZED_PATHS[key] = fts_available
    return fts_available


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
    if column not in existing:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def _create_fts(conn: sqlite3.Connection) -> bool:
    try:
        conn.executescript(_FTS_SCHEMA)
    except sqlite3.Error as exc:
        logger.warning(
            "full-text index unavailable, search falls back to substring matching",
            exc_info=exc,
        )
        return False
    return True


def fts_table_exists(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'observations_fts'"
    ).fetchone()
    return row is not None


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {}


def json_list(text: str | None) -> list[str]:
    value = from_json(text)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


__all__ = [
    "DEFAULT_DB_PATH",
    "SCHEMA_VERSION",
    "connect",
    "from_json",
    "initialize_schema",
    "is_initialized",
    "json_list",
    "reset_initialized_paths",
    "to_json",
]
