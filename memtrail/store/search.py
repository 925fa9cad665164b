from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from ..observation_types import validate_observation_type, validate_session_status
from .types import Observation, Session, Timeline, UserPrompt
from .utils import parse_iso8601, row_to_observation, row_to_prompt, row_to_session

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20
DEFAULT_SESSION_LIMIT = 10
MAX_LIMIT = 100


def _expand_query(query: str) -> str:
    tokens = re.findall(r"[A-Za-z0-9_]+", query)
    tokens = [token for token in tokens if token.lower() not in {"or", "and", "not", "near"}]
    if not tokens:
        return ""
    if len(tokens) == 1:
        return tokens[0]
    return " OR ".join(tokens)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _clamp_limit(limit: int) -> int:
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")
    return min(limit, MAX_LIMIT)


def _filter_clauses(
    *,
    obs_type: str | None = None,
    rule_id: str | None = None,
    since: str | None = None,
) -> tuple[list[str], list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if obs_type:
        clauses.append("observations.type = ?")
        params.append(validate_observation_type(obs_type))
    if rule_id:
        clauses.append("observations.rule_id = ?")
        params.append(rule_id.strip().upper())
    if since:
        parsed = parse_iso8601(since)
        if parsed is None:
            raise ValueError(f"Invalid since timestamp '{since}'. Use ISO-8601.")
        clauses.append("observations.created_at_epoch >= ?")
        params.append(int(parsed.timestamp()))
    return clauses, params


def _where(clauses: Sequence[str]) -> str:
    return f"WHERE {' AND '.join(clauses)}" if clauses else ""


def _fts_query(
    store: MemoryStore,
    expanded: str,
    clauses: list[str],
    params: list[Any],
    limit: int,
    *,
    order_by_rank: bool,
) -> list[Observation]:
    order = (
        "score ASC, observations.created_at_epoch DESC, observations.id DESC"
        if order_by_rank
        else "observations.created_at_epoch DESC, observations.id DESC"
    )
    sql = f"""
        SELECT observations.*, bm25(observations_fts) AS score
        FROM observations_fts
        JOIN observations ON observations.id = observations_fts.rowid
        {_where(["observations_fts MATCH ?", *clauses])}
        ORDER BY {order}
        LIMIT ?
    """
    rows = store.conn.execute(sql, [expanded, *params, limit]).fetchall()
    return [row_to_observation(row) for row in rows]


def _like_query(
    store: MemoryStore, query: str, clauses: list[str], params: list[Any], limit: int
) -> list[Observation]:
    pattern = _like_pattern(query.strip())
    match = (
        "(observations.title LIKE ? ESCAPE '\\' OR observations.detail LIKE ? ESCAPE '\\'"
        " OR observations.evidence LIKE ? ESCAPE '\\')"
    )
    sql = f"""
        SELECT observations.* FROM observations
        {_where([match, *clauses])}
        ORDER BY observations.created_at_epoch DESC, observations.id DESC
        LIMIT ?
    """
    rows = store.conn.execute(sql, [pattern, pattern, pattern, *params, limit]).fetchall()
    return [row_to_observation(row) for row in rows]


def _matching(
    store: MemoryStore,
    query: str,
    clauses: list[str],
    params: list[Any],
    limit: int,
    *,
    order_by_rank: bool = True,
) -> list[Observation]:
    expanded = _expand_query(query)
    if store.fts_enabled and expanded:
        try:
            return _fts_query(
                store, expanded, clauses, params, limit, order_by_rank=order_by_rank
            )
        except sqlite3.OperationalError as exc:
            logger.warning(
                "full-text query failed, falling back to substring match", exc_info=exc
            )
    elif not store.fts_enabled:
        logger.warning("full-text index unavailable, using substring match for %r", query)
    return _like_query(store, query, clauses, params, limit)


def search(
    store: MemoryStore,
    query: str,
    *,
    obs_type: str | None = None,
    rule_id: str | None = None,
    since: str | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> list[Observation]:
    if not (query or "").strip():
        raise ValueError("Search query must not be empty")
    limit = _clamp_limit(limit)
    clauses, params = _filter_clauses(obs_type=obs_type, rule_id=rule_id, since=since)
    return _matching(store, query, clauses, params, limit)


def get_many(store: MemoryStore, ids: Sequence[int]) -> list[Observation]:
    if not ids:
        return []
    placeholders = ", ".join("?" for _ in ids)
    rows = store.conn.execute(
        f"""
        SELECT * FROM observations
        WHERE id IN ({placeholders})
        ORDER BY created_at_epoch ASC, id ASC
        """,
        [int(item) for item in ids],
    ).fetchall()
    return [row_to_observation(row) for row in rows]


def timeline(
    store: MemoryStore, anchor_id: int, depth_before: int = 5, depth_after: int = 5
) -> Timeline | None:
    if depth_before < 0 or depth_after < 0:
        raise ValueError("timeline depth must not be negative")
    anchor_row = store.conn.execute(
        "SELECT * FROM observations WHERE id = ?", (anchor_id,)
    ).fetchone()
    if anchor_row is None:
        return None
    anchor = row_to_observation(anchor_row)
    position = (anchor.session_id, anchor.created_at_epoch, anchor.id)

    before_rows = store.conn.execute(
        """
        SELECT * FROM observations
        WHERE session_id = ? AND (created_at_epoch, id) < (?, ?)
        ORDER BY created_at_epoch DESC, id DESC
        LIMIT ?
        """,
        (*position, depth_before),
    ).fetchall()
    after_rows = store.conn.execute(
        """
        SELECT * FROM observations
        WHERE session_id = ? AND (created_at_epoch, id) > (?, ?)
        ORDER BY created_at_epoch ASC, id ASC
        LIMIT ?
        """,
        (*position, depth_after),
    ).fetchall()

    items = [row_to_observation(row) for row in reversed(before_rows)]
    items.append(anchor)
    items.extend(row_to_observation(row) for row in after_rows)
    return Timeline(anchor_id=anchor.id, items=items)


def _recall(
    store: MemoryStore, obs_type: str, query: str | None, limit: int
) -> list[Observation]:
    limit = _clamp_limit(limit)
    clauses, params = _filter_clauses(obs_type=obs_type)
    if query and query.strip():
        return _matching(store, query, clauses, params, limit, order_by_rank=False)
    rows = store.conn.execute(
        f"""
        SELECT * FROM observations
        {_where(clauses)}
        ORDER BY created_at_epoch DESC, id DESC
        LIMIT ?
        """,
        [*params, limit],
    ).fetchall()
    return [row_to_observation(row) for row in rows]


def failures(
    store: MemoryStore, query: str | None = None, limit: int = DEFAULT_SEARCH_LIMIT
) -> list[Observation]:
    return _recall(store, "failed_attempt", query, limit)


def decisions(
    store: MemoryStore, query: str | None = None, limit: int = DEFAULT_SEARCH_LIMIT
) -> list[Observation]:
    return _recall(store, "decision", query, limit)


def list_sessions(
    store: MemoryStore, limit: int = DEFAULT_SESSION_LIMIT, status: str | None = None
) -> list[Session]:
    limit = _clamp_limit(limit)
    params: list[Any] = []
    where = ""
    if status:
        where = "WHERE status = ?"
        params.append(validate_session_status(status))
    rows = store.conn.execute(
        f"""
        SELECT * FROM sessions
        {where}
        ORDER BY started_at_epoch DESC, id DESC
        LIMIT ?
        """,
        [*params, limit],
    ).fetchall()
    return [row_to_session(row) for row in rows]


# Later statuses win when sessions of one task disagree.
PROGRESS_RANK = {"pending": 0, "in_progress": 1, "complete": 2}


def sessions_for_task(store: MemoryStore, task_id: str) -> list[Session]:
    rows = store.conn.execute(
        """
        SELECT * FROM sessions
        WHERE task_id = ?
        ORDER BY started_at_epoch DESC, id DESC
        """,
        (task_id,),
    ).fetchall()
    return [row_to_session(row) for row in rows]


def task_progress(store: MemoryStore, task_id: str) -> dict[str, str]:
    """Merge plan progress across every session of a task."""

    merged: dict[str, str] = {}
    for session in reversed(sessions_for_task(store, task_id)):
        for item, status in session.plan_progress.items():
            current = merged.get(item)
            if current is None or PROGRESS_RANK.get(status, -1) >= PROGRESS_RANK.get(current, -1):
                merged[item] = status
    return merged


def user_prompts(store: MemoryStore, session_id: str) -> list[UserPrompt]:
    rows = store.conn.execute(
        """
        SELECT * FROM user_prompts
        WHERE session_id = ?
        ORDER BY prompt_number ASC, id ASC
        """,
        (session_id,),
    ).fetchall()
    return [row_to_prompt(row) for row in rows]
