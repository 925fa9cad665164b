from __future__ import annotations

from ..memory_tools import (
    memory_decisions,
    memory_detail,
    memory_failures,
    memory_ingest,
    memory_search,
    memory_timeline,
)
from .common import run_tool


def search_cmd(
    *,
    store_from_path,
    db_path: str | None,
    query: str,
    obs_type: str | None,
    rule_id: str | None,
    since: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """Full-text search over observations."""

    run_tool(
        store_from_path,
        db_path,
        lambda store: memory_search(
            store, query, type=obs_type, rule_id=rule_id, since=since, limit=limit
        ),
        as_json=as_json,
    )


def timeline_cmd(
    *,
    store_from_path,
    db_path: str | None,
    anchor_id: int,
    depth_before: int,
    depth_after: int,
) -> None:
    """Show observations around an anchor within its session."""

    run_tool(
        store_from_path,
        db_path,
        lambda store: memory_timeline(
            store, anchor_id, depth_before=depth_before, depth_after=depth_after
        ),
    )


def show_cmd(*, store_from_path, db_path: str | None, ids: list[int], as_json: bool) -> None:
    """Print full observation records."""

    run_tool(store_from_path, db_path, lambda store: memory_detail(store, ids), as_json=as_json)


def failures_cmd(
    *, store_from_path, db_path: str | None, query: str | None, limit: int
) -> None:
    """List known failed attempts."""

    run_tool(store_from_path, db_path, lambda store: memory_failures(store, query, limit=limit))


def decisions_cmd(
    *, store_from_path, db_path: str | None, query: str | None, limit: int
) -> None:
    """List recorded decisions, newest first."""

    run_tool(store_from_path, db_path, lambda store: memory_decisions(store, query, limit=limit))


def remember_cmd(
    *,
    store_from_path,
    db_path: str | None,
    obs_type: str,
    title: str,
    detail: str | None,
    importance: int | None,
    rule_id: str | None,
    plan_item: str | None,
    verification_type: str | None,
    files: list[str] | None,
    evidence: str | None,
) -> None:
    """Record an observation in the active session."""

    run_tool(
        store_from_path,
        db_path,
        lambda store: memory_ingest(
            store,
            obs_type,
            title,
            detail,
            importance=importance,
            rule_id=rule_id,
            plan_item=plan_item,
            verification_type=verification_type,
            files=files,
            evidence=evidence,
        ),
    )
