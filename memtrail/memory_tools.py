"""Text-rendered memory operations for assistant tool calls.

Callers pass a ``MemoryStore`` opened for the duration of one request.
``handle_memory_tool_call`` turns validation problems and a missing active
session into error results.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .store import MemoryStore, NoActiveSessionError, Observation, Session

logger = logging.getLogger(__name__)

TOOL_NAMES = (
    "memory_search",
    "memory_timeline",
    "memory_detail",
    "memory_sessions",
    "memory_failures",
    "memory_decisions",
    "memory_task",
    "memory_ingest",
)


@dataclass
class ToolResult:
    text: str
    is_error: bool = False
    items: list[dict[str, Any]] = field(default_factory=list)


def _date(obs: Observation) -> str:
    return obs.created_at[:10]


def _cell(text: str | None, limit: int = 80) -> str:
    value = " ".join((text or "").split()).replace("|", "\\|")
    return value if len(value) <= limit else value[: limit - 3] + "..."


def _render_table(observations: Sequence[Observation]) -> str:
    lines = [
        "| ID | Type | Title | Date | Importance |",
        "|----|------|-------|------|------------|",
    ]
    for obs in observations:
        lines.append(
            f"| {obs.id} | {obs.type} | {_cell(obs.title)} | {_date(obs)} | {obs.importance} |"
        )
    return "\n".join(lines)


def _render_detail(obs: Observation) -> str:
    lines = [
        f"## Observation #{obs.id} [{obs.type}] (importance: {obs.importance})",
        f"**Title:** {obs.title}",
        f"**Session:** {obs.session_id}",
        f"**Created:** {obs.created_at}",
        f"**Visibility:** {obs.visibility}",
    ]
    if obs.recurrence_count > 1:
        lines.append(f"**Recurrence:** {obs.recurrence_count}x")
    if obs.rule_id:
        lines.append(f"**Rule:** {obs.rule_id}")
    if obs.verification_type:
        lines.append(f"**Verification:** {obs.verification_type}")
    if obs.plan_item:
        lines.append(f"**Plan item:** {obs.plan_item}")
    if obs.files_involved:
        lines.append(f"**Files:** {', '.join(obs.files_involved)}")
    if obs.detail:
        lines.extend(["", "**Detail:**", obs.detail])
    if obs.evidence:
        lines.extend(["", "**Evidence:**", "```", obs.evidence, "```"])
    return "\n".join(lines)


def _occurrences(count: int) -> str:
    return "occurred once" if count <= 1 else f"occurred {count}x across sessions"


def memory_search(
    store: MemoryStore,
    query: str,
    *,
    type: str | None = None,
    rule_id: str | None = None,
    since: str | None = None,
    limit: int = 20,
) -> ToolResult:
    results = store.search(query, obs_type=type, rule_id=rule_id, since=since, limit=limit)
    if not results:
        return ToolResult(text=f'No observations found for "{query}".')
    text = f'Found {len(results)} observation(s) for "{query}":\n\n{_render_table(results)}'
    return ToolResult(text=text, items=[obs.to_dict() for obs in results])


def memory_timeline(
    store: MemoryStore, anchor_id: int, *, depth_before: int = 5, depth_after: int = 5
) -> ToolResult:
    result = store.timeline(anchor_id, depth_before=depth_before, depth_after=depth_after)
    if result is None:
        return ToolResult(text=f"Observation #{anchor_id} not found.")
    lines = [f"## Timeline around #{anchor_id} (session {result.anchor.session_id})", ""]
    for obs in result.items:
        marker = ">" if obs.id == anchor_id else " "
        suffix = "  <-- ANCHOR" if obs.id == anchor_id else ""
        lines.append(f"{marker} {obs.id} [{obs.type}] {obs.title} ({obs.created_at}){suffix}")
    return ToolResult(text="\n".join(lines), items=[obs.to_dict() for obs in result.items])


def memory_detail(store: MemoryStore, ids: Sequence[int]) -> ToolResult:
    if not ids:
        raise ValueError("Provide at least one observation id")
    observations = store.get_many(ids)
    if not observations:
        return ToolResult(text="No observations found for the given ids.")
    text = "\n\n---\n\n".join(_render_detail(obs) for obs in observations)
    return ToolResult(text=text, items=[obs.to_dict() for obs in observations])


def _session_item(session: Session) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "status": session.status,
        "git_branch": session.git_branch,
        "task_id": session.task_id,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "summary": session.summary,
        "plan_progress": dict(session.plan_progress),
    }


def memory_sessions(
    store: MemoryStore, *, limit: int = 10, status: str | None = None
) -> ToolResult:
    sessions = store.list_sessions(limit=limit, status=status)
    if not sessions:
        return ToolResult(text="No sessions recorded.")
    lines = ["| Session | Status | Branch | Started |", "|---------|--------|--------|---------|"]
    for session in sessions:
        lines.append(
            f"| {session.session_id} | {session.status} | {session.git_branch or '-'} "
            f"| {session.started_at[:19]} |"
        )
    summaries = [s for s in sessions if s.summary]
    if summaries:
        lines.extend(["", "## Summaries"])
        for session in summaries:
            lines.extend(["", f"### {session.session_id}", session.summary or ""])
    return ToolResult(text="\n".join(lines), items=[_session_item(s) for s in sessions])


def memory_failures(
    store: MemoryStore, query: str | None = None, *, limit: int = 20
) -> ToolResult:
    results = store.failures(query=query, limit=limit)
    if not results:
        suffix = f' matching "{query}"' if query else ""
        return ToolResult(text=f"No failed attempts recorded{suffix}.")
    lines = ["## Failed Attempts (DO NOT RETRY)", ""]
    for obs in results:
        lines.append(f"- **#{obs.id}** {obs.title} ({_occurrences(obs.recurrence_count)})")
        if obs.detail:
            lines.append(f"  {_cell(obs.detail, 200)}")
    return ToolResult(text="\n".join(lines), items=[obs.to_dict() for obs in results])


def memory_decisions(
    store: MemoryStore, query: str | None = None, *, limit: int = 20
) -> ToolResult:
    results = store.decisions(query=query, limit=limit)
    if not results:
        suffix = f' about "{query}"' if query else ""
        return ToolResult(text=f"No decisions recorded{suffix}.")
    lines = ["## Decisions", ""]
    for obs in results:
        lines.append(f"- **#{obs.id}** {obs.title} ({_date(obs)}, session {obs.session_id})")
        if obs.detail:
            lines.append(f"  {_cell(obs.detail, 200)}")
    return ToolResult(text="\n".join(lines), items=[obs.to_dict() for obs in results])


def memory_task(store: MemoryStore, task_id: str) -> ToolResult:
    task_id = task_id.strip()
    if not task_id:
        raise ValueError("task_id must not be empty")
    sessions = store.sessions_for_task(task_id)
    if not sessions:
        return ToolResult(text=f'No sessions recorded for task "{task_id}".')
    progress = store.task_progress(task_id)
    lines = [f"## Task {task_id}", ""]
    for session in sessions:
        lines.append(f"- {session.session_id} ({session.status}, {session.started_at[:19]})")
    if progress:
        lines.extend(["", "### Plan progress"])
        for item, status in sorted(progress.items()):
            lines.append(f"- {item}: {status}")
    item = {
        "task_id": task_id,
        "sessions": [_session_item(s) for s in sessions],
        "plan_progress": progress,
    }
    return ToolResult(text="\n".join(lines), items=[item])


def memory_ingest(
    store: MemoryStore,
    type: str,
    title: str,
    detail: str | None = None,
    *,
    importance: int | None = None,
    rule_id: str | None = None,
    plan_item: str | None = None,
    verification_type: str | None = None,
    files: Sequence[str] | None = None,
    evidence: str | None = None,
) -> ToolResult:
    session = store.require_active_session()
    result = store.add_observation(
        session.session_id,
        type,
        title,
        detail,
        importance=importance,
        rule_id=rule_id,
        plan_item=plan_item,
        verification_type=verification_type,
        files_involved=files,
        evidence=evidence,
    )
    if result.created:
        text = f"Observation #{result.id} recorded successfully."
    else:
        text = (
            f"Observation #{result.id} already recorded; "
            f"recurrence count is now {result.recurrence_count}."
        )
    item = {
        "id": result.id,
        "created": result.created,
        "recurrence_count": result.recurrence_count,
    }
    return ToolResult(text=text, items=[item])


def _int_list(value: Any) -> list[int]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        parts = [value]
    ids: list[int] = []
    for part in parts:
        if part == "":
            continue
        try:
            ids.append(int(part))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid observation id {part!r}") from exc
    return ids


def _str_list(args: dict[str, Any], key: str) -> list[str] | None:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ValueError(f"'{key}' must be a list of strings, got {value!r}")


def _optional_int(args: dict[str, Any], key: str) -> int | None:
    value = args.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{key}' must be an integer, got {value!r}") from exc


def _int_arg(args: dict[str, Any], key: str, default: int) -> int:
    value = _optional_int(args, key)
    return default if value is None else value


def _required_int(args: dict[str, Any], key: str) -> int:
    value = _optional_int(args, key)
    if value is None:
        raise ValueError(f"'{key}' is required")
    return value


_HANDLERS: dict[str, Callable[[MemoryStore, dict[str, Any]], ToolResult]] = {
    "memory_search": lambda store, args: memory_search(
        store,
        str(args.get("query") or ""),
        type=args.get("type"),
        rule_id=args.get("rule_id"),
        since=args.get("since"),
        limit=_int_arg(args, "limit", 20),
    ),
    "memory_timeline": lambda store, args: memory_timeline(
        store,
        _required_int(args, "anchor_id"),
        depth_before=_int_arg(args, "depth_before", 5),
        depth_after=_int_arg(args, "depth_after", 5),
    ),
    "memory_detail": lambda store, args: memory_detail(store, _int_list(args.get("ids"))),
    "memory_sessions": lambda store, args: memory_sessions(
        store, limit=_int_arg(args, "limit", 10), status=args.get("status")
    ),
    "memory_failures": lambda store, args: memory_failures(
        store, args.get("query"), limit=_int_arg(args, "limit", 20)
    ),
    "memory_decisions": lambda store, args: memory_decisions(
        store, args.get("query"), limit=_int_arg(args, "limit", 20)
    ),
    "memory_task": lambda store, args: memory_task(store, str(args.get("task_id") or "")),
    "memory_ingest": lambda store, args: memory_ingest(
        store,
        str(args.get("type") or ""),
        str(args.get("title") or ""),
        args.get("detail"),
        importance=_optional_int(args, "importance"),
        rule_id=args.get("rule_id"),
        plan_item=args.get("plan_item"),
        verification_type=args.get("verification_type"),
        files=_str_list(args, "files"),
        evidence=args.get("evidence"),
    ),
}


def handle_memory_tool_call(name: str, args: dict[str, Any], store: MemoryStore) -> ToolResult:
    handler = _HANDLERS.get(name)
    if handler is None:
        return ToolResult(
            text=f"Unknown memory tool '{name}'. Available: {', '.join(TOOL_NAMES)}",
            is_error=True,
        )
    try:
        return handler(store, args or {})
    except (ValueError, NoActiveSessionError) as exc:
        logger.info("memory tool %s rejected: %s", name, exc)
        return ToolResult(text=f"Error: {exc}", is_error=True)


__all__ = [
    "TOOL_NAMES",
    "ToolResult",
    "handle_memory_tool_call",
    "memory_decisions",
    "memory_detail",
    "memory_failures",
    "memory_ingest",
    "memory_search",
    "memory_sessions",
    "memory_task",
    "memory_timeline",
]
