from __future__ import annotations

from memtrail.memory_tools import (
    TOOL_NAMES,
    handle_memory_tool_call,
    memory_failures,
    memory_search,
    memory_sessions,
    memory_timeline,
)
from memtrail.store import MemoryStore


def test_ingest_without_active_session_is_rejected(store: MemoryStore) -> None:
    result = handle_memory_tool_call(
        "memory_ingest", {"type": "decision", "title": "Use a queue"}, store
    )
    assert result.is_error
    assert "No active session" in result.text
    assert store.count_observations() == 0


def test_ingest_validation_errors(store: MemoryStore) -> None:
    store.start_session("s-1")
    bad_type = handle_memory_tool_call("memory_ingest", {"type": "todo", "title": "x"}, store)
    bad_importance = handle_memory_tool_call(
        "memory_ingest", {"type": "decision", "title": "x", "importance": 9}, store
    )
    no_title = handle_memory_tool_call("memory_ingest", {"type": "decision"}, store)

    assert bad_type.is_error and "Allowed types" in bad_type.text
    assert bad_importance.is_error and "between 1 and 5" in bad_importance.text
    assert no_title.is_error
    assert store.count_observations() == 0


def test_ingest_records_into_active_session(store: MemoryStore) -> None:
    store.start_session("old")
    store.start_session("current")
    args = {
        "type": "rule_violation",
        "title": "Raw SQL in handler",
        "detail": "Handler builds SQL strings",
        "rule_id": "CR-3",
        "files": ["src/handler.py"],
    }
    first = handle_memory_tool_call("memory_ingest", args, store)
    again = handle_memory_tool_call("memory_ingest", args, store)

    assert not first.is_error
    assert first.text == f"Observation #{first.items[0]['id']} recorded successfully."
    assert "recurrence count is now 2" in again.text
    obs = store.get(first.items[0]["id"])
    assert obs is not None
    assert obs.session_id == "current"
    assert obs.importance == 4
    assert obs.rule_id == "CR-3"
    assert obs.files_involved == ["src/handler.py"]


def test_search_renders_table(store: MemoryStore) -> None:
    store.start_session("s-1")
    store.add_observation("s-1", "decision", "Encryption key rotation")
    result = memory_search(store, "encryption")
    assert "| ID | Type | Title | Date | Importance |" in result.text
    assert "Encryption key rotation" in result.text
    assert result.items[0]["type"] == "decision"

    empty = memory_search(store, "nothing-here")
    assert empty.text == 'No observations found for "nothing-here".'
    assert not empty.is_error


def test_search_empty_query_is_error(store: MemoryStore) -> None:
    result = handle_memory_tool_call("memory_search", {"query": ""}, store)
    assert result.is_error


def test_timeline_marks_anchor(store: MemoryStore) -> None:
    store.start_session("s-1")
    first = store.add_observation("s-1", "decision", "First step").id
    second = store.add_observation("s-1", "decision", "Second step").id
    result = memory_timeline(store, second, depth_before=3, depth_after=3)
    lines = result.text.splitlines()
    assert any(line.startswith(f"  {first} [decision] First step") for line in lines)
    assert any(line.startswith(f"> {second}") and line.endswith("<-- ANCHOR") for line in lines)

    missing = memory_timeline(store, 999)
    assert missing.text == "Observation #999 not found."
    assert not missing.is_error


def test_timeline_requires_anchor(store: MemoryStore) -> None:
    result = handle_memory_tool_call("memory_timeline", {}, store)
    assert result.is_error
    assert "anchor_id" in result.text


def test_detail_accepts_comma_separated_ids(store: MemoryStore) -> None:
    store.start_session("s-1")
    a = store.add_observation("s-1", "decision", "Alpha", "alpha detail", rule_id="CR-1").id
    b = store.add_observation("s-1", "decision", "Beta").id
    result = handle_memory_tool_call("memory_detail", {"ids": f"{b}, {a}, 404"}, store)
    assert not result.is_error
    assert [item["id"] for item in result.items] == [a, b]
    assert f"## Observation #{a} [decision] (importance: 5)" in result.text
    assert "**Rule:** CR-1" in result.text
    assert "alpha detail" in result.text

    bad = handle_memory_tool_call("memory_detail", {"ids": "x"}, store)
    assert bad.is_error


def test_failures_surface_recurrence(store: MemoryStore) -> None:
    store.start_session("s-1")
    for _ in range(3):
        store.add_observation("s-1", "failed_attempt", "Polling the API failed")
    store.add_observation("s-1", "failed_attempt", "Mocking the clock broke CI")
    result = memory_failures(store)
    assert result.text.startswith("## Failed Attempts (DO NOT RETRY)")
    assert "Polling the API failed (occurred 3x across sessions)" in result.text
    assert "Mocking the clock broke CI (occurred once)" in result.text

    assert memory_failures(store, "zebra").text == 'No failed attempts recorded matching "zebra".'


def test_sessions_render_summaries(store: MemoryStore) -> None:
    store.start_session("s-1", git_branch="main")
    store.end_session("s-1", summary="Shipped login")
    store.start_session("s-2")
    result = memory_sessions(store)
    assert "| s-2 | active | - |" in result.text
    assert "| s-1 | completed | main |" in result.text
    assert "### s-1\nShipped login" in result.text
    assert [item["session_id"] for item in result.items] == ["s-2", "s-1"]

    bad = handle_memory_tool_call("memory_sessions", {"status": "paused"}, store)
    assert bad.is_error


def test_unknown_tool(store: MemoryStore) -> None:
    result = handle_memory_tool_call("memory_prune", {}, store)
    assert result.is_error
    for name in TOOL_NAMES:
        assert name in result.text


def test_ingest_files_string_is_not_split_into_characters(store: MemoryStore) -> None:
    store.start_session("s-1")
    single = handle_memory_tool_call(
        "memory_ingest", {"type": "decision", "title": "Use WAL", "files": "db.py"}, store
    )
    several = handle_memory_tool_call(
        "memory_ingest",
        {"type": "decision", "title": "Split modules", "files": "a.py, b.py"},
        store,
    )
    bad = handle_memory_tool_call(
        "memory_ingest", {"type": "decision", "title": "Nope", "files": {"a": 1}}, store
    )

    assert not single.is_error
    assert store.get(single.items[0]["id"]).files_involved == ["db.py"]
    assert store.get(several.items[0]["id"]).files_involved == ["a.py", "b.py"]
    assert bad.is_error
    assert "'files' must be a list of strings" in bad.text
    assert store.count_observations() == 2


def test_decisions_tool(store: MemoryStore) -> None:
    store.start_session("s-1")
    store.add_observation("s-1", "decision", "Chose SQLite for local storage")
    result = handle_memory_tool_call("memory_decisions", {"query": "sqlite"}, store)
    empty = handle_memory_tool_call("memory_decisions", {"query": "kafka"}, store)

    assert not result.is_error
    assert result.text.startswith("## Decisions")
    assert "Chose SQLite for local storage" in result.text
    assert empty.text == 'No decisions recorded about "kafka".'


def test_task_tool_lists_sessions_and_progress(store: MemoryStore) -> None:
    store.start_session("s-1", plan_file="docs/plans/auth-rework.md")
    store.record_plan_progress("s-1", ["P1-1"])
    result = handle_memory_tool_call("memory_task", {"task_id": "auth-rework"}, store)
    missing = handle_memory_tool_call("memory_task", {"task_id": "nothing"}, store)
    blank = handle_memory_tool_call("memory_task", {}, store)

    assert result.text.startswith("## Task auth-rework")
    assert "- s-1 (active," in result.text
    assert "- P1-1: complete" in result.text
    assert result.items[0]["plan_progress"] == {"P1-1": "complete"}
    assert missing.text == 'No sessions recorded for task "nothing".'
    assert blank.is_error
