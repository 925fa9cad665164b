from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from memtrail import db
from memtrail.config import MemtrailConfig
from memtrail.store import MemoryStore
from memtrail.store import search as store_search


def _seed_encryption(store: MemoryStore) -> list[int]:
    store.start_session("s-1")
    ids = []
    for suffix in ("alpha", "beta", "gamma"):
        ids.append(store.add_observation("s-1", "decision", f"Encryption key rotation {suffix}").id)
    store.add_observation("s-1", "feature", "Login page redesign")
    store.add_observation("s-1", "bugfix", "Fix flaky websocket reconnect")
    return ids


def test_search_ranks_and_breaks_ties_by_recency(store: MemoryStore) -> None:
    ids = _seed_encryption(store)
    results = store.search("encryption", limit=5)
    assert [obs.id for obs in results] == list(reversed(ids))
    assert all(obs.score is not None for obs in results)


def test_search_relevance_outranks_recency(store: MemoryStore) -> None:
    store.start_session("s-1")
    strong = store.add_observation(
        "s-1",
        "decision",
        "Encryption encryption at rest",
        "Encryption keys rotate daily; encryption enforced.",
    ).id
    weak = store.add_observation(
        "s-1",
        "discovery",
        "Release notes",
        "Mentions encryption once alongside caching, queues, retries, dashboards, "
        "alerts, migrations, onboarding docs and the deploy checklist.",
    ).id

    assert [obs.id for obs in store.search("encryption")] == [strong, weak]


def test_decisions_recall(store: MemoryStore) -> None:
    store.start_session("s-1")
    old = store.add_observation("s-1", "decision", "Chose Postgres over MySQL").id
    store.add_observation("s-1", "failed_attempt", "Postgres pool tuning failed")
    new = store.add_observation("s-1", "decision", "Going with Redis for sessions").id

    assert [obs.id for obs in store.decisions()] == [new, old]
    assert [obs.id for obs in store.decisions("postgres")] == [old]
    assert store.decisions("kafka") == []


def test_search_matches_detail_and_evidence(store: MemoryStore) -> None:
    store.start_session("s-1")
    a = store.add_observation("s-1", "decision", "Storage choice", "We picked sqlite")
    b = store.add_observation(
        "s-1", "verification_check", "Tests: FAIL", evidence="sqlite locked", outcome="FAIL"
    )
    found = {obs.id for obs in store.search("sqlite")}
    assert found == {a.id, b.id}


def test_search_filters(store: MemoryStore) -> None:
    store.start_session("s-1")
    rule = store.add_observation(
        "s-1", "rule_violation", "Queue handler skips auth", rule_id="CR-4"
    )
    store.add_observation("s-1", "decision", "Queue for webhooks")

    assert [o.id for o in store.search("queue", obs_type="rule_violation")] == [rule.id]
    assert [o.id for o in store.search("queue", rule_id="cr-4")] == [rule.id]
    assert len(store.search("queue", since="2000-01-01T00:00:00Z")) == 2
    assert store.search("queue", since="2999-01-01T00:00:00+00:00") == []


def test_search_validation(store: MemoryStore) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        store.search("  ")
    with pytest.raises(ValueError, match="limit"):
        store.search("x", limit=0)
    with pytest.raises(ValueError, match="Invalid since"):
        store.search("x", since="yesterday")
    with pytest.raises(ValueError, match="Invalid observation type"):
        store.search("x", obs_type="todo")


def test_search_limit_is_capped(store: MemoryStore) -> None:
    store.start_session("s-1")
    for i in range(store_search.MAX_LIMIT + 5):
        store.add_observation("s-1", "file_change", f"Edited: module_{i}.py")
    assert len(store.search("Edited", limit=1000)) == store_search.MAX_LIMIT


def test_punctuation_only_query_uses_substring_match(store: MemoryStore) -> None:
    store.start_session("s-1")
    hit = store.add_observation("s-1", "decision", "Use => for arrow functions")
    assert [o.id for o in store.search("=>")] == [hit.id]


def test_search_falls_back_when_index_missing(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, caplog, fresh_registry
) -> None:
    monkeypatch.setattr(
        db, "_FTS_SCHEMA", "CREATE VIRTUAL TABLE observations_fts USING no_such_module(title);"
    )
    config = MemtrailConfig(db_path=str(tmp_path / "nofts.sqlite"))
    with caplog.at_level("WARNING"):
        with MemoryStore(config.db_path, config=config) as store:
            assert store.fts_enabled is False
            store.start_session("s-1")
            older = store.add_observation("s-1", "decision", "Encryption at rest")
            newer = store.add_observation("s-1", "feature", "Encryption in transit")
            results = store.search("encryption")
    assert [obs.id for obs in results] == [newer.id, older.id]
    assert "full-text index unavailable" in caplog.text


def test_search_falls_back_on_query_error(
    monkeypatch: pytest.MonkeyPatch, store: MemoryStore, caplog
) -> None:
    store.start_session("s-1")
    hit = store.add_observation("s-1", "decision", "Encryption at rest")

    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("fts5: syntax error")

    monkeypatch.setattr(store_search, "_fts_query", broken)
    with caplog.at_level("WARNING", logger="memtrail.store.search"):
        results = store.search("encryption")
    assert [obs.id for obs in results] == [hit.id]
    assert "falling back to substring match" in caplog.text


def test_timeline_stays_within_session(store: MemoryStore) -> None:
    store.start_session("a")
    store.start_session("b")
    a_ids = []
    for i in range(6):
        a_ids.append(store.add_observation("a", "file_change", f"Edited: a{i}.py").id)
        store.add_observation("b", "file_change", f"Edited: b{i}.py")

    result = store.timeline(a_ids[2], depth_before=1, depth_after=2)
    assert result is not None
    assert [obs.id for obs in result.items] == [a_ids[1], a_ids[2], a_ids[3], a_ids[4]]
    assert result.anchor.id == a_ids[2]
    assert {obs.session_id for obs in result.items} == {"a"}


def test_timeline_edges_and_missing_anchor(store: MemoryStore) -> None:
    store.start_session("a")
    first = store.add_observation("a", "decision", "Only one").id
    result = store.timeline(first)
    assert result is not None
    assert [obs.id for obs in result.items] == [first]
    assert store.timeline(9999) is None
    with pytest.raises(ValueError):
        store.timeline(first, depth_before=-1)


def test_get_many_is_chronological_and_drops_unknown(store: MemoryStore) -> None:
    store.start_session("s-1")
    one = store.add_observation("s-1", "decision", "First").id
    two = store.add_observation("s-1", "decision", "Second").id
    three = store.add_observation("s-1", "decision", "Third").id
    assert [obs.id for obs in store.get_many([three, 9999, one])] == [one, three]
    assert [obs.id for obs in store.get_many([two])] == [two]
    assert store.get_many([]) == []


def test_failures_only_failed_attempts_newest_first(store: MemoryStore) -> None:
    store.start_session("s-1")
    old = store.add_observation("s-1", "failed_attempt", "Polling the API failed").id
    store.add_observation("s-1", "decision", "Polling replaced by webhooks")
    new = store.add_observation("s-1", "failed_attempt", "Caching tokens in memory broke SSO").id
    store.add_observation("s-1", "failed_attempt", "Polling the API failed")
    store.add_observation("s-1", "failed_attempt", "polling the api failed")

    results = store.failures()
    assert [obs.id for obs in results] == [new, old]
    assert results[1].recurrence_count == 3

    filtered = store.failures("polling")
    assert [obs.id for obs in filtered] == [old]


def test_list_sessions_newest_first(store: MemoryStore) -> None:
    store.start_session("s-1")
    store.start_session("s-2")
    store.start_session("s-3")
    store.end_session("s-1", summary="first done")

    assert [s.session_id for s in store.list_sessions()] == ["s-3", "s-2", "s-1"]
    assert [s.session_id for s in store.list_sessions(limit=1)] == ["s-3"]
    completed = store.list_sessions(status="completed")
    assert [s.session_id for s in completed] == ["s-1"]
    assert completed[0].summary == "first done"
    with pytest.raises(ValueError):
        store.list_sessions(status="paused")


def test_expand_query() -> None:
    assert store_search._expand_query("encryption") == "encryption"
    assert store_search._expand_query("key AND rotation") == "key OR rotation"
    assert store_search._expand_query("!!") == ""
