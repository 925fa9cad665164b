from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..classifier import (
    ExtractedObservation,
    classify_tool_call,
    classify_tool_calls,
    detect_plan_file,
    detect_plan_progress,
    extract_text_observations,
)
from ..config import MemtrailConfig
from ..store import AddResult, MemoryStore, Session
from .noise import is_noisy_tool_call
from .transcript import (
    extract_assistant_messages,
    extract_tool_calls,
    extract_user_messages,
    parse_transcript_from,
)
from .types import ToolCall, TranscriptEntry

logger = logging.getLogger(__name__)


@dataclass
class IngestStats:
    inserted: int = 0
    recurrences: int = 0
    noise: int = 0
    unclassified: int = 0
    prompts: int = 0
    total_lines: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "inserted": self.inserted,
            "recurrences": self.recurrences,
            "noise": self.noise,
            "unclassified": self.unclassified,
            "prompts": self.prompts,
            "total_lines": self.total_lines,
        }


def store_observation(
    store: MemoryStore, session: Session, obs: ExtractedObservation
) -> AddResult:
    return store.add_observation(
        session.session_id,
        obs.type,
        obs.title,
        obs.detail,
        outcome=obs.outcome,
        rule_id=obs.rule_id,
        verification_type=obs.verification_type,
        plan_item=obs.plan_item,
        files_involved=obs.files_involved,
        evidence=obs.evidence,
        original_tokens=obs.original_tokens,
    )


def persist_observations(
    store: MemoryStore,
    session: Session,
    observations: Iterable[ExtractedObservation],
    stats: IngestStats | None = None,
) -> IngestStats:
    stats = stats or IngestStats()
    for obs in observations:
        result = store_observation(store, session, obs)
        if result.created:
            stats.inserted += 1
        else:
            stats.recurrences += 1
    return stats


def _record_progress(store: MemoryStore, session: Session, texts: Iterable[str]) -> None:
    items: list[str] = []
    for text in texts:
        for item in detect_plan_progress(text):
            if item not in items:
                items.append(item)
    if items:
        store.record_plan_progress(session.session_id, items)


def ingest_entries(
    store: MemoryStore,
    session: Session,
    entries: Sequence[TranscriptEntry],
    config: MemtrailConfig | None = None,
) -> IngestStats:
    config = config or store.config
    calls = extract_tool_calls(entries)
    observations, noise = classify_tool_calls(calls, config)
    stats = IngestStats(noise=noise, unclassified=len(calls) - noise - len(observations))
    messages = extract_assistant_messages(entries)
    for message in messages:
        observations.extend(extract_text_observations(message))
    persist_observations(store, session, observations, stats)
    _record_progress(store, session, messages)
    for prompt in extract_user_messages(entries):
        if record_user_prompt(store, session, prompt, config) is not None:
            stats.prompts += 1
    return stats


def record_user_prompt(
    store: MemoryStore,
    session: Session,
    prompt: str,
    config: MemtrailConfig | None = None,
) -> int | None:
    """Store a user prompt and link the session to any plan file it names."""

    config = config or store.config
    number = store.add_user_prompt(session.session_id, prompt)
    plan_file = detect_plan_file(prompt, config.plans_dir)
    if plan_file is not None:
        store.link_plan_file(session.session_id, plan_file)
    return number


def ingest_transcript(
    store: MemoryStore,
    session: Session,
    path: Path | str,
    config: MemtrailConfig | None = None,
    *,
    start_line: int | None = None,
) -> IngestStats:
    """Ingest a transcript file and remember how far it was read.

    Without ``start_line`` ingestion resumes after the last line processed
    for this session.
    """

    if start_line is None:
        start_line = store.get_last_processed_line(session.session_id)
    entries, total_lines = parse_transcript_from(path, start_line)
    stats = ingest_entries(store, session, entries, config)
    stats.total_lines = total_lines
    store.set_last_processed_line(session.session_id, max(total_lines, start_line))
    logger.info(
        "ingested transcript %s: %d new, %d recurring, %d noise",
        path,
        stats.inserted,
        stats.recurrences,
        stats.noise,
    )
    return stats


def response_text(tool_response: Any) -> str:
    if tool_response is None:
        return ""
    if isinstance(tool_response, str):
        return tool_response
    if isinstance(tool_response, dict):
        stderr = tool_response.get("stderr")
        stderr = stderr if isinstance(stderr, str) and stderr.strip() else ""
        for key in ("stdout", "output", "content", "result"):
            value = tool_response.get(key)
            if isinstance(value, str) and value:
                return f"{value}\n{stderr}" if stderr else value
        return stderr
    return str(tool_response)


def ingest_tool_event(
    store: MemoryStore,
    session: Session,
    tool_name: str,
    tool_input: dict[str, Any] | None,
    tool_response: Any,
    *,
    seen_reads: set[str] | None = None,
    config: MemtrailConfig | None = None,
    is_error: bool = False,
) -> AddResult | None:
    """Classify one live tool event and store it.

    Returns None when the event is noise or carries nothing worth keeping.
    """

    config = config or store.config
    if isinstance(tool_response, dict) and tool_response.get("is_error"):
        is_error = True
    call = ToolCall(
        tool_name=tool_name,
        tool_input=tool_input or {},
        result=response_text(tool_response),
        is_error=is_error,
    )
    seen = seen_reads if seen_reads is not None else set()
    if is_noisy_tool_call(call, seen, config.vendored_dirs):
        return None
    _record_progress(store, session, [call.result])
    obs = classify_tool_call(call, config)
    if obs is None:
        return None
    result = store_observation(store, session, obs)
    logger.debug("captured %s from %s (id=%d)", obs.type, tool_name, result.id)
    return result
