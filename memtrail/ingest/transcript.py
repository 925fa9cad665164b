"""Read assistant session transcripts stored as JSON Lines.

Each line is one entry (user turn, assistant turn, system note, ...). Tool
invocations appear as ``tool_use`` blocks inside assistant entries and their
outputs as ``tool_result`` blocks inside later user entries; the two are
paired by id.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .types import ENTRY_TYPES, ToolCall, TranscriptEntry

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def _normalize_content(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [block for block in content if isinstance(block, dict)]
    return []


def parse_entry(raw: Any) -> TranscriptEntry | None:
    if not isinstance(raw, dict):
        return None
    entry_type = raw.get("type")
    if not entry_type or not isinstance(entry_type, str):
        return None
    message = raw.get("message")
    role = None
    content: list[dict[str, Any]] = []
    if isinstance(message, dict):
        role = message.get("role") if isinstance(message.get("role"), str) else None
        content = _normalize_content(message.get("content"))
    return TranscriptEntry(
        type=entry_type if entry_type in ENTRY_TYPES else "unknown",
        content=content,
        role=role,
        session_id=raw.get("sessionId"),
        git_branch=raw.get("gitBranch"),
        timestamp=raw.get("timestamp"),
        uuid=raw.get("uuid"),
        is_meta=bool(raw.get("isMeta")),
    )


def parse_line(line: str) -> TranscriptEntry | None:
    line = line.strip()
    if not line:
        return None
    try:
        raw = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("skipping unparseable transcript line")
        return None
    return parse_entry(raw)


def parse_transcript_from(
    path: Path | str, start_line: int = 0
) -> tuple[list[TranscriptEntry], int]:
    """Parse entries after ``start_line`` and report the file's total line count.

    Callers persist the total and pass it back to pick up only new lines.
    """

    entries: list[TranscriptEntry] = []
    total_lines = 0
    with Path(path).expanduser().open(encoding="utf-8", errors="replace") as handle:
        for index, line in enumerate(handle):
            total_lines = index + 1
            if index < start_line:
                continue
            entry = parse_line(line)
            if entry is not None:
                entries.append(entry)
    return entries, total_lines


def parse_transcript(path: Path | str) -> list[TranscriptEntry]:
    entries, _ = parse_transcript_from(path)
    return entries


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(part for part in parts if part)
    return ""


def extract_tool_calls(entries: Iterable[TranscriptEntry]) -> list[ToolCall]:
    uses: dict[str, tuple[dict[str, Any], str | None]] = {}
    order: list[str] = []
    results: dict[str, tuple[str, bool]] = {}
    anonymous = 0
    for entry in entries:
        for block in entry.content:
            block_type = block.get("type")
            if block_type == "tool_use":
                use_id = block.get("id")
                if not use_id:
                    anonymous += 1
                    use_id = f"anonymous-{anonymous}"
                uses[use_id] = (block, entry.timestamp)
                order.append(use_id)
            elif block_type == "tool_result":
                use_id = block.get("tool_use_id")
                if use_id:
                    results[use_id] = (
                        _result_text(block.get("content")),
                        bool(block.get("is_error")),
                    )

    calls: list[ToolCall] = []
    for use_id in order:
        block, timestamp = uses[use_id]
        raw_input = block.get("input")
        result, is_error = results.get(use_id, ("", False))
        calls.append(
            ToolCall(
                tool_name=str(block.get("name") or "tool"),
                tool_input=raw_input if isinstance(raw_input, dict) else {},
                result=result,
                is_error=is_error,
                tool_use_id=use_id,
                timestamp=timestamp,
            )
        )
    return calls


def _entry_text(entry: TranscriptEntry) -> str:
    parts = [
        str(block.get("text") or "") for block in entry.content if block.get("type") == "text"
    ]
    return "\n".join(part for part in parts if part).strip()


def extract_assistant_messages(entries: Iterable[TranscriptEntry]) -> list[str]:
    messages: list[str] = []
    for entry in entries:
        if entry.type != "assistant":
            continue
        text = _entry_text(entry)
        if text:
            messages.append(text)
    return messages


def extract_user_messages(entries: Iterable[TranscriptEntry]) -> list[str]:
    messages: list[str] = []
    for entry in entries:
        if entry.type != "user" or entry.is_meta:
            continue
        text = _entry_text(entry)
        if text:
            messages.append(text)
    return messages


def last_assistant_message(entries: Iterable[TranscriptEntry]) -> str | None:
    messages = extract_assistant_messages(entries)
    return messages[-1] if messages else None
