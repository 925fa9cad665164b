from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ENTRY_TYPES = frozenset(
    {"user", "assistant", "system", "progress", "summary", "file-history-snapshot"}
)


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    type: str
    content: list[dict[str, Any]] = field(default_factory=list)
    role: str | None = None
    session_id: str | None = None
    git_branch: str | None = None
    timestamp: str | None = None
    uuid: str | None = None
    is_meta: bool = False


@dataclass(frozen=True, slots=True)
class ToolCall:
    tool_name: str
    tool_input: dict[str, Any]
    result: str = ""
    is_error: bool = False
    tool_use_id: str | None = None
    timestamp: str | None = None

    @property
    def normalized_name(self) -> str:
        return normalize_tool_name(self.tool_name)


def normalize_tool_name(name: str) -> str:
    tool = str(name or "tool").lower()
    if "." in tool:
        tool = tool.split(".")[-1]
    if ":" in tool:
        tool = tool.split(":")[-1]
    return tool
