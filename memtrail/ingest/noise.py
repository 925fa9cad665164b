from __future__ import annotations

import re
from collections.abc import Iterable

from ..config import DEFAULT_VENDORED_DIRS
from .types import ToolCall

SEARCH_TOOLS = frozenset({"glob", "grep"})
READ_TOOLS = frozenset({"read"})
SHELL_TOOLS = frozenset({"bash"})

TRIVIAL_SHELL_RE = re.compile(r"^\s*(ls|pwd|echo|cat\s|head\s|tail\s|wc\s)")


def tool_file_path(tool_input: dict) -> str:
    return str(tool_input.get("file_path") or tool_input.get("path") or "")


def is_noisy_tool_call(
    call: ToolCall,
    seen_reads: set[str],
    vendored_dirs: Iterable[str] = DEFAULT_VENDORED_DIRS,
) -> bool:
    """Return True when a tool call carries no durable signal.

    The only side effect is recording first-time reads in ``seen_reads``.
    """

    tool = call.normalized_name
    if tool in SEARCH_TOOLS:
        return True

    if tool in READ_TOOLS:
        path = tool_file_path(call.tool_input)
        if path in seen_reads:
            return True
        seen_reads.add(path)
        if any(vendored in path for vendored in vendored_dirs):
            return True

    if tool in SHELL_TOOLS:
        command = str(call.tool_input.get("command") or "")
        if TRIVIAL_SHELL_RE.match(command):
            return True

    return not (call.result or "").strip()
