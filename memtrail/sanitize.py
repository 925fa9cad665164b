from __future__ import annotations

import re

ANSI_ESCAPE_RE = re.compile(
    r"""
    \x1B
    (?:
        [@-Z\\-_]
      | \[ [0-?]* [ -/]* [@-~]
      | \] [^\x1B]* (?:\x1B\\\\|\x07)
    )
    """,
    re.VERBOSE,
)

PRIVATE_BLOCK_RE = re.compile(r"<private>.*?</private>", re.DOTALL | re.IGNORECASE)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub("", text)


def strip_private(text: str) -> str:
    if not text:
        return ""
    return PRIVATE_BLOCK_RE.sub("", text)


def truncate_text(text: str, max_chars: int, *, notice: str = "") -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}{notice}"


def sanitize_field(value: str | None, max_chars: int) -> str | None:
    """Clean free text headed for storage; blank results collapse to None."""
    if value is None:
        return None
    cleaned = strip_private(strip_ansi(value)).strip()
    if not cleaned:
        return None
    return truncate_text(cleaned, max_chars)
