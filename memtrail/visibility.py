from __future__ import annotations

import re
from typing import Final

PUBLIC: Final = "public"
PRIVATE: Final = "private"

# Checked in order; the first hit marks the text private.
PRIVATE_PATTERNS: Final[list[re.Pattern[str]]] = [
    re.compile(r"/Users/\w+"),
    re.compile(r"/home/\w+"),
    re.compile(r"[A-Z]:\\"),
    re.compile(r"\b(api[_-]?key|secret|token|password|credential|dsn)\b", re.IGNORECASE),
    re.compile(r"\b(STRIPE_|SUPABASE_|SENTRY_|AWS_|DATABASE_URL)"),
    re.compile(r"\.(env|pem|key|cert)\b"),
    re.compile(r"Bearer\s+\S+"),
    re.compile(r"sk_live_|sk_test_|whsec_"),
]


def matching_pattern(text: str) -> re.Pattern[str] | None:
    for pattern in PRIVATE_PATTERNS:
        if pattern.search(text):
            return pattern
    return None


def classify_visibility(title: str, detail: str | None = None) -> str:
    text = f"{title or ''} {detail or ''}"
    return PRIVATE if matching_pattern(text) is not None else PUBLIC
