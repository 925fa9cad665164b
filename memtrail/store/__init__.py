from __future__ import annotations

from ._store import MemoryStore
from .types import (
    AddResult,
    NoActiveSessionError,
    Observation,
    Session,
    Timeline,
    UserPrompt,
)

__all__ = [
    "AddResult",
    "MemoryStore",
    "NoActiveSessionError",
    "Observation",
    "Session",
    "Timeline",
    "UserPrompt",
]
