from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class NoActiveSessionError(RuntimeError):
    """Raised when a write needs an active session and none exists."""


@dataclass
class Session:
    id: int
    session_id: str
    status: str
    started_at: str
    started_at_epoch: int
    ended_at: str | None = None
    ended_at_epoch: int | None = None
    project: str | None = None
    git_branch: str | None = None
    plan_file: str | None = None
    task_id: str | None = None
    plan_progress: dict[str, str] = field(default_factory=dict)
    summary: str | None = None


@dataclass
class Observation:
    id: int
    session_id: str
    type: str
    title: str
    detail: str | None
    importance: int
    visibility: str
    recurrence_count: int
    created_at: str
    created_at_epoch: int
    files_involved: list[str] = field(default_factory=list)
    rule_id: str | None = None
    verification_type: str | None = None
    plan_item: str | None = None
    evidence: str | None = None
    original_tokens: int = 0
    score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "type": self.type,
            "title": self.title,
            "detail": self.detail,
            "importance": self.importance,
            "visibility": self.visibility,
            "recurrence_count": self.recurrence_count,
            "created_at": self.created_at,
            "files_involved": list(self.files_involved),
            "rule_id": self.rule_id,
            "verification_type": self.verification_type,
            "plan_item": self.plan_item,
            "evidence": self.evidence,
        }


@dataclass(frozen=True, slots=True)
class UserPrompt:
    session_id: str
    number: int
    text: str
    created_at: str


@dataclass(frozen=True, slots=True)
class AddResult:
    id: int
    created: bool
    recurrence_count: int


@dataclass
class Timeline:
    anchor_id: int
    items: list[Observation]

    @property
    def anchor(self) -> Observation:
        return next(item for item in self.items if item.id == self.anchor_id)
