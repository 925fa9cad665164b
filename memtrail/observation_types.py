from __future__ import annotations

from typing import Final

OBSERVATION_TYPES: Final[tuple[str, ...]] = (
    "decision",
    "bugfix",
    "feature",
    "refactor",
    "discovery",
    "rule_violation",
    "verification_check",
    "pattern_compliance",
    "failed_attempt",
    "file_change",
    "incident_near_miss",
)

SESSION_STATUSES: Final[tuple[str, ...]] = ("active", "completed", "abandoned")
TERMINAL_SESSION_STATUSES: Final[tuple[str, ...]] = ("completed", "abandoned")

OUTCOME_PASS: Final = "PASS"
OUTCOME_FAIL: Final = "FAIL"

DEFAULT_IMPORTANCE: Final = 3
MIN_IMPORTANCE: Final = 1
MAX_IMPORTANCE: Final = 5

_FIXED_IMPORTANCE: Final[dict[str, int]] = {
    "decision": 5,
    "failed_attempt": 5,
    "rule_violation": 4,
    "incident_near_miss": 4,
    "feature": 3,
    "bugfix": 3,
    "refactor": 2,
    "file_change": 1,
    "discovery": 1,
}

# Types whose importance depends on whether the check passed.
_OUTCOME_TYPES: Final[frozenset[str]] = frozenset({"verification_check", "pattern_compliance"})


def normalize_observation_type(obs_type: str) -> str:
    return (obs_type or "").strip().lower()


def validate_observation_type(obs_type: str) -> str:
    normalized = normalize_observation_type(obs_type)
    if normalized in OBSERVATION_TYPES:
        return normalized
    raise ValueError(
        f"Invalid observation type '{normalized}'. Allowed types: {', '.join(OBSERVATION_TYPES)}"
    )


def validate_importance(importance: int) -> int:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise ValueError(f"Importance must be an integer, got {importance!r}")
    if importance < MIN_IMPORTANCE or importance > MAX_IMPORTANCE:
        raise ValueError(
            f"Importance must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}, got {importance}"
        )
    return importance


def validate_session_status(status: str, *, terminal: bool = False) -> str:
    normalized = (status or "").strip().lower()
    allowed = TERMINAL_SESSION_STATUSES if terminal else SESSION_STATUSES
    if normalized in allowed:
        return normalized
    raise ValueError(f"Invalid session status '{normalized}'. Allowed: {', '.join(allowed)}")


def assign_importance(obs_type: str, outcome: str | None = None) -> int:
    """Map an observation type (and check outcome, if any) to a 1-5 importance.

    Checks that passed are routine; anything else about a check is worth
    surfacing, so a missing outcome ranks like a failure.
    """

    normalized = normalize_observation_type(obs_type)
    if normalized in _OUTCOME_TYPES:
        return 2 if (outcome or "").upper() == OUTCOME_PASS else 4
    return _FIXED_IMPORTANCE.get(normalized, DEFAULT_IMPORTANCE)
