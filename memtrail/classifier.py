"""Turn tool calls and assistant text into typed observations.

Classification is table driven: ``TOOL_CLASSIFIERS`` maps a normalized tool
name to a handler, and shell commands go through ``SHELL_MATCHERS`` in order
until one claims the command. A structural-decision check over the tool
response runs before either.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .config import MemtrailConfig
from .ingest.noise import is_noisy_tool_call, tool_file_path
from .ingest.transcript import (
    estimate_tokens,
    extract_assistant_messages,
    extract_tool_calls,
)
from .ingest.types import ToolCall, TranscriptEntry
from .observation_types import OUTCOME_FAIL, OUTCOME_PASS

RULE_RE = re.compile(r"\bCR-(\d+)\b")
VERIFICATION_RE = re.compile(r"\bVR-([A-Z_]+)\b")
PLAN_ITEM_RE = re.compile(r"\bP(\d+)-(\d+)\b")
PLAN_PROGRESS_RE = re.compile(
    r"\b(P\d+-\d+)\s*[:\-]?\s*(COMPLETE|PASS|DONE)\b", re.IGNORECASE
)

COMMIT_HEREDOC_RE = re.compile(r"<<\s*['\"]?EOF['\"]?\s*\n?(.*?)EOF", re.DOTALL)
COMMIT_INLINE_RE = re.compile(r"-m\s+[\"'](.+?)[\"']", re.DOTALL)

FAILURE_TEXT_RE = re.compile(
    r"\b(?:error|failed|doesn't work|didn't work|reverted|rolled back|bug|broken)\b"
    r"|\b(?:issue|problem):",
    re.IGNORECASE,
)
DECISION_TEXT_RE = re.compile(
    r"\b(?:decided|chose|chosen|decision|instead of|opted for|going with)\b"
    r"|\b(?:approach|strategy):",
    re.IGNORECASE,
)
FRAGMENT_SPLIT_RE = re.compile(r"\n\n|\.\s+")

TEST_COMMAND_RE = re.compile(r"\b(?:npm test|vitest|pytest)\b")
TYPE_COMMAND_RE = re.compile(r"\b(?:tsc --noEmit|mypy|pyright)\b")
BUILD_COMMAND_RE = re.compile(r"\b(?:npm run build|python -m build)\b")

TITLE_MAX_CHARS = 200
FRAGMENT_MIN_CHARS = 20
FRAGMENT_MAX_CHARS = 500


@dataclass
class ExtractedObservation:
    type: str
    title: str
    detail: str | None = None
    outcome: str | None = None
    rule_id: str | None = None
    verification_type: str | None = None
    plan_item: str | None = None
    files_involved: list[str] = field(default_factory=list)
    evidence: str | None = None
    original_tokens: int = 0


@dataclass(frozen=True, slots=True)
class LinkedReferences:
    rule_id: str | None = None
    verification_type: str | None = None
    plan_item: str | None = None


def extract_linked_references(text: str) -> LinkedReferences:
    rule = RULE_RE.search(text or "")
    verification = VERIFICATION_RE.search(text or "")
    plan = PLAN_ITEM_RE.search(text or "")
    return LinkedReferences(
        rule_id=f"CR-{rule.group(1)}" if rule else None,
        verification_type=verification.group(1) if verification else None,
        plan_item=f"P{plan.group(1)}-{plan.group(2)}" if plan else None,
    )


def detect_plan_progress(text: str) -> list[str]:
    seen: list[str] = []
    for match in PLAN_PROGRESS_RE.finditer(text or ""):
        item = match.group(1).upper()
        if item not in seen:
            seen.append(item)
    return seen


def detect_plan_file(text: str, plans_dir: str) -> str | None:
    """Return the first markdown path under ``plans_dir`` mentioned in ``text``."""
    plans_dir = (plans_dir or "").strip().strip("/")
    if not plans_dir:
        return None
    pattern = re.compile(rf"(\S*{re.escape(plans_dir)}/\S+?\.md)\b")
    match = pattern.search(text or "")
    return match.group(1).strip("`'\"()") if match else None


def extract_commit_message(command: str) -> str:
    for pattern in (COMMIT_HEREDOC_RE, COMMIT_INLINE_RE):
        match = pattern.search(command)
        if not match:
            continue
        for line in match.group(1).splitlines():
            if line.strip():
                return line.strip()
    return "Unknown commit"


def shorten_path(path: str, project_root: str | None = None) -> str:
    if project_root:
        root = project_root.rstrip("/") + "/"
        if path.startswith(root):
            return path[len(root) :]
    home = str(Path.home()).rstrip("/") + "/"
    if path.startswith(home):
        return "~/" + path[len(home) :]
    return path


def detect_structural_decision(
    text: str, phrases: Sequence[str]
) -> ExtractedObservation | None:
    if not text:
        return None
    lowered = text.lower()
    if not any(phrase.lower() in lowered for phrase in phrases):
        return None
    first_line = text.strip().splitlines()[0][:TITLE_MAX_CHARS] if text.strip() else ""
    refs = extract_linked_references(text)
    return ExtractedObservation(
        type="decision",
        title=f"Architecture decision: {first_line}",
        detail=text[:1000],
        rule_id=refs.rule_id,
        plan_item=refs.plan_item,
        original_tokens=estimate_tokens(text),
    )


def _with_refs(obs: ExtractedObservation, text: str) -> ExtractedObservation:
    refs = extract_linked_references(text)
    obs.rule_id = obs.rule_id or refs.rule_id
    obs.verification_type = obs.verification_type or refs.verification_type
    obs.plan_item = obs.plan_item or refs.plan_item
    return obs


def _classify_write(call: ToolCall, config: MemtrailConfig) -> ExtractedObservation | None:
    path = tool_file_path(call.tool_input)
    if not path:
        return None
    short = shorten_path(path, config.resolved_project_root())
    obs = ExtractedObservation(
        type="file_change",
        title=f"Created/wrote: {short}",
        detail=path,
        files_involved=[path],
    )
    return _with_refs(obs, f"{call.tool_input.get('content') or ''}\n{path}")


def _classify_edit(call: ToolCall, config: MemtrailConfig) -> ExtractedObservation | None:
    path = tool_file_path(call.tool_input)
    if not path:
        return None
    short = shorten_path(path, config.resolved_project_root())
    obs = ExtractedObservation(
        type="file_change",
        title=f"Edited: {short}",
        detail=path,
        files_involved=[path],
    )
    return _with_refs(obs, f"{call.tool_input.get('new_string') or ''}\n{call.result}\n{path}")


def _classify_read(call: ToolCall, config: MemtrailConfig) -> ExtractedObservation | None:
    path = tool_file_path(call.tool_input)
    if not path:
        return None
    is_plan = bool(config.plans_dir) and config.plans_dir in path
    is_knowledge = any(name in path for name in config.knowledge_source_files)
    if not (is_plan or is_knowledge):
        return None
    short = shorten_path(path, config.resolved_project_root())
    return ExtractedObservation(
        type="discovery",
        title=f"Read: {short}",
        detail=path,
        files_involved=[path],
    )


def _classify_commit(call: ToolCall, command: str) -> ExtractedObservation:
    message = extract_commit_message(command)
    obs = ExtractedObservation(
        type="bugfix" if "fix" in message.lower() else "feature",
        title=f"Commit: {message[:150]}",
        detail=command,
    )
    return _with_refs(obs, f"{command}\n{call.result}")


def _classify_pattern_scan(call: ToolCall, command: str) -> ExtractedObservation:
    passed = "FAIL" not in call.result and "BLOCKED" not in call.result
    outcome = OUTCOME_PASS if passed else OUTCOME_FAIL
    return ExtractedObservation(
        type="pattern_compliance",
        title=f"Pattern Scanner: {outcome}",
        detail=call.result[:500],
        outcome=outcome,
        evidence=call.result[:500],
    )


def _classify_tests(call: ToolCall, command: str) -> ExtractedObservation:
    passed = not call.is_error and "FAIL" not in call.result
    outcome = OUTCOME_PASS if passed else OUTCOME_FAIL
    return ExtractedObservation(
        type="verification_check",
        title=f"Tests: {outcome}",
        detail=command,
        outcome=outcome,
        verification_type="TEST",
        evidence=call.result[:500],
    )


def _classify_build(call: ToolCall, command: str) -> ExtractedObservation:
    passed = not call.is_error and "error" not in call.result
    outcome = OUTCOME_PASS if passed else OUTCOME_FAIL
    tag = "TYPE" if TYPE_COMMAND_RE.search(command) else "BUILD"
    label = "Type check" if tag == "TYPE" else "Build"
    return ExtractedObservation(
        type="verification_check",
        title=f"{label}: {outcome}",
        detail=command,
        outcome=outcome,
        verification_type=tag,
        evidence=call.result[:500],
    )


ShellMatcher = tuple[Callable[[str], bool], Callable[[ToolCall, str], ExtractedObservation]]

# First match wins.
SHELL_MATCHERS: list[ShellMatcher] = [
    (lambda cmd: "git commit" in cmd, _classify_commit),
    (lambda cmd: "pattern-scanner" in cmd, _classify_pattern_scan),
    (lambda cmd: TEST_COMMAND_RE.search(cmd) is not None, _classify_tests),
    (
        lambda cmd: BUILD_COMMAND_RE.search(cmd) is not None
        or TYPE_COMMAND_RE.search(cmd) is not None,
        _classify_build,
    ),
]


def _classify_shell(call: ToolCall, config: MemtrailConfig) -> ExtractedObservation | None:
    command = str(call.tool_input.get("command") or "")
    for matches, handler in SHELL_MATCHERS:
        if matches(command):
            return handler(call, command)
    return None


ToolClassifier = Callable[[ToolCall, MemtrailConfig], ExtractedObservation | None]

TOOL_CLASSIFIERS: dict[str, ToolClassifier] = {
    "write": _classify_write,
    "edit": _classify_edit,
    "multiedit": _classify_edit,
    "read": _classify_read,
    "bash": _classify_shell,
}


def classify_tool_call(
    call: ToolCall, config: MemtrailConfig | None = None
) -> ExtractedObservation | None:
    config = config or MemtrailConfig()
    decision = detect_structural_decision(call.result, config.decision_phrases)
    if decision is not None:
        return decision
    handler = TOOL_CLASSIFIERS.get(call.normalized_name)
    if handler is None:
        return None
    obs = handler(call, config)
    if obs is not None and not obs.original_tokens:
        obs.original_tokens = estimate_tokens(
            json.dumps(call.tool_input, ensure_ascii=False) + call.result
        )
    return obs


def extract_text_observations(text: str) -> list[ExtractedObservation]:
    """Pull failure and decision statements out of free assistant text."""

    observations: list[ExtractedObservation] = []
    context = text[:200]
    for fragment in FRAGMENT_SPLIT_RE.split(text or ""):
        fragment = fragment.strip()
        if not (FRAGMENT_MIN_CHARS < len(fragment) < FRAGMENT_MAX_CHARS):
            continue
        if FAILURE_TEXT_RE.search(fragment):
            obs_type = "failed_attempt"
        elif DECISION_TEXT_RE.search(fragment):
            obs_type = "decision"
        else:
            continue
        obs = ExtractedObservation(
            type=obs_type,
            title=fragment[:TITLE_MAX_CHARS],
            detail=context,
            original_tokens=estimate_tokens(fragment),
        )
        observations.append(_with_refs(obs, fragment))
    return observations


def classify_tool_calls(
    calls: Iterable[ToolCall],
    config: MemtrailConfig | None = None,
    *,
    seen_reads: set[str] | None = None,
) -> tuple[list[ExtractedObservation], int]:
    """Classify calls after noise filtering; returns observations and the noise count."""

    config = config or MemtrailConfig()
    seen = seen_reads if seen_reads is not None else set()
    observations: list[ExtractedObservation] = []
    noise = 0
    for call in calls:
        if is_noisy_tool_call(call, seen, config.vendored_dirs):
            noise += 1
            continue
        obs = classify_tool_call(call, config)
        if obs is not None:
            observations.append(obs)
    return observations, noise


def extract_observations_from_entries(
    entries: Sequence[TranscriptEntry], config: MemtrailConfig | None = None
) -> list[ExtractedObservation]:
    observations, _ = classify_tool_calls(extract_tool_calls(entries), config)
    for message in extract_assistant_messages(entries):
        observations.extend(extract_text_observations(message))
    return observations
