from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/memtrail/config.json").expanduser()
DEFAULT_DB_PATH = Path("~/.memtrail/memory.sqlite").expanduser()

DEFAULT_KNOWLEDGE_SOURCE_FILES = ["CLAUDE.md", "MEMORY.md", "corrections.md"]
DEFAULT_VENDORED_DIRS = ["node_modules"]
DEFAULT_DECISION_PHRASES = [
    "chose",
    "decided",
    "switching to",
    "moving from",
    "going with",
    "migrated to",
    "refactored into",
    "split into modules",
]

CONFIG_ENV_OVERRIDES = {
    "db_path": "MEMTRAIL_DB",
    "project_root": "MEMTRAIL_PROJECT_ROOT",
    "plans_dir": "MEMTRAIL_PLANS_DIR",
    "knowledge_source_files": "MEMTRAIL_KNOWLEDGE_SOURCE_FILES",
    "vendored_dirs": "MEMTRAIL_VENDORED_DIRS",
    "decision_phrases": "MEMTRAIL_DECISION_PHRASES",
    "detail_max_chars": "MEMTRAIL_DETAIL_MAX_CHARS",
    "evidence_max_chars": "MEMTRAIL_EVIDENCE_MAX_CHARS",
}


@dataclass
class MemtrailConfig:
    db_path: str = str(DEFAULT_DB_PATH)
    # Paths under this root are shown project-relative in titles.
    project_root: str | None = None
    plans_dir: str = "docs/plans"
    knowledge_source_files: list[str] = field(
        default_factory=lambda: list(DEFAULT_KNOWLEDGE_SOURCE_FILES)
    )
    vendored_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_VENDORED_DIRS))
    decision_phrases: list[str] = field(default_factory=lambda: list(DEFAULT_DECISION_PHRASES))
    # Character caps applied to stored detail and evidence text.
    detail_max_chars: int = 2000
    evidence_max_chars: int = 500

    def resolved_project_root(self) -> str:
        return self.project_root or os.getcwd()


_FIELD_KINDS = {
    "db_path": "str",
    "project_root": "str",
    "plans_dir": "str",
    "knowledge_source_files": "list",
    "vendored_dirs": "list",
    "decision_phrases": "list",
    "detail_max_chars": "int",
    "evidence_max_chars": "int",
}


def get_config_path(path: Path | None = None) -> Path:
    if path is not None:
        return path.expanduser()
    return Path(os.environ.get("MEMTRAIL_CONFIG") or DEFAULT_CONFIG_PATH).expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    """Return the raw settings stored at ``path``; ``{}`` for a missing or blank file."""

    target = get_config_path(path)
    try:
        text = target.read_text()
    except FileNotFoundError:
        return {}
    if not text.strip():
        return {}
    try:
        settings = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(settings, dict):
        raise ValueError("config must be an object")
    return settings


def write_config_file(settings: dict[str, Any], path: Path | None = None) -> Path:
    target = get_config_path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings, indent=2, sort_keys=True, ensure_ascii=False) + "\n")
    return target


def get_env_overrides() -> dict[str, str]:
    return {
        key: os.environ[env_var]
        for key, env_var in CONFIG_ENV_OVERRIDES.items()
        if env_var in os.environ
    }


def _warn(key: str, kind: str, value: object) -> None:
    warnings.warn(f"Ignoring {kind} value for {key}: {value!r}", RuntimeWarning, stacklevel=3)


def _coerce(key: str, value: object) -> tuple[bool, Any]:
    """Convert a file or env value for ``key``; the flag is False when it must be ignored."""

    kind = _FIELD_KINDS[key]
    if kind == "int":
        if isinstance(value, bool):
            _warn(key, "int", value)
            return False, None
        try:
            number = int(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            _warn(key, "int", value)
            return False, None
        if number <= 0:
            _warn(key, "int", value)
            return False, None
        return True, number
    if kind == "list":
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            _warn(key, "list", value)
            return False, None
        return True, [item.strip() for item in value if isinstance(item, str) and item.strip()]
    if not isinstance(value, str):
        _warn(key, "string", value)
        return False, None
    return True, value


def _merge(cfg: MemtrailConfig, settings: dict[str, Any]) -> None:
    for key, value in settings.items():
        if key not in _FIELD_KINDS or value is None:
            continue
        ok, coerced = _coerce(key, value)
        if ok:
            setattr(cfg, key, coerced)


def load_config(path: Path | None = None) -> MemtrailConfig:
    """Build the effective config: defaults, then the JSON file, then ``MEMTRAIL_*`` env vars."""

    cfg = MemtrailConfig()
    source = get_config_path(path)
    try:
        _merge(cfg, read_config_file(source))
    except ValueError as exc:
        warnings.warn(f"Ignoring config at {source}: {exc}", RuntimeWarning, stacklevel=2)
    _merge(cfg, get_env_overrides())
    return cfg


__all__ = [
    "CONFIG_ENV_OVERRIDES",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DB_PATH",
    "DEFAULT_DECISION_PHRASES",
    "DEFAULT_KNOWLEDGE_SOURCE_FILES",
    "DEFAULT_VENDORED_DIRS",
    "MemtrailConfig",
    "get_env_overrides",
    "get_config_path",
    "load_config",
    "read_config_file",
    "write_config_file",
]
