import json
from pathlib import Path

import pytest

from memtrail.config import (
    DEFAULT_KNOWLEDGE_SOURCE_FILES,
    get_config_path,
    get_env_overrides,
    load_config,
    read_config_file,
    write_config_file,
)


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ValueError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ValueError, match="config must be an object"):
        read_config_file(config_path)


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.json")
    assert cfg.knowledge_source_files == DEFAULT_KNOWLEDGE_SOURCE_FILES
    assert cfg.detail_max_chars == 2000
    assert cfg.evidence_max_chars == 500


def test_load_config_applies_file_values(tmp_path: Path) -> None:
    config_path = write_config_file(
        {
            "plans_dir": "plans",
            "knowledge_source_files": ["NOTES.md"],
            "detail_max_chars": "900",
            "unknown_key": True,
        },
        tmp_path / "config.json",
    )
    cfg = load_config(config_path)
    assert cfg.plans_dir == "plans"
    assert cfg.knowledge_source_files == ["NOTES.md"]
    assert cfg.detail_max_chars == 900


def test_env_overrides_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"plans_dir": "plans"}))
    monkeypatch.setenv("MEMTRAIL_PLANS_DIR", "roadmap")
    monkeypatch.setenv("MEMTRAIL_VENDORED_DIRS", "node_modules, .venv")
    cfg = load_config(config_path)
    assert cfg.plans_dir == "roadmap"
    assert cfg.vendored_dirs == ["node_modules", ".venv"]
    assert get_env_overrides()["plans_dir"] == "roadmap"


def test_invalid_int_warns_and_keeps_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MEMTRAIL_DETAIL_MAX_CHARS", "lots")
    with pytest.warns(RuntimeWarning, match="detail_max_chars"):
        cfg = load_config()
    assert cfg.detail_max_chars == 2000


def test_config_path_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MEMTRAIL_CONFIG", str(tmp_path / "alt.json"))
    assert get_config_path() == tmp_path / "alt.json"
