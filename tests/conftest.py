from __future__ import annotations

from pathlib import Path

import pytest

from memtrail import db
from memtrail.config import CONFIG_ENV_OVERRIDES, MemtrailConfig
from memtrail.store import MemoryStore


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv("MEMTRAIL_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("MEMTRAIL_DB", str(tmp_path / "default.sqlite"))


@pytest.fixture
def config(tmp_path: Path) -> MemtrailConfig:
    return MemtrailConfig(db_path=str(tmp_path / "mem.sqlite"), project_root="/repo")


@pytest.fixture
def store(config: MemtrailConfig):
    with MemoryStore(config.db_path, config=config) as opened:
        yield opened


@pytest.fixture
def fresh_registry():
    db.reset_initialized_paths()
    yield
    db.reset_initialized_paths()
