from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def git_env(monkeypatch, tmp_path: Path) -> Path:
    """Isolate git from the invoking user's global and system config."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("GIT_DIR", raising=False)
    monkeypatch.delenv("GIT_WORK_TREE", raising=False)
    return home
