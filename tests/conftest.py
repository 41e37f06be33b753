"""Shared test fixtures — isolated settings and a scratch bashrc."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from shellkeep.config import KeepSettings

RC_TEXT = "# system bashrc\nexport PS1='$ '\nalias ll='ls -l'\n"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's SHELLKEEP_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("SHELLKEEP_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def rc_file(tmp_path) -> Path:
    path = tmp_path / "etc" / "bash.bashrc"
    path.parent.mkdir()
    path.write_text(RC_TEXT)
    return path


@pytest.fixture
def payload(tmp_path) -> Path:
    path = tmp_path / "home" / "worker.py"
    path.parent.mkdir()
    path.write_text("print('hi')\n")
    return path


@pytest.fixture
def make_settings(tmp_path, rc_file):
    def _factory(**overrides) -> KeepSettings:
        values = {
            "home": str(tmp_path / "home"),
            "payload_path": str(tmp_path / "home" / "worker.py"),
            "python_bin": sys.executable,
            "rc_path": str(rc_file),
            "retry_delay": 0,
        }
        values.update(overrides)
        return KeepSettings(**values)
    return _factory
