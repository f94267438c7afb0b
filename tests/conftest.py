from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest

from capgate.validation.config import Config
from tests.mocks.mock_backend import MockBackend


@pytest.fixture(autouse=True)
def isolate_config(tmp_path: Path, monkeypatch: Any) -> Path:
    """Keep tests away from the user's global config and CAPGATE_CONFIG."""
    home = tmp_path / "home"
    monkeypatch.setattr(Config, "GLOBAL_CONFIG_DIR", home / ".capgate")
    monkeypatch.delenv(Config.ENV_VAR, raising=False)
    return home


@pytest.fixture(autouse=True)
def capture_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="capgate")


@pytest.fixture
def echo_backend() -> MockBackend:
    return MockBackend("echo").add_echo()
