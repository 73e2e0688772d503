from __future__ import annotations

import os
from pathlib import Path

import pytest

from antnode.config import NodeSettings
from tests.fakes import RecordingKeyStore


@pytest.fixture(autouse=True)
def clean_ant_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("ANT_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def keystore() -> RecordingKeyStore:
    return RecordingKeyStore()


@pytest.fixture
def settings() -> NodeSettings:
    return NodeSettings(password="secret")


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    return path
