"""Shared fixtures for the fleetsync test suite."""

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from fleetsync.config import MigrationConfig

from .fakes import FakeMotorClient

TEST_DATABASE = "fleetsync_test"


@pytest.fixture
def fake_client(monkeypatch) -> FakeMotorClient:
    """A fake MongoDB server wired in place of AsyncIOMotorClient."""
    client = FakeMotorClient()
    monkeypatch.setattr("fleetsync.migration.target.AsyncIOMotorClient", client)
    return client


@pytest.fixture
def fake_db(fake_client):
    return fake_client[TEST_DATABASE]


@pytest.fixture
def write_source(tmp_path):
    """Write a JSON source file and return its path."""

    def _write(data: Any, name: str = "data.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_config(tmp_path):
    """Build a MigrationConfig pointing at tmp_path."""

    def _make(source_path: Path = None, **overrides: Dict[str, Any]) -> MigrationConfig:
        values = {
            "connection_string": "mongodb://localhost:27017",
            "database_name": TEST_DATABASE,
            "source_path": source_path or tmp_path / "data.json",
            "backup_dir": tmp_path / "backups",
        }
        values.update(overrides)
        return MigrationConfig(**values)

    return _make
