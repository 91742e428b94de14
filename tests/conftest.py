"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from visitwatch.db import SQLiteClient, ensure_schema
from visitwatch.repositories.detection_repository import DetectionRepository


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "visitwatch.db"


@pytest.fixture
def client(db_path: Path) -> SQLiteClient:
    sqlite_client = SQLiteClient(db_path=db_path, retry_backoff_seconds=0.0)
    ensure_schema(sqlite_client)
    return sqlite_client


@pytest.fixture
def repository(client: SQLiteClient) -> DetectionRepository:
    return DetectionRepository(client)
