"""CLI tests."""

from __future__ import annotations

import json
from pathlib import Path

from helpers import far_point, series
from visitwatch.cli import main
from visitwatch.db import SQLiteClient
from visitwatch.repositories.detection_repository import DetectionRepository


def test_cli_init_db_then_detect_visits(capsys, tmp_path: Path) -> None:
    db_path = tmp_path / "data" / "visitwatch.db"

    assert main(["init-db", "--db-path", str(db_path)]) == 0
    capsys.readouterr()

    repository = DetectionRepository(SQLiteClient(db_path))
    repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])

    exit_code = main(["detect-visits", "--db-path", str(db_path), "--timezone", "UTC"])

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"created": 1}


def test_cli_periods_output(capsys, tmp_path: Path) -> None:
    db_path = tmp_path / "visitwatch.db"
    assert main(["init-db", "--db-path", str(db_path)]) == 0
    capsys.readouterr()
    DetectionRepository(SQLiteClient(db_path)).insert_points([*series(0, 30), far_point(45)])

    exit_code = main(
        [
            "periods",
            "--db-path",
            str(db_path),
            "--lat",
            "0",
            "--lon",
            "0",
            "--radius-m",
            "50",
        ]
    )

    assert exit_code == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["point_count"] == 16


def test_cli_reports_missing_database(capsys, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("VISITWATCH_DB_PATH", raising=False)

    exit_code = main(["detect-unknown", "--db-path", str(tmp_path / "absent.db")])

    assert exit_code == 1
    assert "Error:" in capsys.readouterr().err


def test_cli_nearby_places_not_found(capsys, tmp_path: Path) -> None:
    db_path = tmp_path / "visitwatch.db"
    assert main(["init-db", "--db-path", str(db_path)]) == 0
    capsys.readouterr()

    assert main(["nearby-places", "--db-path", str(db_path), "--visit-id", "42"]) == 1
    assert "not found" in capsys.readouterr().err
