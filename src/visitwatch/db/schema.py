"""数据库表结构。"""

from __future__ import annotations

from visitwatch.db.sqlite_client import SQLiteClient

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS location_points (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL UNIQUE,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    accuracy_m REAL,
    speed_mps REAL,
    bearing_deg REAL,
    battery REAL
);

CREATE TABLE IF NOT EXISTS places (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    radius_m REAL NOT NULL CHECK (radius_m > 0),
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS visits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    place_id INTEGER NOT NULL REFERENCES places (id) ON DELETE CASCADE,
    arrival_ts INTEGER NOT NULL,
    departure_ts INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'suggested'
        CHECK (status IN ('suggested', 'confirmed', 'rejected')),
    CHECK (arrival_ts < departure_ts)
);

CREATE INDEX IF NOT EXISTS idx_visits_place_time
    ON visits (place_id, arrival_ts, departure_ts);

CREATE TABLE IF NOT EXISTS unknown_visit_suggestions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    arrival_ts INTEGER NOT NULL,
    departure_ts INTEGER NOT NULL,
    point_count INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'suggested'
        CHECK (status IN ('suggested', 'confirmed', 'rejected')),
    CHECK (arrival_ts < departure_ts)
);

CREATE INDEX IF NOT EXISTS idx_unknown_suggestions_time
    ON unknown_visit_suggestions (arrival_ts, departure_ts);

CREATE TABLE IF NOT EXISTS app_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    session_gap_minutes INTEGER,
    min_dwell_minutes INTEGER,
    post_departure_minutes INTEGER,
    unknown_session_gap_minutes INTEGER,
    unknown_min_dwell_minutes INTEGER,
    unknown_cluster_radius_m REAL
);
"""


def ensure_schema(client: SQLiteClient) -> None:
    """创建缺失的表与索引。"""

    client.execute_script(SCHEMA_SQL)
