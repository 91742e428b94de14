"""到访检测数据仓储。"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator

from visitwatch.db.sqlite_client import SQLiteClient
from visitwatch.domain.detection_types import (
    DetectionSettings,
    LocationPoint,
    Place,
    UnknownVisitSuggestion,
    Visit,
    VisitStatus,
)

_SETTINGS_COLUMNS = (
    "session_gap_minutes",
    "min_dwell_minutes",
    "post_departure_minutes",
    "unknown_session_gap_minutes",
    "unknown_min_dwell_minutes",
    "unknown_cluster_radius_m",
)


class DetectionRepository:
    """封装定位点、地点、到访与未知停留建议的 SQL。"""

    def __init__(self, client: SQLiteClient) -> None:
        self._client = client

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """写阶段独占锁，串行化并发检测运行。"""

        with self._client.transaction():
            yield

    # 定位点

    def points_in_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LocationPoint]:
        """查询闭区间内定位点，按时间升序。"""

        clauses: list[str] = []
        params: dict[str, Any] = {}
        if start is not None:
            clauses.append("timestamp >= :start_ts")
            params["start_ts"] = _to_epoch(start)
        if end is not None:
            clauses.append("timestamp <= :end_ts")
            params["end_ts"] = _to_epoch(end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        sql = f"""
        SELECT
            id, timestamp, latitude, longitude,
            accuracy_m, speed_mps, bearing_deg, battery
        FROM location_points
        {where}
        ORDER BY timestamp ASC;
        """
        rows = self._client.execute_query(sql, params)
        return [
            LocationPoint(
                point_id=int(row["id"]),
                timestamp=int(row["timestamp"]),
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                accuracy_m=_optional_float(row["accuracy_m"]),
                speed_mps=_optional_float(row["speed_mps"]),
                bearing_deg=_optional_float(row["bearing_deg"]),
                battery=_optional_float(row["battery"]),
            )
            for row in rows
        ]

    def insert_points(self, points: Iterable[LocationPoint]) -> int:
        """写入定位点，按 timestamp 去重；返回新增条数。"""

        sql = """
        INSERT OR IGNORE INTO location_points (
            timestamp, latitude, longitude, accuracy_m, speed_mps, bearing_deg, battery
        ) VALUES (?, ?, ?, ?, ?, ?, ?);
        """
        inserted = 0
        with self._client.transaction():
            for point in points:
                inserted += self._client.execute_write(
                    sql,
                    (
                        point.timestamp,
                        point.latitude,
                        point.longitude,
                        point.accuracy_m,
                        point.speed_mps,
                        point.bearing_deg,
                        point.battery,
                    ),
                )
        return inserted

    # 地点

    def place(self, place_id: int) -> Place | None:
        rows = self._client.execute_query(
            "SELECT id, name, latitude, longitude, radius_m, is_active FROM places WHERE id = ?;",
            (place_id,),
        )
        if not rows:
            return None
        return _row_to_place(rows[0])

    def all_places(self, active_only: bool = False) -> list[Place]:
        where = "WHERE is_active = 1" if active_only else ""
        rows = self._client.execute_query(
            f"""
            SELECT id, name, latitude, longitude, radius_m, is_active
            FROM places
            {where}
            ORDER BY id ASC;
            """
        )
        return [_row_to_place(row) for row in rows]

    def create_place(
        self,
        name: str,
        latitude: float,
        longitude: float,
        radius_m: float,
        is_active: bool = True,
    ) -> Place:
        place_id = self._client.execute_insert(
            """
            INSERT INTO places (name, latitude, longitude, radius_m, is_active)
            VALUES (?, ?, ?, ?, ?);
            """,
            (name, latitude, longitude, radius_m, 1 if is_active else 0),
        )
        return Place(
            place_id=place_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            radius_m=radius_m,
            is_active=is_active,
        )

    def update_place(self, place: Place) -> None:
        self._client.execute_write(
            """
            UPDATE places
            SET name = ?, latitude = ?, longitude = ?, radius_m = ?, is_active = ?
            WHERE id = ?;
            """,
            (
                place.name,
                place.latitude,
                place.longitude,
                place.radius_m,
                1 if place.is_active else 0,
                place.place_id,
            ),
        )

    # 到访

    def visit(self, visit_id: int) -> Visit | None:
        rows = self._client.execute_query(
            "SELECT id, place_id, arrival_ts, departure_ts, status FROM visits WHERE id = ?;",
            (visit_id,),
        )
        if not rows:
            return None
        return _row_to_visit(rows[0])

    def find_overlapping_visits(
        self,
        place_id: int | None,
        arrival_at: datetime,
        departure_at: datetime,
    ) -> list[Visit]:
        """查询与区间（含端点）重叠的到访，任意状态。"""

        params: dict[str, Any] = {
            "arrival_ts": _to_epoch(arrival_at),
            "departure_ts": _to_epoch(departure_at),
        }
        place_clause = ""
        if place_id is not None:
            place_clause = "AND place_id = :place_id"
            params["place_id"] = place_id

        sql = f"""
        SELECT id, place_id, arrival_ts, departure_ts, status
        FROM visits
        WHERE
            arrival_ts <= :departure_ts
            AND departure_ts >= :arrival_ts
            {place_clause}
        ORDER BY arrival_ts ASC, id ASC;
        """
        rows = self._client.execute_query(sql, params)
        return [_row_to_visit(row) for row in rows]

    def find_visits(
        self,
        place_id: int | None = None,
        status: VisitStatus | None = None,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> list[Visit]:
        """按地点、状态及时间范围过滤到访。"""

        clauses: list[str] = []
        params: dict[str, Any] = {}
        if place_id is not None:
            clauses.append("place_id = :place_id")
            params["place_id"] = place_id
        if status is not None:
            clauses.append("status = :status")
            params["status"] = status
        if range_start is not None:
            clauses.append("departure_ts >= :range_start_ts")
            params["range_start_ts"] = _to_epoch(range_start)
        if range_end is not None:
            clauses.append("arrival_ts <= :range_end_ts")
            params["range_end_ts"] = _to_epoch(range_end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        sql = f"""
        SELECT id, place_id, arrival_ts, departure_ts, status
        FROM visits
        {where}
        ORDER BY arrival_ts ASC, id ASC;
        """
        rows = self._client.execute_query(sql, params)
        return [_row_to_visit(row) for row in rows]

    def create_visit(
        self,
        place_id: int,
        arrival_at: datetime,
        departure_at: datetime,
        status: VisitStatus = "suggested",
    ) -> Visit:
        visit_id = self._client.execute_insert(
            """
            INSERT INTO visits (place_id, arrival_ts, departure_ts, status)
            VALUES (?, ?, ?, ?);
            """,
            (place_id, _to_epoch(arrival_at), _to_epoch(departure_at), status),
        )
        return Visit(
            visit_id=visit_id,
            place_id=place_id,
            arrival_at=arrival_at,
            departure_at=departure_at,
            status=status,
        )

    def update_visit_status(self, visit_id: int, status: VisitStatus) -> None:
        self._client.execute_write(
            "UPDATE visits SET status = ? WHERE id = ?;",
            (status, visit_id),
        )

    def delete_visits(self, visit_ids: list[int]) -> int:
        if not visit_ids:
            return 0

        placeholders = ",".join("?" for _ in visit_ids)
        return self._client.execute_write(
            f"DELETE FROM visits WHERE id IN ({placeholders});",
            tuple(visit_ids),
        )

    # 未知停留建议

    def suggestion(self, suggestion_id: int) -> UnknownVisitSuggestion | None:
        rows = self._client.execute_query(
            """
            SELECT id, latitude, longitude, arrival_ts, departure_ts, point_count, status
            FROM unknown_visit_suggestions
            WHERE id = ?;
            """,
            (suggestion_id,),
        )
        if not rows:
            return None
        return _row_to_suggestion(rows[0])

    def find_overlapping_suggestions(
        self,
        arrival_at: datetime,
        departure_at: datetime,
    ) -> list[UnknownVisitSuggestion]:
        """查询与区间（含端点）重叠的建议，任意状态。"""

        sql = """
        SELECT id, latitude, longitude, arrival_ts, departure_ts, point_count, status
        FROM unknown_visit_suggestions
        WHERE
            arrival_ts <= :departure_ts
            AND departure_ts >= :arrival_ts
        ORDER BY arrival_ts ASC, id ASC;
        """
        rows = self._client.execute_query(
            sql,
            {
                "arrival_ts": _to_epoch(arrival_at),
                "departure_ts": _to_epoch(departure_at),
            },
        )
        return [_row_to_suggestion(row) for row in rows]

    def create_suggestion(
        self,
        latitude: float,
        longitude: float,
        arrival_at: datetime,
        departure_at: datetime,
        point_count: int,
        status: VisitStatus = "suggested",
    ) -> UnknownVisitSuggestion:
        suggestion_id = self._client.execute_insert(
            """
            INSERT INTO unknown_visit_suggestions (
                latitude, longitude, arrival_ts, departure_ts, point_count, status
            ) VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                latitude,
                longitude,
                _to_epoch(arrival_at),
                _to_epoch(departure_at),
                point_count,
                status,
            ),
        )
        return UnknownVisitSuggestion(
            suggestion_id=suggestion_id,
            latitude=latitude,
            longitude=longitude,
            arrival_at=arrival_at,
            departure_at=departure_at,
            point_count=point_count,
            status=status,
        )

    def update_suggestion(self, suggestion: UnknownVisitSuggestion) -> None:
        self._client.execute_write(
            """
            UPDATE unknown_visit_suggestions
            SET status = ?, arrival_ts = ?, departure_ts = ?
            WHERE id = ?;
            """,
            (
                suggestion.status,
                _to_epoch(suggestion.arrival_at),
                _to_epoch(suggestion.departure_at),
                suggestion.suggestion_id,
            ),
        )

    def delete_suggestion(self, suggestion_id: int) -> int:
        return self._client.execute_write(
            "DELETE FROM unknown_visit_suggestions WHERE id = ?;",
            (suggestion_id,),
        )

    # 设置

    def settings(self) -> DetectionSettings:
        """读取检测阈值；缺失或非正值回退默认，且不小于 1。"""

        columns = ", ".join(_SETTINGS_COLUMNS)
        rows = self._client.execute_query(f"SELECT {columns} FROM app_settings WHERE id = 1;")
        defaults = DetectionSettings()
        if not rows:
            return defaults

        row = dict(rows[0])
        return DetectionSettings(
            session_gap_minutes=_clamp_int(row["session_gap_minutes"], defaults.session_gap_minutes),
            min_dwell_minutes=_clamp_int(row["min_dwell_minutes"], defaults.min_dwell_minutes),
            post_departure_minutes=_clamp_int(
                row["post_departure_minutes"], defaults.post_departure_minutes
            ),
            unknown_session_gap_minutes=_clamp_int(
                row["unknown_session_gap_minutes"], defaults.unknown_session_gap_minutes
            ),
            unknown_min_dwell_minutes=_clamp_int(
                row["unknown_min_dwell_minutes"], defaults.unknown_min_dwell_minutes
            ),
            unknown_cluster_radius_m=max(
                1.0,
                _optional_float(row["unknown_cluster_radius_m"]) or defaults.unknown_cluster_radius_m,
            ),
        )

    def save_settings(self, settings: DetectionSettings) -> None:
        placeholders = ", ".join(f":{column}" for column in _SETTINGS_COLUMNS)
        assignments = ", ".join(f"{column} = excluded.{column}" for column in _SETTINGS_COLUMNS)
        sql = f"""
        INSERT INTO app_settings (id, {", ".join(_SETTINGS_COLUMNS)})
        VALUES (1, {placeholders})
        ON CONFLICT (id) DO UPDATE SET {assignments};
        """
        self._client.execute_write(
            sql,
            {column: getattr(settings, column) for column in _SETTINGS_COLUMNS},
        )


def _to_epoch(value: datetime) -> int:
    """时区时间转 Unix 秒。"""

    return int(value.astimezone(timezone.utc).timestamp())


def _from_epoch(value: int | float) -> datetime:
    """Unix 秒转 UTC 时间。"""

    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _optional_float(value: object | None) -> float | None:
    if value is None:
        return None
    return float(value)


def _clamp_int(value: object | None, default: int) -> int:
    """非空正数取整，否则用默认值；结果至少为 1。"""

    try:
        number = int(value) if value is not None else 0
    except (TypeError, ValueError):
        number = 0
    return max(1, number or default)


def _row_to_place(row: Any) -> Place:
    return Place(
        place_id=int(row["id"]),
        name=str(row["name"]),
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        radius_m=float(row["radius_m"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_visit(row: Any) -> Visit:
    return Visit(
        visit_id=int(row["id"]),
        place_id=int(row["place_id"]),
        arrival_at=_from_epoch(row["arrival_ts"]),
        departure_at=_from_epoch(row["departure_ts"]),
        status=row["status"],
    )


def _row_to_suggestion(row: Any) -> UnknownVisitSuggestion:
    return UnknownVisitSuggestion(
        suggestion_id=int(row["id"]),
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        arrival_at=_from_epoch(row["arrival_ts"]),
        departure_at=_from_epoch(row["departure_ts"]),
        point_count=int(row["point_count"]),
        status=row["status"],
    )
