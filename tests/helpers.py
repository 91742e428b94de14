"""Shared test data builders."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from visitwatch.db import SQLiteClient
from visitwatch.domain.detection_types import LocationPoint
from visitwatch.repositories.detection_repository import DetectionRepository

BASE_AT = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
# 距原点约 157 km。
FAR_LAT = 1.0
FAR_LON = 1.0


def at(minutes: float) -> datetime:
    return BASE_AT + timedelta(minutes=minutes)


def point(
    minutes: float,
    lat: float = 0.0,
    lon: float = 0.0,
    accuracy_m: float | None = None,
    point_id: int = 0,
) -> LocationPoint:
    return LocationPoint(
        point_id=point_id,
        timestamp=int(at(minutes).timestamp()),
        latitude=lat,
        longitude=lon,
        accuracy_m=accuracy_m,
    )


def far_point(minutes: float) -> LocationPoint:
    return point(minutes, FAR_LAT, FAR_LON)


def series(
    start_minutes: float,
    end_minutes: float,
    step_minutes: float = 2,
    lat: float = 0.0,
    lon: float = 0.0,
) -> list[LocationPoint]:
    """[start, end] 内按固定间隔生成的点。"""

    points: list[LocationPoint] = []
    minutes = start_minutes
    while minutes <= end_minutes:
        points.append(point(minutes, lat, lon))
        minutes += step_minutes
    return points


def run_in_parallel(db_path: Path, action: Callable[[DetectionRepository, int], int], workers: int) -> list[int]:
    """每个线程使用独立客户端，在同一时刻启动 action。"""

    barrier = threading.Barrier(workers)

    def worker(index: int) -> int:
        repository = DetectionRepository(SQLiteClient(db_path=db_path, retry_backoff_seconds=0.01))
        barrier.wait()
        return action(repository, index)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(worker, index) for index in range(workers)]
        return [future.result() for future in futures]
