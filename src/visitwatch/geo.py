"""几何与时间基础函数。"""

from __future__ import annotations

import math
import statistics
from bisect import bisect_left, bisect_right
from datetime import datetime
from typing import Sequence

from visitwatch.domain.detection_types import LocationPoint

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """两点球面距离（千米，haversine）。"""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    hav = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2) ** 2)
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(hav)))


def is_outside(
    point: LocationPoint,
    center_lat: float,
    center_lon: float,
    radius_km: float,
) -> bool:
    """点是否严格位于圆外（边界算圆内）。"""

    return distance_km(point.latitude, point.longitude, center_lat, center_lon) > radius_km


def first_index_after(points: Sequence[LocationPoint], threshold: datetime) -> int:
    """首个 recorded_at > threshold 的下标。"""

    return bisect_right(points, threshold, key=lambda point: point.recorded_at)


def first_index_at_or_after(points: Sequence[LocationPoint], threshold: datetime) -> int:
    """首个 recorded_at >= threshold 的下标。"""

    return bisect_left(points, threshold, key=lambda point: point.recorded_at)


def has_evidence_of_leaving(
    points: Sequence[LocationPoint],
    from_at: datetime,
    to_at: datetime,
    center_lat: float,
    center_lon: float,
    radius_km: float,
) -> bool:
    """间隔 (from_at, to_at) 内是否有圆外定位点。

    两端均不包含。points 必须按时间升序。静默间隔本身不算离开，
    只有实际记录到的圆外点才算。
    """

    for index in range(first_index_after(points, from_at), len(points)):
        point = points[index]
        if point.recorded_at >= to_at:
            break
        if is_outside(point, center_lat, center_lon, radius_km):
            return True
    return False


def robust_center(points: Sequence[LocationPoint]) -> tuple[float, float]:
    """逐坐标轴中位数中心；偶数个点取中间两值均值。"""

    if not points:
        raise ValueError("robust_center requires at least one point.")
    latitude = statistics.median(point.latitude for point in points)
    longitude = statistics.median(point.longitude for point in points)
    return latitude, longitude
