"""未知地点停留聚类服务。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from visitwatch.domain.detection_types import DetectionSettings, LocationPoint, Place
from visitwatch.geo import distance_km, has_evidence_of_leaving, robust_center
from visitwatch.repositories.detection_repository import DetectionRepository

logger = logging.getLogger(__name__)

# 簇内落在同一已知地点中的点占比达到该值即视为已知地点停留。
KNOWN_PLACE_MAJORITY = 0.5


@dataclass(frozen=True, slots=True)
class Cluster:
    """快照中一段连续点组成的簇。

    成员为 snapshot[first:last + 1]；中心为按精度加权的滑动均值，
    仅用于聚类过程中的归属判断。
    """

    first: int
    last: int
    arrival_at: datetime
    departure_at: datetime
    center_lat: float
    center_lon: float
    total_weight: float

    @classmethod
    def start(cls, index: int, point: LocationPoint) -> Cluster:
        return cls(
            first=index,
            last=index,
            arrival_at=point.recorded_at,
            departure_at=point.recorded_at,
            center_lat=point.latitude,
            center_lon=point.longitude,
            total_weight=point_weight(point),
        )

    @property
    def point_count(self) -> int:
        return self.last - self.first + 1

    def extend(self, index: int, point: LocationPoint) -> Cluster:
        """并入一个点，增量更新加权中心。"""

        weight = point_weight(point)
        total_weight = self.total_weight + weight
        share = weight / total_weight
        return Cluster(
            first=self.first,
            last=index,
            arrival_at=self.arrival_at,
            departure_at=point.recorded_at,
            center_lat=self.center_lat + (point.latitude - self.center_lat) * share,
            center_lon=self.center_lon + (point.longitude - self.center_lon) * share,
            total_weight=total_weight,
        )

    def merge(self, other: Cluster) -> Cluster:
        """与其后相邻簇合并，中心按点数加权。"""

        count = self.point_count
        other_count = other.point_count
        combined = count + other_count
        return Cluster(
            first=self.first,
            last=other.last,
            arrival_at=self.arrival_at,
            departure_at=other.departure_at,
            center_lat=(self.center_lat * count + other.center_lat * other_count) / combined,
            center_lon=(self.center_lon * count + other.center_lon * other_count) / combined,
            total_weight=self.total_weight + other.total_weight,
        )

    def members(self, snapshot: Sequence[LocationPoint]) -> Sequence[LocationPoint]:
        return snapshot[self.first : self.last + 1]


@dataclass(frozen=True, slots=True)
class ClusterFold:
    """单次前向扫描的结果：已关闭的簇与仍开放的簇。"""

    closed: list[Cluster] = field(default_factory=list)
    open: Cluster | None = None

    def clusters(self) -> list[Cluster]:
        if self.open is None:
            return list(self.closed)
        return [*self.closed, self.open]


class UnknownDwellClusterer:
    """在原始定位点中寻找无法由已知地点解释的停留。"""

    def __init__(self, repository: DetectionRepository) -> None:
        self._repository = repository

    def detect_unknown_visits(
        self,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> int:
        """创建未知停留建议，返回新增数。"""

        settings = self._repository.settings()
        gap = settings.unknown_session_gap
        points = self._repository.points_in_range(
            range_start - gap if range_start is not None else None,
            range_end + gap if range_end is not None else None,
        )
        if not points:
            return 0

        places = self._repository.all_places()
        clusters = merge_clusters(fold_clusters(points, settings).clusters(), points, settings)
        survivors = [
            cluster
            for cluster in clusters
            if cluster.departure_at - cluster.arrival_at >= settings.unknown_min_dwell
            and not is_known_place_dwell(cluster.members(points), places)
            and _overlaps_range(cluster, range_start, range_end)
        ]

        created = 0
        with self._repository.exclusive():
            for cluster in survivors:
                if self._repository.find_overlapping_suggestions(cluster.arrival_at, cluster.departure_at):
                    continue
                latitude, longitude = robust_center(cluster.members(points))
                self._repository.create_suggestion(
                    latitude=latitude,
                    longitude=longitude,
                    arrival_at=cluster.arrival_at,
                    departure_at=cluster.departure_at,
                    point_count=cluster.point_count,
                )
                created += 1

        logger.info(
            "Unknown dwells: %s point(s), %s cluster(s), %s survivor(s), %s created",
            len(points),
            len(clusters),
            len(survivors),
            created,
        )
        return created


def point_weight(point: LocationPoint) -> float:
    """精度已知且为正时权重为 1/accuracy，否则为 1。"""

    if point.accuracy_m is not None and point.accuracy_m > 0:
        return 1.0 / point.accuracy_m
    return 1.0


def step_cluster(
    open_cluster: Cluster | None,
    index: int,
    snapshot: Sequence[LocationPoint],
    settings: DetectionSettings,
) -> tuple[Cluster | None, Cluster]:
    """前向扫描的单步：返回 (本步关闭的簇, 新的开放簇)。"""

    point = snapshot[index]
    if open_cluster is None:
        return None, Cluster.start(index, point)

    radius_km = settings.unknown_cluster_radius_km
    distance = distance_km(point.latitude, point.longitude, open_cluster.center_lat, open_cluster.center_lon)
    if distance > radius_km:
        return open_cluster, Cluster.start(index, point)

    if point.recorded_at - open_cluster.departure_at <= settings.unknown_session_gap:
        return None, open_cluster.extend(index, point)

    if has_evidence_of_leaving(
        snapshot,
        open_cluster.departure_at,
        point.recorded_at,
        open_cluster.center_lat,
        open_cluster.center_lon,
        radius_km,
    ):
        return open_cluster, Cluster.start(index, point)
    return None, open_cluster.extend(index, point)


def fold_clusters(points: Sequence[LocationPoint], settings: DetectionSettings) -> ClusterFold:
    """按时间顺序折叠所有点。"""

    closed: list[Cluster] = []
    open_cluster: Cluster | None = None
    for index in range(len(points)):
        finished, open_cluster = step_cluster(open_cluster, index, points, settings)
        if finished is not None:
            closed.append(finished)
    return ClusterFold(closed=closed, open=open_cluster)


def merge_clusters(
    clusters: Sequence[Cluster],
    snapshot: Sequence[LocationPoint],
    settings: DetectionSettings,
) -> list[Cluster]:
    """反复合并相邻簇直到不再变化。

    每个有合并的轮次簇数至少减一，因此轮次不超过初始簇数。
    """

    current = list(clusters)
    for _ in range(len(current)):
        merged = _merge_pass(current, snapshot, settings)
        if len(merged) == len(current):
            return merged
        current = merged
    return current


def can_merge(
    left: Cluster,
    right: Cluster,
    snapshot: Sequence[LocationPoint],
    settings: DetectionSettings,
) -> bool:
    """中心足够近、间隔不超过会话间隔且间隔内无离开证据。"""

    radius_km = settings.unknown_cluster_radius_km
    if distance_km(left.center_lat, left.center_lon, right.center_lat, right.center_lon) > radius_km:
        return False
    if right.arrival_at - left.departure_at > settings.unknown_session_gap:
        return False
    return not has_evidence_of_leaving(
        snapshot,
        left.departure_at,
        right.arrival_at,
        (left.center_lat + right.center_lat) / 2,
        (left.center_lon + right.center_lon) / 2,
        radius_km,
    )


def is_known_place_dwell(members: Sequence[LocationPoint], places: Sequence[Place]) -> bool:
    """按地点逐一投票：某个地点半径内的原始点占比不少于一半。"""

    if not members or not places:
        return False

    threshold = len(members) * KNOWN_PLACE_MAJORITY
    for place in places:
        inside = sum(
            1
            for point in members
            if distance_km(point.latitude, point.longitude, place.latitude, place.longitude) <= place.radius_km
        )
        if inside >= threshold:
            return True
    return False


def _merge_pass(
    clusters: list[Cluster],
    snapshot: Sequence[LocationPoint],
    settings: DetectionSettings,
) -> list[Cluster]:
    merged: list[Cluster] = []
    for cluster in clusters:
        if merged and can_merge(merged[-1], cluster, snapshot, settings):
            merged[-1] = merged[-1].merge(cluster)
        else:
            merged.append(cluster)
    return merged


def _overlaps_range(
    cluster: Cluster,
    range_start: datetime | None,
    range_end: datetime | None,
) -> bool:
    """与未缓冲的范围重叠；完整覆盖范围的簇同样保留。"""

    return (range_end is None or cluster.arrival_at <= range_end) and (
        range_start is None or cluster.departure_at >= range_start
    )
