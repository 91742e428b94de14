"""已知地点到访检测服务。"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from itertools import islice
from typing import Sequence

from visitwatch.domain.detection_types import (
    DetectionSettings,
    DwellCandidate,
    DwellPeriod,
    LocationPoint,
    NearbyPlace,
    Place,
    ReconcileResult,
    VisitNeighbourhood,
)
from visitwatch.geo import (
    distance_km,
    first_index_at_or_after,
    has_evidence_of_leaving,
    is_outside,
    robust_center,
)
from visitwatch.repositories.detection_repository import DetectionRepository

logger = logging.getLogger(__name__)

# 查询范围两侧的缓冲，避免边界处的停留被截断。
DAY_BUFFER = timedelta(days=5)
NEARBY_PLACE_RADIUS_M = 100.0
SINGLE_POINT_PADDING = timedelta(minutes=1)

SessionPoint = tuple[LocationPoint, float]


class KnownPlaceVisitDetector:
    """把定位点快照转换为地点到访建议。"""

    def __init__(self, repository: DetectionRepository) -> None:
        self._repository = repository

    def detect_visits_for_place(
        self,
        place_id: int,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> int:
        """为单个地点创建不与已有到访重叠的建议，返回新增数。"""

        place = self._repository.place(place_id)
        if place is None:
            return 0

        settings = self._repository.settings()
        points = self._load_points(range_start, range_end)
        candidates = [
            candidate
            for candidate in build_place_candidates(place, points, settings)
            if _overlaps_range(candidate.arrival_at, candidate.departure_at, range_start, range_end)
        ]
        if not candidates:
            return 0

        created = 0
        with self._repository.exclusive():
            for candidate in candidates:
                if self._repository.find_overlapping_visits(
                    place_id, candidate.arrival_at, candidate.departure_at
                ):
                    continue
                self._repository.create_visit(place_id, candidate.arrival_at, candidate.departure_at)
                created += 1

        logger.info("Place %s: %s candidate(s), %s visit(s) created", place_id, len(candidates), created)
        return created

    def reconcile_visit_suggestions_for_place(self, place_id: int) -> ReconcileResult:
        """地点编辑后重新对账：删除失效建议，补充新建议。"""

        place = self._repository.place(place_id)
        if place is None:
            return ReconcileResult(removed=0, added=0)

        settings = self._repository.settings()
        points = self._repository.points_in_range()
        if not points:
            return ReconcileResult(removed=0, added=0)
        candidates = build_place_candidates(place, points, settings)

        with self._repository.exclusive():
            suggested = self._repository.find_visits(place_id=place_id, status="suggested")
            to_remove = [
                visit.visit_id
                for visit in suggested
                if not any(
                    intervals_overlap(
                        candidate.arrival_at,
                        candidate.departure_at,
                        visit.arrival_at,
                        visit.departure_at,
                    )
                    for candidate in candidates
                )
            ]
            self._repository.delete_visits(to_remove)

            existing = [
                (visit.arrival_at, visit.departure_at)
                for visit in self._repository.find_visits(place_id=place_id)
            ]
            added = 0
            for candidate in candidates:
                if _overlaps_any(candidate.arrival_at, candidate.departure_at, existing):
                    continue
                self._repository.create_visit(place_id, candidate.arrival_at, candidate.departure_at)
                existing.append((candidate.arrival_at, candidate.departure_at))
                added += 1

        logger.info("Place %s reconciled: removed=%s added=%s", place_id, len(to_remove), added)
        return ReconcileResult(removed=len(to_remove), added=added)

    def detect_visits_for_all_places(
        self,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> int:
        """全部地点统一检测，同一时段至多归属一个地点；返回新增数。"""

        places = self._repository.all_places(active_only=True)
        if not places:
            return 0

        settings = self._repository.settings()
        points = self._load_points(range_start, range_end)
        if not points:
            return 0

        all_candidates: list[DwellCandidate] = []
        for place in places:
            all_candidates.extend(build_place_candidates(place, points, settings))

        in_range = [
            candidate
            for candidate in all_candidates
            if _overlaps_range(candidate.arrival_at, candidate.departure_at, range_start, range_end)
        ]
        winners = select_closest_candidates(in_range)
        place_ids = {place.place_id for place in places}

        with self._repository.exclusive():
            suggested = self._repository.find_visits(
                status="suggested",
                range_start=range_start,
                range_end=range_end,
            )
            to_remove = [
                visit.visit_id
                for visit in suggested
                if visit.place_id in place_ids
                and not any(
                    winner.place_id == visit.place_id
                    and intervals_overlap(
                        winner.arrival_at,
                        winner.departure_at,
                        visit.arrival_at,
                        visit.departure_at,
                    )
                    for winner in winners
                )
            ]
            self._repository.delete_visits(to_remove)

            existing: dict[int, list[tuple[datetime, datetime]]] = defaultdict(list)
            for visit in self._repository.find_visits():
                existing[visit.place_id].append((visit.arrival_at, visit.departure_at))

            added = 0
            for winner in winners:
                place_existing = existing[winner.place_id]
                if _overlaps_any(winner.arrival_at, winner.departure_at, place_existing):
                    continue
                self._repository.create_visit(winner.place_id, winner.arrival_at, winner.departure_at)
                place_existing.append((winner.arrival_at, winner.departure_at))
                added += 1

        logger.info(
            "All places: %s candidate(s), %s winner(s), removed=%s added=%s",
            len(in_range),
            len(winners),
            len(to_remove),
            added,
        )
        return added

    def detect_dwell_periods(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        range_start: datetime | None = None,
        range_end: datetime | None = None,
    ) -> list[DwellPeriod]:
        """任意圆形区域内的停留时段，最近的在前。"""

        settings = self._repository.settings()
        points = self._load_points(range_start, range_end)
        sessions = group_sessions(points, latitude, longitude, radius_m / 1000.0, settings.session_gap)

        periods: list[DwellPeriod] = []
        for session in sessions:
            arrival_at = session[0][0].recorded_at
            departure_at = session[-1][0].recorded_at
            if arrival_at == departure_at:
                arrival_at -= SINGLE_POINT_PADDING
                departure_at += SINGLE_POINT_PADDING
            periods.append(
                DwellPeriod(arrival_at=arrival_at, departure_at=departure_at, point_count=len(session))
            )

        periods = [
            period
            for period in periods
            if _touches_range(period.arrival_at, period.departure_at, range_start, range_end)
        ]
        periods.sort(key=lambda period: period.arrival_at, reverse=True)
        return periods

    def nearby_places_for_visit(
        self,
        visit_id: int,
        max_distance_m: float = NEARBY_PLACE_RADIUS_M,
    ) -> VisitNeighbourhood | None:
        """到访中心附近的地点，按距离升序。"""

        visit = self._repository.visit(visit_id)
        if visit is None:
            return None

        points = self._repository.points_in_range(visit.arrival_at, visit.departure_at)
        if points:
            center_lat, center_lon = robust_center(points)
        else:
            place = self._repository.place(visit.place_id)
            if place is None:
                return None
            center_lat, center_lon = place.latitude, place.longitude

        nearby: list[NearbyPlace] = []
        for place in self._repository.all_places():
            distance_m = round(distance_km(center_lat, center_lon, place.latitude, place.longitude) * 1000)
            if distance_m <= max_distance_m:
                nearby.append(NearbyPlace(place_id=place.place_id, name=place.name, distance_m=distance_m))
        nearby.sort(key=lambda item: (item.distance_m, item.place_id))
        return VisitNeighbourhood(center_lat=center_lat, center_lon=center_lon, places=nearby)

    def _load_points(
        self,
        range_start: datetime | None,
        range_end: datetime | None,
    ) -> list[LocationPoint]:
        """读取带缓冲的定位点快照。"""

        start = range_start - DAY_BUFFER if range_start is not None else None
        end = range_end + DAY_BUFFER if range_end is not None else None
        return self._repository.points_in_range(start, end)


def group_sessions(
    points: Sequence[LocationPoint],
    center_lat: float,
    center_lon: float,
    radius_km: float,
    session_gap: timedelta,
) -> list[list[SessionPoint]]:
    """把圆内点分组为会话。

    超过 session_gap 的间隔只有在间隔内存在圆外点时才切分，
    否则视为信号缺失，会话延续。
    """

    nearby: list[SessionPoint] = []
    for point in points:
        distance = distance_km(point.latitude, point.longitude, center_lat, center_lon)
        if distance <= radius_km:
            nearby.append((point, distance))
    if not nearby:
        return []

    sessions: list[list[SessionPoint]] = [[nearby[0]]]
    for previous, current in zip(nearby, nearby[1:]):
        previous_at = previous[0].recorded_at
        current_at = current[0].recorded_at
        if current_at - previous_at > session_gap and has_evidence_of_leaving(
            points, previous_at, current_at, center_lat, center_lon, radius_km
        ):
            sessions.append([current])
        else:
            sessions[-1].append(current)
    return sessions


def build_place_candidates(
    place: Place,
    points: Sequence[LocationPoint],
    settings: DetectionSettings,
) -> list[DwellCandidate]:
    """单地点候选到访：会话 → 最短停留 → 离开确认。"""

    candidates: list[DwellCandidate] = []
    sessions = group_sessions(points, place.latitude, place.longitude, place.radius_km, settings.session_gap)
    for session in sessions:
        arrival_at = session[0][0].recorded_at
        departure_at = session[-1][0].recorded_at
        if departure_at - arrival_at < settings.min_dwell:
            continue
        if not has_departed(points, place, departure_at + settings.post_departure):
            logger.debug("Place %s: session from %s has no departure yet", place.place_id, arrival_at)
            continue
        candidates.append(
            DwellCandidate(
                place_id=place.place_id,
                arrival_at=arrival_at,
                departure_at=departure_at,
                min_distance_km=min(distance for _, distance in session),
                point_count=len(session),
            )
        )
    return candidates


def has_departed(points: Sequence[LocationPoint], place: Place, not_before: datetime) -> bool:
    """not_before 及之后是否存在地点圆外的定位点。"""

    start = first_index_at_or_after(points, not_before)
    return any(
        is_outside(point, place.latitude, place.longitude, place.radius_km)
        for point in islice(points, start, None)
    )


def select_closest_candidates(candidates: Sequence[DwellCandidate]) -> list[DwellCandidate]:
    """重叠候选按传递闭包分组，每组保留距中心最近者，距离相同取较小 place_id。"""

    if not candidates:
        return []

    ordered = sorted(
        candidates,
        key=lambda item: (item.arrival_at, item.departure_at, item.min_distance_km, item.place_id),
    )
    selected: list[DwellCandidate] = []
    group = [ordered[0]]
    group_end = ordered[0].departure_at
    for candidate in ordered[1:]:
        if candidate.arrival_at <= group_end:
            group.append(candidate)
            group_end = max(group_end, candidate.departure_at)
            continue
        selected.append(_group_winner(group))
        group = [candidate]
        group_end = candidate.departure_at
    selected.append(_group_winner(group))
    return selected


def intervals_overlap(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """闭区间重叠。"""

    return a_start <= b_end and a_end >= b_start


def _group_winner(group: list[DwellCandidate]) -> DwellCandidate:
    return min(group, key=lambda item: (item.min_distance_km, item.place_id))


def _overlaps_any(
    start: datetime,
    end: datetime,
    intervals: list[tuple[datetime, datetime]],
) -> bool:
    return any(intervals_overlap(start, end, other_start, other_end) for other_start, other_end in intervals)


def _overlaps_range(
    start: datetime,
    end: datetime,
    range_start: datetime | None,
    range_end: datetime | None,
) -> bool:
    """与开放边界范围重叠。"""

    return (range_end is None or start <= range_end) and (range_start is None or end >= range_start)


def _touches_range(
    start: datetime,
    end: datetime,
    range_start: datetime | None,
    range_end: datetime | None,
) -> bool:
    """到达或离开落在范围内，或时段覆盖整个范围。"""

    if range_start is None and range_end is None:
        return True
    arrival_in_range = (range_start is None or start >= range_start) and (
        range_end is None or start <= range_end
    )
    departure_in_range = (range_start is None or end >= range_start) and (
        range_end is None or end <= range_end
    )
    covers_range = (range_start is None or start <= range_start) and (
        range_end is None or end >= range_end
    )
    return arrival_in_range or departure_in_range or covers_range
