"""到访检测领域类型。"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

VisitStatus = Literal["suggested", "confirmed", "rejected"]
VISIT_STATUSES: tuple[VisitStatus, ...] = ("suggested", "confirmed", "rejected")


@dataclass(frozen=True, slots=True)
class LocationPoint:
    """单个定位点。

    Attributes:
        point_id: 存储主键。
        timestamp: Unix 秒，入库去重键。
        latitude: 纬度（度）。
        longitude: 经度（度）。
        accuracy_m: 水平精度（米），未知时为 None。
    """

    point_id: int
    timestamp: int
    latitude: float
    longitude: float
    accuracy_m: float | None = None
    speed_mps: float | None = None
    bearing_deg: float | None = None
    battery: float | None = None

    @property
    def recorded_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


@dataclass(frozen=True, slots=True)
class Place:
    """用户定义的圆形地点。"""

    place_id: int
    name: str
    latitude: float
    longitude: float
    radius_m: float
    is_active: bool = True

    @property
    def radius_km(self) -> float:
        return self.radius_m / 1000.0


@dataclass(frozen=True, slots=True)
class Visit:
    """地点到访记录。"""

    visit_id: int
    place_id: int
    arrival_at: datetime
    departure_at: datetime
    status: VisitStatus


@dataclass(frozen=True, slots=True)
class UnknownVisitSuggestion:
    """未知地点停留建议。"""

    suggestion_id: int
    latitude: float
    longitude: float
    arrival_at: datetime
    departure_at: datetime
    point_count: int
    status: VisitStatus


@dataclass(frozen=True, slots=True)
class DetectionSettings:
    """检测阈值，每次运行开始时读取。"""

    session_gap_minutes: int = 15
    min_dwell_minutes: int = 15
    post_departure_minutes: int = 15
    unknown_session_gap_minutes: int = 15
    unknown_min_dwell_minutes: int = 15
    unknown_cluster_radius_m: float = 50.0

    @property
    def session_gap(self) -> timedelta:
        return timedelta(minutes=self.session_gap_minutes)

    @property
    def min_dwell(self) -> timedelta:
        return timedelta(minutes=self.min_dwell_minutes)

    @property
    def post_departure(self) -> timedelta:
        return timedelta(minutes=self.post_departure_minutes)

    @property
    def unknown_session_gap(self) -> timedelta:
        return timedelta(minutes=self.unknown_session_gap_minutes)

    @property
    def unknown_min_dwell(self) -> timedelta:
        return timedelta(minutes=self.unknown_min_dwell_minutes)

    @property
    def unknown_cluster_radius_km(self) -> float:
        return self.unknown_cluster_radius_m / 1000.0


@dataclass(frozen=True, slots=True)
class DwellCandidate:
    """通过全部过滤条件、可写入的地点停留。"""

    place_id: int
    arrival_at: datetime
    departure_at: datetime
    min_distance_km: float
    point_count: int


@dataclass(frozen=True, slots=True)
class DwellPeriod:
    """任意圆形区域内的停留时段。"""

    arrival_at: datetime
    departure_at: datetime
    point_count: int


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """单地点对账结果。"""

    removed: int
    added: int


@dataclass(frozen=True, slots=True)
class NearbyPlace:
    place_id: int
    name: str
    distance_m: int


@dataclass(frozen=True, slots=True)
class VisitNeighbourhood:
    """到访中心及其附近地点。"""

    center_lat: float
    center_lon: float
    places: list[NearbyPlace] = field(default_factory=list)
