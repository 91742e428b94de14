"""到访审核与地点编辑。"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import cast

from visitwatch.domain.detection_types import (
    VISIT_STATUSES,
    Place,
    ReconcileResult,
    UnknownVisitSuggestion,
    Visit,
    VisitStatus,
)
from visitwatch.repositories.detection_repository import DetectionRepository
from visitwatch.services.known_place_service import KnownPlaceVisitDetector

logger = logging.getLogger(__name__)


class ReviewService:
    """确认/拒绝建议，编辑地点后触发对账。"""

    def __init__(
        self,
        repository: DetectionRepository,
        detector: KnownPlaceVisitDetector | None = None,
    ) -> None:
        self._repository = repository
        self._detector = detector or KnownPlaceVisitDetector(repository)

    def set_visit_status(self, visit_id: int, status: str) -> Visit | None:
        """只允许 confirmed / rejected。"""

        if status not in ("confirmed", "rejected"):
            raise ValueError(f"Invalid visit status: {status}. Allowed: confirmed, rejected.")

        visit = self._repository.visit(visit_id)
        if visit is None:
            return None
        self._repository.update_visit_status(visit_id, cast(VisitStatus, status))
        return dataclasses.replace(visit, status=cast(VisitStatus, status))

    def update_suggestion(
        self,
        suggestion_id: int,
        status: str | None = None,
        arrival_at: datetime | None = None,
        departure_at: datetime | None = None,
    ) -> UnknownVisitSuggestion | None:
        """更新未知停留建议的状态或时段。"""

        suggestion = self._repository.suggestion(suggestion_id)
        if suggestion is None:
            return None

        resolved_status = _validate_status(status if status is not None else suggestion.status)
        resolved_arrival = arrival_at or suggestion.arrival_at
        resolved_departure = departure_at or suggestion.departure_at
        if resolved_departure <= resolved_arrival:
            raise ValueError("departure_at must be after arrival_at.")

        updated = dataclasses.replace(
            suggestion,
            status=resolved_status,
            arrival_at=resolved_arrival,
            departure_at=resolved_departure,
        )
        self._repository.update_suggestion(updated)
        return updated

    def update_place(
        self,
        place_id: int,
        name: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        radius_m: float | None = None,
    ) -> ReconcileResult | None:
        """保存地点编辑；中心或半径变化时对账该地点的建议。"""

        place = self._repository.place(place_id)
        if place is None:
            return None
        if radius_m is not None and radius_m <= 0:
            raise ValueError("radius_m must be positive.")

        updated = Place(
            place_id=place.place_id,
            name=name if name is not None else place.name,
            latitude=latitude if latitude is not None else place.latitude,
            longitude=longitude if longitude is not None else place.longitude,
            radius_m=radius_m if radius_m is not None else place.radius_m,
            is_active=place.is_active,
        )
        self._repository.update_place(updated)

        geometry_changed = (updated.latitude, updated.longitude, updated.radius_m) != (
            place.latitude,
            place.longitude,
            place.radius_m,
        )
        if not geometry_changed:
            return ReconcileResult(removed=0, added=0)

        logger.info("Place %s geometry changed, reconciling suggestions", place_id)
        return self._detector.reconcile_visit_suggestions_for_place(place_id)


def _validate_status(status: str) -> VisitStatus:
    if status not in VISIT_STATUSES:
        raise ValueError(f"Invalid status: {status}. Allowed: {', '.join(VISIT_STATUSES)}.")
    return cast(VisitStatus, status)
