"""Review service tests."""

from __future__ import annotations

import pytest

from helpers import at, far_point, series
from visitwatch.repositories.detection_repository import DetectionRepository
from visitwatch.services.known_place_service import KnownPlaceVisitDetector
from visitwatch.services.review_service import ReviewService


def test_visit_status_only_accepts_review_outcomes(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    visit = repository.create_visit(place.place_id, at(0), at(30))
    service = ReviewService(repository)

    with pytest.raises(ValueError):
        service.set_visit_status(visit.visit_id, "suggested")

    updated = service.set_visit_status(visit.visit_id, "confirmed")
    assert updated is not None
    assert updated.status == "confirmed"
    stored = repository.visit(visit.visit_id)
    assert stored is not None and stored.status == "confirmed"
    assert service.set_visit_status(999, "rejected") is None


def test_suggestion_update_validates_interval(repository: DetectionRepository) -> None:
    suggestion = repository.create_suggestion(10.0, 10.0, at(0), at(30), 12)
    service = ReviewService(repository)

    with pytest.raises(ValueError):
        service.update_suggestion(suggestion.suggestion_id, departure_at=at(0))
    with pytest.raises(ValueError):
        service.update_suggestion(suggestion.suggestion_id, status="maybe")

    updated = service.update_suggestion(suggestion.suggestion_id, status="rejected")
    assert updated is not None
    assert updated.status == "rejected"


def test_place_geometry_edit_reconciles_suggestions(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    assert KnownPlaceVisitDetector(repository).detect_visits_for_place(place.place_id) == 1
    service = ReviewService(repository)

    renamed = service.update_place(place.place_id, name="House")
    assert renamed is not None
    assert (renamed.removed, renamed.added) == (0, 0)

    moved = service.update_place(place.place_id, latitude=0.5)
    assert moved is not None
    assert (moved.removed, moved.added) == (1, 0)
    stored = repository.place(place.place_id)
    assert stored is not None
    assert (stored.name, stored.latitude) == ("House", 0.5)
    assert repository.find_visits(place_id=place.place_id) == []


def test_place_edit_rejects_non_positive_radius(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)

    with pytest.raises(ValueError):
        ReviewService(repository).update_place(place.place_id, radius_m=0)
