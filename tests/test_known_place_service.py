"""Known place visit detection tests."""

from __future__ import annotations

from pathlib import Path

from helpers import at, far_point, point, run_in_parallel, series
from visitwatch.domain.detection_types import DetectionSettings, DwellCandidate, Place
from visitwatch.repositories.detection_repository import DetectionRepository
from visitwatch.services.known_place_service import (
    KnownPlaceVisitDetector,
    build_place_candidates,
    group_sessions,
    select_closest_candidates,
)

SETTINGS = DetectionSettings()
ORIGIN = Place(place_id=1, name="Origin", latitude=0.0, longitude=0.0, radius_m=50.0)


def test_scenario_single_dwell_with_confirmed_departure(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])

    detector = KnownPlaceVisitDetector(repository)
    assert detector.detect_visits_for_place(place.place_id) == 1

    visits = repository.find_visits(place_id=place.place_id)
    assert len(visits) == 1
    assert visits[0].arrival_at == at(0)
    assert visits[0].departure_at == at(30)
    assert visits[0].status == "suggested"


def test_rerun_without_new_points_creates_nothing(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    detector = KnownPlaceVisitDetector(repository)

    assert detector.detect_visits_for_place(place.place_id) == 1
    assert detector.detect_visits_for_place(place.place_id) == 0
    assert detector.detect_visits_for_all_places() == 0
    assert len(repository.find_visits()) == 1


def test_gap_within_tolerance_keeps_single_session() -> None:
    points = [*series(0, 30), point(40)]

    sessions = group_sessions(points, 0.0, 0.0, ORIGIN.radius_km, SETTINGS.session_gap)

    assert len(sessions) == 1
    assert sessions[0][0][0].recorded_at == at(0)
    assert sessions[0][-1][0].recorded_at == at(40)
    # 没有离开证据，会话尚未结束
    assert build_place_candidates(ORIGIN, points, SETTINGS) == []


def test_long_silent_gap_is_bridged() -> None:
    points = [*series(0, 20), *series(60, 80), far_point(100)]

    candidates = build_place_candidates(ORIGIN, points, SETTINGS)

    assert len(candidates) == 1
    assert candidates[0].arrival_at == at(0)
    assert candidates[0].departure_at == at(80)


def test_gap_with_outside_point_splits_sessions() -> None:
    points = [*series(0, 20), far_point(40), *series(60, 80), far_point(100)]

    candidates = build_place_candidates(ORIGIN, points, SETTINGS)

    assert [(c.arrival_at, c.departure_at) for c in candidates] == [
        (at(0), at(20)),
        (at(60), at(80)),
    ]


def test_short_session_is_discarded_but_exact_minimum_survives() -> None:
    too_short = [*series(0, 10), far_point(30)]
    exact = [*series(0, 15, step_minutes=5), far_point(30)]

    assert build_place_candidates(ORIGIN, too_short, SETTINGS) == []
    assert len(build_place_candidates(ORIGIN, exact, SETTINGS)) == 1


def test_departure_requires_outside_point_after_post_departure_window() -> None:
    early_exit = [*series(0, 30), far_point(40)]
    on_time_exit = [*series(0, 30), far_point(45)]

    assert build_place_candidates(ORIGIN, early_exit, SETTINGS) == []
    assert len(build_place_candidates(ORIGIN, on_time_exit, SETTINGS)) == 1


def test_departure_scan_skips_inside_points_after_threshold() -> None:
    # 35 分的圆外点早于确认阈值，45 分之后第一个点仍在圆内
    points = [*series(0, 30), far_point(35), point(50), far_point(70)]

    candidates = build_place_candidates(ORIGIN, points, SETTINGS)

    assert len(candidates) == 1
    assert candidates[0].departure_at == at(30)


def test_candidate_records_minimum_distance_to_center() -> None:
    points = [point(0, 0.0002, 0.0), point(10, 0.0001, 0.0), point(20, 0.0003, 0.0), far_point(40)]

    candidates = build_place_candidates(ORIGIN, points, SETTINGS)

    assert len(candidates) == 1
    assert candidates[0].min_distance_km < 0.012
    assert candidates[0].point_count == 3


def test_closest_place_wins_conflicting_dwell(repository: DetectionRepository) -> None:
    near = repository.create_place("Near", 0.0, 0.0, 100.0)
    shifted = repository.create_place("Shifted", 0.0003, 0.0, 100.0)
    repository.insert_points([*series(0, 30), far_point(45)])

    assert KnownPlaceVisitDetector(repository).detect_visits_for_all_places() == 1

    visits = repository.find_visits()
    assert [visit.place_id for visit in visits] == [near.place_id]
    assert repository.find_visits(place_id=shifted.place_id) == []


def test_equal_distance_conflict_goes_to_lower_place_id() -> None:
    first = DwellCandidate(place_id=7, arrival_at=at(0), departure_at=at(30), min_distance_km=0.01, point_count=5)
    second = DwellCandidate(place_id=3, arrival_at=at(5), departure_at=at(40), min_distance_km=0.01, point_count=5)

    winners = select_closest_candidates([first, second])

    assert [winner.place_id for winner in winners] == [3]


def test_overlap_groups_are_transitive() -> None:
    a = DwellCandidate(place_id=1, arrival_at=at(0), departure_at=at(30), min_distance_km=0.03, point_count=5)
    b = DwellCandidate(place_id=2, arrival_at=at(25), departure_at=at(60), min_distance_km=0.02, point_count=5)
    c = DwellCandidate(place_id=3, arrival_at=at(55), departure_at=at(90), min_distance_km=0.01, point_count=5)
    d = DwellCandidate(place_id=1, arrival_at=at(120), departure_at=at(150), min_distance_km=0.04, point_count=5)

    winners = select_closest_candidates([d, c, b, a])

    assert [(winner.place_id, winner.arrival_at) for winner in winners] == [(3, at(55)), (1, at(120))]


def test_all_places_removes_stale_suggestions_only(repository: DetectionRepository) -> None:
    near = repository.create_place("Near", 0.0, 0.0, 100.0)
    shifted = repository.create_place("Shifted", 0.0003, 0.0, 100.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    stale = repository.create_visit(shifted.place_id, at(0), at(30))
    confirmed = repository.create_visit(shifted.place_id, at(200), at(230), status="confirmed")

    assert KnownPlaceVisitDetector(repository).detect_visits_for_all_places() == 1

    assert repository.visit(stale.visit_id) is None
    assert repository.visit(confirmed.visit_id) is not None
    assert [visit.place_id for visit in repository.find_visits(status="suggested")] == [near.place_id]


def test_all_places_respects_requested_range(repository: DetectionRepository) -> None:
    repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    detector = KnownPlaceVisitDetector(repository)

    assert detector.detect_visits_for_all_places(at(120), at(240)) == 0
    assert detector.detect_visits_for_all_places(at(20), at(240)) == 1


def test_all_places_skips_inactive_places(repository: DetectionRepository) -> None:
    repository.create_place("Archived", 0.0, 0.0, 50.0, is_active=False)
    repository.insert_points([*series(0, 30), far_point(45)])

    assert KnownPlaceVisitDetector(repository).detect_visits_for_all_places() == 0


def test_existing_visit_of_any_status_blocks_creation(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    repository.create_visit(place.place_id, at(10), at(20), status="rejected")

    assert KnownPlaceVisitDetector(repository).detect_visits_for_place(place.place_id) == 0


def test_missing_place_or_empty_store_yields_zero(repository: DetectionRepository) -> None:
    detector = KnownPlaceVisitDetector(repository)
    assert detector.detect_visits_for_place(999) == 0
    assert detector.detect_visits_for_all_places() == 0

    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    assert detector.detect_visits_for_place(place.place_id) == 0
    result = detector.reconcile_visit_suggestions_for_place(place.place_id)
    assert (result.removed, result.added) == (0, 0)


def test_reconcile_after_place_moved(repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45), *series(100, 130, lat=0.01), far_point(150)])
    detector = KnownPlaceVisitDetector(repository)
    assert detector.detect_visits_for_place(place.place_id) == 1
    confirmed = repository.create_visit(place.place_id, at(300), at(330), status="confirmed")

    repository.update_place(Place(place.place_id, place.name, 0.01, 0.0, 50.0))
    result = detector.reconcile_visit_suggestions_for_place(place.place_id)

    assert (result.removed, result.added) == (1, 1)
    suggested = repository.find_visits(place_id=place.place_id, status="suggested")
    assert [(visit.arrival_at, visit.departure_at) for visit in suggested] == [(at(100), at(130))]
    assert repository.visit(confirmed.visit_id) is not None


def test_dwell_periods_around_coordinate(repository: DetectionRepository) -> None:
    repository.insert_points([*series(0, 30), far_point(45), point(90)])

    periods = KnownPlaceVisitDetector(repository).detect_dwell_periods(0.0, 0.0, 50.0)

    assert [(period.arrival_at, period.departure_at, period.point_count) for period in periods] == [
        (at(89), at(91), 1),
        (at(0), at(30), 16),
    ]


def test_dwell_periods_filtered_by_range(repository: DetectionRepository) -> None:
    repository.insert_points([*series(0, 30), far_point(45), *series(200, 230)])

    periods = KnownPlaceVisitDetector(repository).detect_dwell_periods(0.0, 0.0, 50.0, at(190), at(300))

    assert [period.arrival_at for period in periods] == [at(200)]


def test_nearby_places_for_visit(repository: DetectionRepository) -> None:
    home = repository.create_place("Home", 0.0, 0.0, 50.0)
    cafe = repository.create_place("Cafe", 0.0005, 0.0, 30.0)
    repository.create_place("Office", 0.01, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])
    visit = repository.create_visit(home.place_id, at(0), at(30))

    neighbourhood = KnownPlaceVisitDetector(repository).nearby_places_for_visit(visit.visit_id)

    assert neighbourhood is not None
    assert (neighbourhood.center_lat, neighbourhood.center_lon) == (0.0, 0.0)
    assert [place.place_id for place in neighbourhood.places] == [home.place_id, cafe.place_id]
    assert neighbourhood.places[1].distance_m == 56


def test_concurrent_runs_create_single_visit(db_path: Path, repository: DetectionRepository) -> None:
    place = repository.create_place("Home", 0.0, 0.0, 50.0)
    repository.insert_points([*series(0, 30), far_point(45)])

    def detect(worker_repository: DetectionRepository, index: int) -> int:
        detector = KnownPlaceVisitDetector(worker_repository)
        if index % 2:
            return detector.detect_visits_for_all_places()
        return detector.detect_visits_for_place(place.place_id)

    results = run_in_parallel(db_path, detect, workers=8)

    assert sorted(results) == [0] * 7 + [1]
    assert len(repository.find_visits()) == 1
