"""CLI 入口。"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, tzinfo
from typing import Any, Callable, Sequence

from visitwatch.config import AppConfig, ConfigError, configure_logging, load_app_config, parse_time_bound
from visitwatch.db import DatabaseError, SQLiteClient, ensure_schema
from visitwatch.formatters.result_json import (
    neighbourhood_to_dict,
    periods_to_list,
    reconcile_to_dict,
    render_json,
)
from visitwatch.repositories.detection_repository import DetectionRepository
from visitwatch.services.known_place_service import KnownPlaceVisitDetector
from visitwatch.services.unknown_visit_service import UnknownDwellClusterer


def build_parser() -> argparse.ArgumentParser:
    """构建命令行参数解析器。"""

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db-path", help="Path to visitwatch sqlite database file.")
    common.add_argument("--timezone", help="Timezone for date expressions, e.g. UTC.")
    common.add_argument("--log-level", help="Logging level, e.g. INFO or DEBUG.")

    parser = argparse.ArgumentParser(prog="visitwatch", description="Visit detection CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", parents=[common], help="Create database tables.")

    detect_parser = subparsers.add_parser(
        "detect-visits",
        parents=[common],
        help="Detect visits for one place or for all places.",
    )
    detect_parser.add_argument("--place-id", type=int, help="Only detect for this place.")
    _add_range_arguments(detect_parser)

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        parents=[common],
        help="Reconcile suggested visits of a place after an edit.",
    )
    reconcile_parser.add_argument("--place-id", type=int, required=True)

    unknown_parser = subparsers.add_parser(
        "detect-unknown",
        parents=[common],
        help="Detect dwells at unknown locations.",
    )
    _add_range_arguments(unknown_parser)

    periods_parser = subparsers.add_parser(
        "periods",
        parents=[common],
        help="List dwell periods around a coordinate.",
    )
    periods_parser.add_argument("--lat", type=float, required=True)
    periods_parser.add_argument("--lon", type=float, required=True)
    periods_parser.add_argument("--radius-m", type=float, required=True)
    _add_range_arguments(periods_parser)

    nearby_parser = subparsers.add_parser(
        "nearby-places",
        parents=[common],
        help="List places near the center of a visit.",
    )
    nearby_parser.add_argument("--visit-id", type=int, required=True)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI 主入口。"""

    parser = build_parser()
    args = parser.parse_args(argv)

    handler = _HANDLERS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        config = load_app_config(
            db_path=args.db_path,
            timezone_name=args.timezone,
            log_level=args.log_level,
            must_exist=args.command != "init-db",
        )
        configure_logging(config.log_level)
        repository = DetectionRepository(SQLiteClient(config.db_path))
        payload = handler(args, config, repository)
    except (ConfigError, DatabaseError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if payload is None:
        print("Error: not found", file=sys.stderr)
        return 1
    print(render_json(payload))
    return 0


def _run_init_db(args: argparse.Namespace, config: AppConfig, repository: DetectionRepository) -> Any:
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    ensure_schema(SQLiteClient(config.db_path))
    return {"db_path": str(config.db_path)}


def _run_detect_visits(
    args: argparse.Namespace,
    config: AppConfig,
    repository: DetectionRepository,
) -> Any:
    range_start, range_end = _resolve_range(args, config.timezone)
    detector = KnownPlaceVisitDetector(repository)
    if args.place_id is not None:
        created = detector.detect_visits_for_place(args.place_id, range_start, range_end)
    else:
        created = detector.detect_visits_for_all_places(range_start, range_end)
    return {"created": created}


def _run_reconcile(args: argparse.Namespace, config: AppConfig, repository: DetectionRepository) -> Any:
    result = KnownPlaceVisitDetector(repository).reconcile_visit_suggestions_for_place(args.place_id)
    return reconcile_to_dict(result)


def _run_detect_unknown(
    args: argparse.Namespace,
    config: AppConfig,
    repository: DetectionRepository,
) -> Any:
    range_start, range_end = _resolve_range(args, config.timezone)
    created = UnknownDwellClusterer(repository).detect_unknown_visits(range_start, range_end)
    return {"created": created}


def _run_periods(args: argparse.Namespace, config: AppConfig, repository: DetectionRepository) -> Any:
    if args.radius_m <= 0:
        raise ValueError("--radius-m must be positive.")
    range_start, range_end = _resolve_range(args, config.timezone)
    periods = KnownPlaceVisitDetector(repository).detect_dwell_periods(
        args.lat,
        args.lon,
        args.radius_m,
        range_start,
        range_end,
    )
    return periods_to_list(periods)


def _run_nearby_places(
    args: argparse.Namespace,
    config: AppConfig,
    repository: DetectionRepository,
) -> Any:
    neighbourhood = KnownPlaceVisitDetector(repository).nearby_places_for_visit(args.visit_id)
    if neighbourhood is None:
        return None
    return neighbourhood_to_dict(neighbourhood)


_HANDLERS: dict[str, Callable[[argparse.Namespace, AppConfig, DetectionRepository], Any]] = {
    "init-db": _run_init_db,
    "detect-visits": _run_detect_visits,
    "reconcile": _run_reconcile,
    "detect-unknown": _run_detect_unknown,
    "periods": _run_periods,
    "nearby-places": _run_nearby_places,
}


def _add_range_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", help="Range start: today | yesterday | YYYY-MM-DD | ISO datetime")
    parser.add_argument("--end", help="Range end: today | yesterday | YYYY-MM-DD | ISO datetime")


def _resolve_range(
    args: argparse.Namespace,
    tz: tzinfo,
) -> tuple[datetime | None, datetime | None]:
    range_start = parse_time_bound(args.start, tz) if args.start else None
    range_end = parse_time_bound(args.end, tz, end_of_day=True) if args.end else None
    if range_start is not None and range_end is not None and range_end < range_start:
        raise ValueError("--end must not be before --start.")
    return range_start, range_end


if __name__ == "__main__":
    raise SystemExit(main())
