"""应用配置加载。"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigError(ValueError):
    """配置相关错误。"""


@dataclass(frozen=True, slots=True)
class AppConfig:
    """应用运行配置。"""

    db_path: Path
    timezone: tzinfo
    timezone_name: str
    log_level: str


def load_app_config(
    db_path: str | None = None,
    timezone_name: str | None = None,
    log_level: str | None = None,
    must_exist: bool = True,
) -> AppConfig:
    """加载应用配置。"""

    load_dotenv(override=False)
    resolved_db_path = resolve_db_path(db_path, must_exist=must_exist)
    resolved_timezone, resolved_timezone_name = resolve_timezone(
        timezone_name or os.getenv("VISITWATCH_TIMEZONE")
    )
    return AppConfig(
        db_path=resolved_db_path,
        timezone=resolved_timezone,
        timezone_name=resolved_timezone_name,
        log_level=resolve_log_level(log_level),
    )


def resolve_db_path(db_path: str | None = None, must_exist: bool = True) -> Path:
    """解析数据库路径，优先级：参数 > 环境变量。"""

    raw_path = db_path or os.getenv("VISITWATCH_DB_PATH")
    if not raw_path:
        raise ConfigError(
            "Unable to resolve database path. Set VISITWATCH_DB_PATH or pass --db-path."
        )

    candidate = _normalize_path(raw_path)
    if must_exist and not candidate.exists():
        raise ConfigError(f"Database path does not exist: {candidate}")
    return candidate


def resolve_timezone(timezone_name: str | None = None) -> tuple[tzinfo, str]:
    """解析时区，默认使用系统时区。"""

    if timezone_name:
        try:
            zone = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError as exc:
            raise ConfigError(f"Unknown timezone: {timezone_name}") from exc
        return zone, timezone_name

    local_timezone = datetime.now().astimezone().tzinfo
    if local_timezone is None:
        raise ConfigError("Unable to determine system timezone.")

    zone_key = getattr(local_timezone, "key", None)
    if isinstance(zone_key, str) and zone_key:
        return local_timezone, zone_key

    zone_name = datetime.now().astimezone().tzname() or "local"
    return local_timezone, zone_name


def resolve_log_level(log_level: str | None = None) -> str:
    """解析日志级别，默认 WARNING。"""

    raw = log_level or os.getenv("VISITWATCH_LOG_LEVEL") or "WARNING"
    value = raw.strip().upper()
    if value not in logging.getLevelNamesMapping():
        raise ConfigError(f"Unknown log level: {raw}")
    return value


def configure_logging(level: str) -> None:
    """配置根日志。"""

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)


def parse_time_bound(expr: str, tz: tzinfo, end_of_day: bool = False) -> datetime:
    """解析 today/yesterday/ISO 日期/ISO 时间为带时区时间。

    纯日期取当天开始；end_of_day 为真时取当天最后一秒。
    """

    normalized = expr.strip().lower()
    today = datetime.now(tz).date()
    if normalized == "today":
        return _day_bound(today, tz, end_of_day)
    if normalized == "yesterday":
        return _day_bound(today - timedelta(days=1), tz, end_of_day)

    try:
        return _day_bound(date.fromisoformat(normalized), tz, end_of_day)
    except ValueError:
        pass

    try:
        parsed = datetime.fromisoformat(expr.strip())
    except ValueError as exc:
        raise ValueError(
            f"Invalid time expression: {expr}. Use today, yesterday, YYYY-MM-DD or an ISO datetime."
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _day_bound(day: date, tz: tzinfo, end_of_day: bool) -> datetime:
    start = datetime.combine(day, time.min, tzinfo=tz)
    if end_of_day:
        return start + timedelta(days=1) - timedelta(seconds=1)
    return start


def _normalize_path(raw_path: str) -> Path:
    """标准化路径。"""

    return Path(raw_path).expanduser().resolve()
