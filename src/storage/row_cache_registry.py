from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("monitor.row_cache")

DEFAULT_CACHE_BASE_PATH = Path(__file__).resolve().parents[2] / "public" / "data"
DEFAULT_TIMEZONE = "Asia/Jakarta"
DEFAULT_LOOKBACK_DAYS = 3


def _cache_base_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser().resolve()
    env_path = str(os.getenv("MONITOR_CACHE_BASE_PATH", str(DEFAULT_CACHE_BASE_PATH)))
    return Path(env_path).expanduser().resolve()


def _resolve_zone(timezone_name: str | None) -> ZoneInfo | timezone:
    name = str(timezone_name or DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone '%s'; falling back to UTC for cache lookups.", name)
        return timezone.utc


def cache_file_name(day: datetime) -> str:
    return f"data_{day.date().isoformat()}.json"


def candidate_cache_files(
    location_folder: str,
    *,
    base_path: str | Path | None = None,
    timezone_name: str | None = None,
    now: datetime | None = None,
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
) -> list[Path]:
    """Daily snapshot paths for a location, newest first (today, yesterday, ...)."""
    zone = _resolve_zone(timezone_name)
    local_now = (now or datetime.now(timezone.utc)).astimezone(zone)
    folder = _cache_base_path(base_path) / location_folder
    return [folder / cache_file_name(local_now - timedelta(days=offset)) for offset in range(max(1, lookback_days))]


def find_latest_cache_file(
    location_folder: str,
    *,
    base_path: str | Path | None = None,
    timezone_name: str | None = None,
    now: datetime | None = None,
) -> Path | None:
    for candidate in candidate_cache_files(
        location_folder,
        base_path=base_path,
        timezone_name=timezone_name,
        now=now,
    ):
        if candidate.exists():
            return candidate
    return None


def fetch_latest_rows(
    location_id: str,
    *,
    cache_folder: str | None = None,
    base_path: str | Path | None = None,
    timezone_name: str | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]] | None:
    cache_file = find_latest_cache_file(
        cache_folder or location_id,
        base_path=base_path,
        timezone_name=timezone_name,
        now=now,
    )
    if cache_file is None:
        logger.debug("No cached rows found for location=%s", location_id)
        return None

    try:
        with open(cache_file, encoding="utf-8") as file:
            payload = json.load(file)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to parse cached rows location=%s path=%s: %s", location_id, cache_file, exc)
        return None

    if not isinstance(payload, list):
        logger.warning("Cached rows for location=%s are not a list path=%s", location_id, cache_file)
        return None
    return [row for row in payload if isinstance(row, dict)]
