from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.services.monitor_config_service import MonitorConfig, MonitoredLocation
from app.services.threshold_service import ExcursionEvent, evaluate_latest

PROJECT_ROOT = Path(__file__).resolve().parents[3]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.storage.notification_ledger_registry import (  # noqa: E402
    LedgerUnavailableError,
    NotificationEntry,
    NotificationLedger,
    ledger_lock,
    make_entry_id,
)

logger = logging.getLogger("monitor.scan")

RowSource = Callable[[MonitoredLocation], "Sequence[dict[str, Any]] | None"]
DeliveryDispatch = Callable[[list[NotificationEntry]], Any]


def _isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    normalized = value.astimezone(timezone.utc)
    return normalized.isoformat().replace("+00:00", "Z")


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        normalized = value.strip().replace("Z", "+00:00")
        if not normalized:
            return None
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def should_resend(entry: NotificationEntry, now: datetime, resend_after_minutes: int) -> bool:
    if not entry.sent:
        return True
    if entry.sent_at is None:
        return True
    return (now - entry.sent_at) >= timedelta(minutes=resend_after_minutes)


def format_observed_time(observed_at: str | None, timezone_name: str) -> str:
    if not observed_at:
        return ""
    parsed = _parse_datetime(observed_at)
    if parsed is None:
        return str(observed_at)
    try:
        zone = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        zone = timezone.utc
    return parsed.astimezone(zone).strftime("%d, %H:%M")


def format_value(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def render_message(template: str, *, location: str, param: str, value: float, time: str, note: str) -> str:
    replacements = {
        "{location}": location,
        "{param}": param,
        "{value}": format_value(value),
        "{time}": time,
        "{note}": note,
    }
    message = template
    for placeholder, replacement in replacements.items():
        message = message.replace(placeholder, replacement)
    return message.strip()


def build_entry(
    location: MonitoredLocation,
    event: ExcursionEvent,
    config: MonitorConfig,
    *,
    now: datetime,
) -> NotificationEntry:
    spec = config.thresholds.get(event.parameter)
    message = render_message(
        config.template_for(event.severity),
        location=location.display_name or location.location_id,
        param=spec.display_name if spec is not None else event.parameter,
        value=event.value,
        time=format_observed_time(event.observed_at, config.timezone),
        note=event.note,
    )
    return NotificationEntry(
        id=make_entry_id(location.location_id, event.parameter, event.severity, event.observed_at),
        location_id=location.location_id,
        parameter=event.parameter,
        severity=event.severity,
        value=event.value,
        observed_at=event.observed_at,
        message=message,
        created_at=now,
    )


def reconcile_events(
    ledger: list[NotificationEntry],
    location: MonitoredLocation,
    events: Iterable[ExcursionEvent],
    config: MonitorConfig,
    *,
    now: datetime,
) -> tuple[int, int]:
    """Merge evaluated events into the ledger in place; returns (created, resent)."""
    index = {entry.id: entry for entry in ledger}
    created_count = 0
    resend_count = 0
    for event in events:
        entry_id = make_entry_id(location.location_id, event.parameter, event.severity, event.observed_at)
        existing = index.get(entry_id)
        if existing is not None:
            if existing.sent and should_resend(existing, now, config.send.resend_after_minutes):
                existing.sent = False
                resend_count += 1
            continue

        entry = build_entry(location, event, config, now=now)
        ledger.append(entry)
        index[entry.id] = entry
        created_count += 1
    return created_count, resend_count


def _resolve_locations(config: MonitorConfig, location_ids: Sequence[str] | None) -> list[MonitoredLocation]:
    if location_ids is None:
        return list(config.locations)
    resolved: list[MonitoredLocation] = []
    for location_id in location_ids:
        location = config.get_location(location_id)
        if location is None:
            raise LookupError(f"Unknown location '{location_id}'.")
        resolved.append(location)
    return resolved


def _log_summary(summary: dict[str, Any]) -> dict[str, Any]:
    logger.info(
        "Scan cycle completed scanned=%s skipped=%s failed=%s events=%s created=%s resend=%s pending=%s persisted=%s",
        summary["locations_scanned"],
        summary["locations_skipped"],
        summary["locations_failed"],
        summary["events_count"],
        summary["created_count"],
        summary["resend_count"],
        summary["pending_count"],
        summary["persisted"],
    )
    return summary


def run_scan_cycle(
    *,
    config: MonitorConfig,
    store: NotificationLedger,
    row_source: RowSource,
    dispatch: DeliveryDispatch | None = None,
    location_ids: Sequence[str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    scanned_at = _parse_datetime(now) or datetime.now(timezone.utc)
    locations = _resolve_locations(config, location_ids)
    summary: dict[str, Any] = {
        "scanned_at": _isoformat_utc(scanned_at),
        "locations_total": len(locations),
        "locations_scanned": 0,
        "locations_skipped": 0,
        "locations_failed": 0,
        "events_count": 0,
        "created_count": 0,
        "resend_count": 0,
        "pending_count": 0,
        "scheduled_groups": 0,
        "persisted": False,
    }

    # Rows are fetched and evaluated before the ledger lock is taken.
    evaluated: list[tuple[MonitoredLocation, list[ExcursionEvent]]] = []
    for location in locations:
        try:
            rows = row_source(location)
            if not rows:
                summary["locations_skipped"] += 1
                continue
            events = evaluate_latest(rows, config.thresholds)
        except Exception as exc:  # noqa: BLE001
            summary["locations_failed"] += 1
            logger.exception("Scan failed for location=%s: %s", location.location_id, exc)
            continue
        summary["locations_scanned"] += 1
        summary["events_count"] += len(events)
        evaluated.append((location, events))

    with ledger_lock:
        try:
            ledger = store.load()
        except LedgerUnavailableError as exc:
            logger.error("Ledger unavailable; scan results deferred to the next cycle: %s", exc)
            return _log_summary(summary)

        for location, events in evaluated:
            created, resent = reconcile_events(ledger, location, events, config, now=scanned_at)
            summary["created_count"] += created
            summary["resend_count"] += resent

        if summary["created_count"] or summary["resend_count"]:
            try:
                store.save(ledger)
                summary["persisted"] = True
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to persist notification ledger after scan: %s", exc)

    summary["pending_count"] = sum(1 for entry in ledger if not entry.sent)

    if dispatch is not None and summary["pending_count"]:
        try:
            scheduled = dispatch([entry.copy() for entry in ledger])
        except Exception as exc:  # noqa: BLE001
            logger.exception("Delivery scheduling failed after scan: %s", exc)
        else:
            summary["scheduled_groups"] = len(scheduled) if isinstance(scheduled, (list, tuple)) else 0

    return _log_summary(summary)


def scan_location(location_id: str, **kwargs: Any) -> dict[str, Any]:
    return run_scan_cycle(location_ids=[location_id], **kwargs)
