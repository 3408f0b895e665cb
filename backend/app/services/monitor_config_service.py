from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from app.config import get_settings
from app.services.threshold_service import BOUNDARY_KEYS, SEVERITY_DANGER, SEVERITY_WARNING, ThresholdSpec

logger = logging.getLogger("monitor.config")

DEFAULT_TEMPLATES = {
    SEVERITY_WARNING: "[WARNING] {location}: {param} = {value} ({time}) {note}",
    SEVERITY_DANGER: "[DANGER] {location}: {param} = {value} ({time}) {note}",
}
FALLBACK_TEMPLATE = "{location} {param} {value}"


class MonitorConfigError(ValueError):
    pass


@dataclass(frozen=True)
class SendPolicy:
    batch_interval_minutes: int = 5
    resend_after_minutes: int = 30
    random_offset_seconds_max: int = 10
    retry_attempts: int = 2
    retry_interval_seconds: int = 30
    session_max_attempts: int = 5
    session_backoff_seconds: int = 2
    session_backoff_cap_seconds: int = 60


@dataclass(frozen=True)
class MonitoredLocation:
    location_id: str
    display_name: str | None = None
    cache_folder: str | None = None
    group_hint: str | None = None

    @property
    def aliases(self) -> tuple[str, ...]:
        values: list[str] = []
        for alias in (self.display_name, self.cache_folder, self.group_hint):
            if alias and alias != self.location_id and alias not in values:
                values.append(alias)
        return tuple(values)


@dataclass(frozen=True)
class MonitorConfig:
    timezone: str
    thresholds: dict[str, ThresholdSpec]
    templates: dict[str, str]
    send: SendPolicy
    locations: tuple[MonitoredLocation, ...]
    groups: dict[str, str] = field(default_factory=dict)
    path: str | None = None

    def template_for(self, severity: str) -> str:
        return self.templates.get(severity) or self.templates.get(SEVERITY_DANGER) or FALLBACK_TEMPLATE

    def get_location(self, location_id: str) -> MonitoredLocation | None:
        for location in self.locations:
            if location.location_id == location_id:
                return location
        return None


def _config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser().resolve()
    settings = get_settings()
    return settings.resolve_path(settings.monitor_config_path)


def _optional_float(value: Any, *, field_name: str, parameter: str) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise MonitorConfigError(f"Threshold '{parameter}' field '{field_name}' must be numeric.") from exc


def _normalize_threshold(parameter: str, payload: Any) -> ThresholdSpec:
    if not isinstance(payload, dict):
        raise MonitorConfigError(f"Threshold '{parameter}' must be an object.")

    bounds = {
        key: _optional_float(payload.get(key), field_name=key, parameter=parameter)
        for key in BOUNDARY_KEYS
    }
    if all(value is None for value in bounds.values()):
        raise MonitorConfigError(f"Threshold '{parameter}' requires at least one boundary.")

    raw_fields = payload.get("fields", [])
    if isinstance(raw_fields, str):
        raw_fields = [raw_fields]
    if not isinstance(raw_fields, list):
        raise MonitorConfigError(f"Threshold '{parameter}' field 'fields' must be a list.")

    label = str(payload.get("label", "")).strip() or None
    return ThresholdSpec(
        parameter=parameter,
        fields=tuple(str(item).strip() for item in raw_fields if str(item).strip()),
        label=label,
        **bounds,
    )


def _positive_int(payload: dict[str, Any], key: str, default: int, *, min_value: int = 0) -> int:
    raw = payload.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise MonitorConfigError(f"Send option '{key}' must be an integer.") from exc
    if value < min_value:
        raise MonitorConfigError(f"Send option '{key}' must be >= {min_value}.")
    return value


def _normalize_send_policy(payload: Any) -> SendPolicy:
    if payload is None:
        return SendPolicy()
    if not isinstance(payload, dict):
        raise MonitorConfigError("Monitor config field 'send' must be an object.")

    defaults = SendPolicy()
    return SendPolicy(
        batch_interval_minutes=_positive_int(payload, "batch_interval_minutes", defaults.batch_interval_minutes, min_value=1),
        resend_after_minutes=_positive_int(payload, "resend_after_minutes", defaults.resend_after_minutes),
        random_offset_seconds_max=_positive_int(payload, "random_offset_seconds_max", defaults.random_offset_seconds_max),
        retry_attempts=_positive_int(payload, "retry_attempts", defaults.retry_attempts),
        retry_interval_seconds=_positive_int(payload, "retry_interval_seconds", defaults.retry_interval_seconds),
        session_max_attempts=_positive_int(payload, "session_max_attempts", defaults.session_max_attempts, min_value=1),
        session_backoff_seconds=_positive_int(payload, "session_backoff_seconds", defaults.session_backoff_seconds, min_value=1),
        session_backoff_cap_seconds=_positive_int(
            payload,
            "session_backoff_cap_seconds",
            defaults.session_backoff_cap_seconds,
            min_value=1,
        ),
    )


def _normalize_location(payload: Any) -> MonitoredLocation:
    if isinstance(payload, str):
        payload = {"location_id": payload}
    if not isinstance(payload, dict):
        raise MonitorConfigError("Each monitored location must be a string or an object.")

    location_id = str(payload.get("location_id", payload.get("locationId", ""))).strip()
    if not location_id:
        raise MonitorConfigError("Monitored location requires non-empty 'location_id'.")

    def _optional_text(key: str) -> str | None:
        value = payload.get(key)
        if value is None:
            return None
        return str(value).strip() or None

    return MonitoredLocation(
        location_id=location_id,
        display_name=_optional_text("display_name"),
        cache_folder=_optional_text("cache_folder"),
        group_hint=_optional_text("group"),
    )


def parse_monitor_config(raw_payload: Any, *, path: str | None = None) -> MonitorConfig:
    if not isinstance(raw_payload, dict):
        raise MonitorConfigError("Monitor config must define a top-level object.")

    thresholds_raw = raw_payload.get("thresholds", {}) or {}
    if not isinstance(thresholds_raw, dict):
        raise MonitorConfigError("Monitor config field 'thresholds' must be a mapping.")
    thresholds = {str(name): _normalize_threshold(str(name), spec) for name, spec in thresholds_raw.items()}

    templates_raw = raw_payload.get("templates", {}) or {}
    if not isinstance(templates_raw, dict):
        raise MonitorConfigError("Monitor config field 'templates' must be a mapping.")
    templates = dict(DEFAULT_TEMPLATES)
    templates.update({str(key).strip().lower(): str(value) for key, value in templates_raw.items()})

    groups_raw = raw_payload.get("groups", {}) or {}
    if not isinstance(groups_raw, dict):
        raise MonitorConfigError("Monitor config field 'groups' must be a mapping.")
    groups = {str(key): str(value).strip() for key, value in groups_raw.items() if str(value or "").strip()}

    locations_raw = raw_payload.get("locations")
    if locations_raw is None:
        # Deployments without an explicit registry monitor every mapped group.
        locations_raw = list(groups_raw.keys())
    if not isinstance(locations_raw, list):
        raise MonitorConfigError("Monitor config field 'locations' must be a list.")

    locations: list[MonitoredLocation] = []
    seen: set[str] = set()
    for item in locations_raw:
        location = _normalize_location(item)
        if location.location_id in seen:
            raise MonitorConfigError(f"Duplicate monitored location '{location.location_id}' is not allowed.")
        seen.add(location.location_id)
        locations.append(location)

    return MonitorConfig(
        timezone=str(raw_payload.get("timezone", "Asia/Jakarta")).strip() or "Asia/Jakarta",
        thresholds=thresholds,
        templates=templates,
        send=_normalize_send_policy(raw_payload.get("send")),
        locations=tuple(locations),
        groups=groups,
        path=path,
    )


def load_monitor_config(path: str | Path | None = None) -> MonitorConfig:
    resolved_path = _config_path(path)
    if not resolved_path.exists():
        raise MonitorConfigError(f"Monitor config file not found: {resolved_path}")

    try:
        with open(resolved_path, encoding="utf-8") as file:
            raw_payload = yaml.safe_load(file) or {}
    except yaml.YAMLError as exc:
        raise MonitorConfigError(f"Failed to parse monitor config YAML at {resolved_path}: {exc}") from exc
    except OSError as exc:
        raise MonitorConfigError(f"Failed to read monitor config file {resolved_path}: {exc}") from exc

    config = parse_monitor_config(raw_payload, path=str(resolved_path))
    logger.debug(
        "Loaded monitor config path=%s locations=%s thresholds=%s",
        resolved_path,
        len(config.locations),
        len(config.thresholds),
    )
    return config
