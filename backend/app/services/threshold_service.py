from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

logger = logging.getLogger("monitor.thresholds")

SEVERITY_WARNING = "warning"
SEVERITY_DANGER = "danger"

TIMESTAMP_FIELDS = ("Timestamp", "timestamp", "time", "cachedAt")
BOUNDARY_KEYS = ("warning", "danger", "low_warning", "low_danger", "high_warning", "high_danger")

DEFAULT_FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "wind_kmh": ("Wind Speed (km/h)", "Wind Speed", "wind_speed", "wind speed", "wind"),
    "rainfall_mm": ("Rainfall (mm)", "Rainfall", "rainfall", "rain", "Rain(mm)"),
    "water_temp": ("Water Temp (C)", "Water Temp", "water_temp", "water temp", "WaterTemp"),
    "tss": ("TSS (V)", "TSS", "tss", "turbidity", "tss_v"),
}

_PARENTHETICAL_RE = re.compile(r"\(.*?\)")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ThresholdSpec:
    parameter: str
    warning: float | None = None
    danger: float | None = None
    low_warning: float | None = None
    low_danger: float | None = None
    high_warning: float | None = None
    high_danger: float | None = None
    fields: tuple[str, ...] = ()
    label: str | None = None

    @classmethod
    def from_mapping(cls, parameter: str, payload: Mapping[str, Any]) -> "ThresholdSpec":
        bounds: dict[str, float | None] = {}
        for key in BOUNDARY_KEYS:
            raw = payload.get(key)
            bounds[key] = None if raw is None else float(raw)
        raw_fields = payload.get("fields") or ()
        if isinstance(raw_fields, str):
            raw_fields = (raw_fields,)
        label = str(payload.get("label") or "").strip() or None
        return cls(
            parameter=parameter,
            fields=tuple(str(item).strip() for item in raw_fields if str(item).strip()),
            label=label,
            **bounds,
        )

    @property
    def candidate_fields(self) -> tuple[str, ...]:
        if self.fields:
            return self.fields
        return DEFAULT_FIELD_CANDIDATES.get(self.parameter, (self.parameter,))

    @property
    def display_name(self) -> str:
        return self.label or self.parameter

    def _meets(self, value: float, *, high: tuple[float | None, ...], low: float | None) -> bool:
        if any(bound is not None and value >= bound for bound in high):
            return True
        return low is not None and value <= low

    def classify(self, value: float) -> str | None:
        if self._meets(value, high=(self.danger, self.high_danger), low=self.low_danger):
            return SEVERITY_DANGER
        if self._meets(value, high=(self.warning, self.high_warning), low=self.low_warning):
            return SEVERITY_WARNING
        return None


@dataclass(frozen=True)
class ExcursionEvent:
    parameter: str
    severity: str
    value: float
    observed_at: str | None
    note: str = ""


def normalize_key(value: Any) -> str:
    if value is None:
        return ""
    normalized = str(value).strip().lower()
    normalized = _PARENTHETICAL_RE.sub("", normalized)
    normalized = _NON_ALNUM_RE.sub("_", normalized)
    return normalized.strip("_")


def pick_field(row: Mapping[str, Any], candidates: Sequence[str]) -> Any:
    """Value of the first row field matching a candidate name, or None.

    Exact normalized matches are tried for every candidate before falling back
    to substring containment in either direction.
    """
    if not row:
        return None

    normalized_keys = [(key, normalize_key(key)) for key in row.keys()]
    normalized_candidates = [name for name in (normalize_key(c) for c in candidates) if name]

    for candidate in normalized_candidates:
        for key, normalized in normalized_keys:
            if normalized and normalized == candidate:
                return row[key]

    for key, normalized in normalized_keys:
        if not normalized:
            continue
        for candidate in normalized_candidates:
            if candidate in normalized or normalized in candidate:
                return row[key]
    return None


def coerce_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).strip().replace("\u00a0", "").replace(" ", "")
    if not text:
        return None

    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            # 1.234,5
            text = text.replace(".", "").replace(",", ".")
        else:
            # 1,234.5
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        if text.count(",") > 1 or (len(tail) == 3 and head.lstrip("+-").isdigit()):
            text = text.replace(",", "")
        else:
            text = f"{head}.{tail}"
    elif text.count(".") > 1:
        text = text.replace(".", "")

    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def extract_observed_at(row: Mapping[str, Any]) -> str | None:
    for field_name in TIMESTAMP_FIELDS:
        value = row.get(field_name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _as_threshold_spec(parameter: str, spec: ThresholdSpec | Mapping[str, Any]) -> ThresholdSpec:
    if isinstance(spec, ThresholdSpec):
        return spec
    if isinstance(spec, Mapping):
        return ThresholdSpec.from_mapping(parameter, spec)
    raise TypeError(f"Threshold for parameter '{parameter}' must be a ThresholdSpec or a mapping, got {type(spec).__name__}.")


def evaluate_latest(
    rows: Sequence[Mapping[str, Any]] | None,
    thresholds: Mapping[str, ThresholdSpec | Mapping[str, Any]],
) -> list[ExcursionEvent]:
    specs = {str(parameter): _as_threshold_spec(str(parameter), spec) for parameter, spec in (thresholds or {}).items()}
    if not rows or not isinstance(rows, (list, tuple)):
        return []
    last = rows[-1]
    if not isinstance(last, Mapping):
        return []

    observed_at = extract_observed_at(last)
    events: list[ExcursionEvent] = []
    for parameter, spec in specs.items():
        value = coerce_number(pick_field(last, spec.candidate_fields))
        if value is None:
            continue
        severity = spec.classify(value)
        if severity is None:
            continue
        events.append(
            ExcursionEvent(
                parameter=parameter,
                severity=severity,
                value=value,
                observed_at=observed_at,
            )
        )
    return events
