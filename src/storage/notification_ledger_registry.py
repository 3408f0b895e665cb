from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

import sqlalchemy as sa

logger = logging.getLogger("monitor.ledger")

SEVERITY_WARNING = "warning"
SEVERITY_DANGER = "danger"
SUPPORTED_SEVERITIES = (SEVERITY_WARNING, SEVERITY_DANGER)

DEFAULT_LEDGER_PATH = Path(__file__).resolve().parents[2] / "data" / "notif.json"

# Scan cycles and delivery jobs run on different scheduler threads; every
# load-modify-save against the store happens while holding this lock.
ledger_lock = threading.RLock()


class LedgerUnavailableError(RuntimeError):
    """The backing store could not be read; callers must not save over it."""


def _isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    normalized = value.astimezone(timezone.utc)
    return normalized.isoformat().replace("+00:00", "Z")


def _ensure_datetime(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, str):
        normalized = value.strip().replace("Z", "+00:00")
        if not normalized:
            return None
        parsed = datetime.fromisoformat(normalized)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"Unsupported datetime value: {value!r}")


def make_entry_id(location_id: str, parameter: str, severity: str, observed_at: str | None) -> str:
    return f"{location_id}_{parameter}_{severity}_{observed_at or ''}"


@dataclass
class NotificationEntry:
    id: str
    location_id: str
    parameter: str
    severity: str
    value: float
    observed_at: str | None
    message: str
    created_at: datetime
    sent: bool = False
    sent_at: datetime | None = None
    attempts: int = 0

    def copy(self) -> "NotificationEntry":
        return replace(self)

    def mark_sent(self, sent_at: datetime) -> None:
        self.sent = True
        self.sent_at = sent_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "locationId": self.location_id,
            "parameter": self.parameter,
            "severity": self.severity,
            "value": self.value,
            "observedAt": self.observed_at,
            "message": self.message,
            "createdAt": _isoformat_utc(self.created_at),
            "sent": self.sent,
            "sentAt": _isoformat_utc(self.sent_at),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NotificationEntry":
        if not isinstance(payload, dict):
            raise ValueError("Ledger entry must be an object.")

        entry_id = str(payload.get("id", "")).strip()
        if not entry_id:
            raise ValueError("Ledger entry requires non-empty 'id'.")

        severity = str(payload.get("severity", payload.get("level", ""))).strip().lower()
        if severity not in SUPPORTED_SEVERITIES:
            raise ValueError(f"Ledger entry '{entry_id}' has unsupported severity '{severity}'.")

        value = float(payload.get("value"))
        if not math.isfinite(value):
            raise ValueError(f"Ledger entry '{entry_id}' has non-finite value.")

        observed_at = payload.get("observedAt", payload.get("timestamp"))
        created_at = _ensure_datetime(payload.get("createdAt")) or datetime.now(timezone.utc)
        sent_at = _ensure_datetime(payload.get("sentAt"))
        sent = bool(payload.get("sent", False)) and sent_at is not None

        return cls(
            id=entry_id,
            location_id=str(payload.get("locationId", "")).strip(),
            parameter=str(payload.get("parameter", payload.get("param", ""))).strip(),
            severity=severity,
            value=value,
            observed_at=str(observed_at) if observed_at is not None else None,
            message=str(payload.get("message", "")),
            created_at=created_at,
            sent=sent,
            sent_at=sent_at,
            attempts=max(0, int(payload.get("attempts", 0) or 0)),
        )


def _entries_from_payload(raw_items: list[Any], *, source: str) -> list[NotificationEntry]:
    entries: list[NotificationEntry] = []
    seen: set[str] = set()
    for item in raw_items:
        try:
            entry = NotificationEntry.from_dict(item)
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping malformed ledger entry source=%s: %s", source, exc)
            continue
        if entry.id in seen:
            logger.warning("Skipping duplicate ledger entry source=%s id=%s", source, entry.id)
            continue
        seen.add(entry.id)
        entries.append(entry)
    return entries


class NotificationLedger(Protocol):
    def load(self) -> list[NotificationEntry]:
        ...

    def save(self, entries: Iterable[NotificationEntry]) -> None:
        ...


@dataclass
class JsonFileLedgerStore:
    """Ledger persisted as a JSON array, replaced atomically on every save."""

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path).expanduser().resolve()

    def load(self) -> list[NotificationEntry]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as file:
                raw_payload = json.load(file)
        except OSError as exc:
            raise LedgerUnavailableError(f"Notification ledger path={self.path} is unreadable: {exc}") from exc
        except ValueError as exc:
            logger.error("Notification ledger path=%s is not valid JSON; treating it as empty: %s", self.path, exc)
            return []

        if not isinstance(raw_payload, list):
            logger.error("Notification ledger path=%s does not contain a JSON list; ignoring it.", self.path)
            return []
        return _entries_from_payload(raw_payload, source=str(self.path))

    def save(self, entries: Iterable[NotificationEntry]) -> None:
        payload = [entry.to_dict() for entry in entries]
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                json.dump(payload, file, ensure_ascii=False, indent=2)
                file.flush()
                os.fsync(file.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


_LEDGER_TABLE_NAME = "monitor_notification_ledger"
_METADATA = sa.MetaData()

_LEDGER_TABLE = sa.Table(
    _LEDGER_TABLE_NAME,
    _METADATA,
    sa.Column("id", sa.String(512), primary_key=True),
    sa.Column("position", sa.Integer, nullable=False),
    sa.Column("location_id", sa.String(160), nullable=False),
    sa.Column("parameter", sa.String(64), nullable=False),
    sa.Column("severity", sa.String(16), nullable=False),
    sa.Column("value", sa.Float, nullable=False),
    sa.Column("observed_at", sa.String(64), nullable=True),
    sa.Column("message", sa.Text, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("sent", sa.Boolean, nullable=False, default=False),
    sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("attempts", sa.Integer, nullable=False, default=0),
    sa.Index("ix_monitor_notification_ledger_position", "position"),
    sa.Index("ix_monitor_notification_ledger_sent", "sent"),
)

_ENGINES: dict[str, sa.Engine] = {}
_INITIALIZED_DATABASE_URLS: set[str] = set()


def _get_engine(database_url: str) -> sa.Engine:
    if database_url not in _ENGINES:
        _ENGINES[database_url] = sa.create_engine(database_url, future=True, pool_pre_ping=True)
    return _ENGINES[database_url]


def _ensure_ledger_table(database_url: str) -> sa.Engine:
    engine = _get_engine(database_url)
    if database_url not in _INITIALIZED_DATABASE_URLS:
        _METADATA.create_all(engine, tables=[_LEDGER_TABLE], checkfirst=True)
        _INITIALIZED_DATABASE_URLS.add(database_url)
    return engine


@dataclass
class SqlLedgerStore:
    """Ledger persisted in a SQL table; a save swaps all rows in one transaction."""

    database_url: str
    _engine: sa.Engine | None = field(default=None, init=False, repr=False)

    def _get_engine(self) -> sa.Engine:
        if self._engine is None:
            self._engine = _ensure_ledger_table(self.database_url)
        return self._engine

    def load(self) -> list[NotificationEntry]:
        try:
            engine = self._get_engine()
            with engine.connect() as conn:
                rows = conn.execute(sa.select(_LEDGER_TABLE).order_by(_LEDGER_TABLE.c.position.asc())).mappings().all()
        except sa.exc.SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Notification ledger table={_LEDGER_TABLE_NAME} is unreadable: {exc}") from exc

        raw_items = [
            {
                "id": row["id"],
                "locationId": row["location_id"],
                "parameter": row["parameter"],
                "severity": row["severity"],
                "value": row["value"],
                "observedAt": row["observed_at"],
                "message": row["message"],
                "createdAt": row["created_at"],
                "sent": row["sent"],
                "sentAt": row["sent_at"],
                "attempts": row["attempts"],
            }
            for row in rows
        ]
        return _entries_from_payload(raw_items, source=_LEDGER_TABLE_NAME)

    def save(self, entries: Iterable[NotificationEntry]) -> None:
        records = [
            {
                "id": entry.id,
                "position": position,
                "location_id": entry.location_id,
                "parameter": entry.parameter,
                "severity": entry.severity,
                "value": float(entry.value),
                "observed_at": entry.observed_at,
                "message": entry.message,
                "created_at": entry.created_at,
                "sent": bool(entry.sent),
                "sent_at": entry.sent_at,
                "attempts": int(entry.attempts),
            }
            for position, entry in enumerate(entries)
        ]
        engine = self._get_engine()
        with engine.begin() as conn:
            conn.execute(sa.delete(_LEDGER_TABLE))
            if records:
                conn.execute(sa.insert(_LEDGER_TABLE), records)


def build_ledger_store(
    *,
    path: str | Path | None = None,
    database_url: str | None = None,
) -> NotificationLedger:
    resolved_url = (database_url or os.getenv("MONITOR_LEDGER_DATABASE_URL", "")).strip()
    if resolved_url:
        return SqlLedgerStore(database_url=resolved_url)

    resolved_path = path or os.getenv("MONITOR_LEDGER_PATH", "").strip() or DEFAULT_LEDGER_PATH
    return JsonFileLedgerStore(path=Path(resolved_path))


def replace_entry(store: NotificationLedger, entry: NotificationEntry) -> None:
    """Re-read the ledger, overwrite the entry with the same id and save it back.

    Raises LedgerUnavailableError without saving when the current ledger cannot be read.
    """
    with ledger_lock:
        entries = store.load()
        for index, existing in enumerate(entries):
            if existing.id == entry.id:
                entries[index] = entry.copy()
                break
        else:
            entries.append(entry.copy())
        store.save(entries)


def count_pending_by_severity(entries: Iterable[NotificationEntry]) -> dict[str, int]:
    counts = {severity: 0 for severity in SUPPORTED_SEVERITIES}
    for entry in entries:
        if entry.sent:
            continue
        if entry.severity in counts:
            counts[entry.severity] += 1
    return counts
