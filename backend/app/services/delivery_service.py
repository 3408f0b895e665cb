from __future__ import annotations

import json
import logging
import random
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from app.services.destination_resolver import DestinationResolver
from app.services.transport_service import MessageTransport, SendOutcome, SessionGate, TransportSessionError

PROJECT_ROOT = Path(__file__).resolve().parents[3]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.storage.notification_ledger_registry import (  # noqa: E402
    LedgerUnavailableError,
    NotificationEntry,
    NotificationLedger,
    replace_entry,
)

logger = logging.getLogger("monitor.delivery")

JOB_ID_PREFIX = "monitor_delivery"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _emit_structured_delivery_log(
    *,
    status: str,
    entry: NotificationEntry,
    destination_key: str,
    attempt: int | None,
    error: str | None = None,
    error_code: str | None = None,
) -> None:
    payload = {
        "kind": "monitor_notification_delivery",
        "status": str(status).upper(),
        "entry_id": entry.id,
        "location_id": entry.location_id,
        "parameter": entry.parameter,
        "severity": entry.severity,
        "destination_key": destination_key,
        "attempt": attempt,
        "attempts_total": entry.attempts,
        "error": error,
        "error_code": error_code,
        "logged_at": _isoformat_utc(_utc_now()),
    }
    logger.info("notification_delivery_event %s", json.dumps(payload, separators=(",", ":"), ensure_ascii=False))


@dataclass(frozen=True)
class DeliveryGroup:
    destination_key: str
    location_id: str
    entries: tuple[NotificationEntry, ...]
    delay_seconds: int = 0

    @property
    def job_id(self) -> str:
        return f"{JOB_ID_PREFIX}:{self.destination_key}"


def plan_delivery_groups(
    entries: Iterable[NotificationEntry],
    *,
    destination_key: Callable[[str], str | None] | None = None,
    max_random_offset_seconds: int = 10,
    rng: random.Random | None = None,
) -> list[DeliveryGroup]:
    """Group unsent entries per destination and stagger them with cumulative random offsets.

    Destinations keep the order in which they first appear in the ledger; the
    k-th destination fires after the sum of the first k random offsets.
    """
    key_for = destination_key or (lambda location_id: location_id)
    keys_by_location: dict[str, str] = {}
    buckets: dict[str, list[NotificationEntry]] = {}
    first_location: dict[str, str] = {}
    for entry in entries:
        if entry.sent:
            continue
        if entry.location_id not in keys_by_location:
            keys_by_location[entry.location_id] = key_for(entry.location_id) or entry.location_id
        key = keys_by_location[entry.location_id]
        buckets.setdefault(key, []).append(entry)
        first_location.setdefault(key, entry.location_id)

    generator = rng or random.Random()
    max_offset = max(0, int(max_random_offset_seconds))
    offset_total = 0
    groups: list[DeliveryGroup] = []
    for key, grouped in buckets.items():
        offset_total += generator.randint(0, max_offset)
        groups.append(
            DeliveryGroup(
                destination_key=key,
                location_id=first_location[key],
                entries=tuple(grouped),
                delay_seconds=offset_total,
            )
        )
    return groups


@dataclass
class DeliveryWorker:
    store: NotificationLedger
    transport: MessageTransport
    resolver: DestinationResolver
    retry_attempts: int = 2
    retry_interval_seconds: int = 30
    session_gate: SessionGate | None = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime] = _utc_now

    def __post_init__(self) -> None:
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def is_in_flight(self, destination_key: str) -> bool:
        with self._in_flight_lock:
            return destination_key in self._in_flight

    def _persist(self, entry: NotificationEntry) -> None:
        try:
            replace_entry(self.store, entry)
        except LedgerUnavailableError as exc:
            logger.warning("Ledger unavailable; delivery state for entry_id=%s not saved this pass: %s", entry.id, exc)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist delivery state entry_id=%s: %s", entry.id, exc)

    def _send(self, destination: str, text: str) -> SendOutcome:
        try:
            return self.transport.send(destination, text)
        except Exception as exc:  # noqa: BLE001
            return SendOutcome(success=False, error=str(exc).split("\n")[0][:240], error_code="UNEXPECTED_ERROR")

    def _deliver_entry(self, destination: str, destination_key: str, entry: NotificationEntry) -> bool:
        max_tries = 1 + max(0, int(self.retry_attempts))
        base_attempts = max(0, int(entry.attempts))
        for attempt in range(1, max_tries + 1):
            entry.attempts = base_attempts + attempt
            outcome = self._send(destination, entry.message)
            if outcome.success:
                entry.mark_sent(self.clock())
                self._persist(entry)
                _emit_structured_delivery_log(
                    status="SENT",
                    entry=entry,
                    destination_key=destination_key,
                    attempt=attempt,
                )
                return True

            entry.sent = False
            self._persist(entry)
            final = attempt >= max_tries
            _emit_structured_delivery_log(
                status="FAILED" if final else "RETRY",
                entry=entry,
                destination_key=destination_key,
                attempt=attempt,
                error=outcome.error,
                error_code=outcome.error_code,
            )
            if not final:
                self.sleep(max(0, int(self.retry_interval_seconds)))
        return False

    def deliver(self, destination: str, entries: Iterable[NotificationEntry], *, destination_key: str | None = None) -> dict[str, Any]:
        key = destination_key or destination
        summary = {"destination_key": key, "sent_count": 0, "failed_count": 0, "attempts_total": 0}
        for entry in entries:
            local = entry.copy()
            starting_attempts = local.attempts
            if self._deliver_entry(destination, key, local):
                summary["sent_count"] += 1
            else:
                summary["failed_count"] += 1
            summary["attempts_total"] += local.attempts - starting_attempts
        return summary

    def deliver_group(self, group: DeliveryGroup) -> dict[str, Any]:
        with self._in_flight_lock:
            if group.destination_key in self._in_flight:
                logger.info("Delivery already in flight destination_key=%s; skipping group.", group.destination_key)
                return {"destination_key": group.destination_key, "skipped": True}
            self._in_flight.add(group.destination_key)

        try:
            if self.session_gate is not None:
                try:
                    self.session_gate.wait_until_ready()
                except TransportSessionError as exc:
                    logger.error(
                        "Abandoning delivery group destination_key=%s entries=%s: %s",
                        group.destination_key,
                        len(group.entries),
                        exc,
                    )
                    return {"destination_key": group.destination_key, "skipped": True, "reason": "session"}

            destination = self.resolver.resolve(group.location_id)
            if not destination:
                logger.warning(
                    "No destination for location=%s; %s notification(s) stay pending.",
                    group.location_id,
                    len(group.entries),
                )
                return {"destination_key": group.destination_key, "skipped": True, "reason": "destination"}

            summary = self.deliver(destination, group.entries, destination_key=group.destination_key)
            logger.info(
                "Delivery group completed destination_key=%s sent=%s failed=%s attempts=%s",
                group.destination_key,
                summary["sent_count"],
                summary["failed_count"],
                summary["attempts_total"],
            )
            return summary
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(group.destination_key)


def schedule_deliveries(
    entries: Iterable[NotificationEntry],
    *,
    job_scheduler: Any,
    worker: DeliveryWorker,
    destination_key: Callable[[str], str | None] | None = None,
    max_random_offset_seconds: int = 10,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> list[Any]:
    """Dispatch each destination group as a one-off scheduler job; returns the jobs.

    Jobs are the cancellation handles (``job.remove()``). A destination that
    already has a queued job or a running delivery is left alone this cycle.
    """
    started_at = now or _utc_now()
    groups = plan_delivery_groups(
        entries,
        destination_key=destination_key,
        max_random_offset_seconds=max_random_offset_seconds,
        rng=rng,
    )

    jobs: list[Any] = []
    for group in groups:
        if worker.is_in_flight(group.destination_key) or job_scheduler.get_job(group.job_id) is not None:
            logger.debug("Delivery already pending destination_key=%s; not rescheduled.", group.destination_key)
            continue
        job = job_scheduler.add_job(
            worker.deliver_group,
            trigger="date",
            run_date=started_at + timedelta(seconds=group.delay_seconds),
            args=[group],
            id=group.job_id,
            misfire_grace_time=None,
        )
        jobs.append(job)
        logger.info(
            "Scheduled delivery destination_key=%s entries=%s delay_seconds=%s",
            group.destination_key,
            len(group.entries),
            group.delay_seconds,
        )
    return jobs
