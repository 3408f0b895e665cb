from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

from app.services.delivery_service import DeliveryWorker, plan_delivery_groups, schedule_deliveries
from app.services.destination_resolver import DestinationResolver
from app.services.monitor_config_service import parse_monitor_config
from app.services.monitor_scan_service import run_scan_cycle
from app.services.transport_service import SendOutcome, SessionGate
from src.storage.notification_ledger_registry import JsonFileLedgerStore, LedgerUnavailableError, NotificationEntry

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class _ScriptedTransport:
    def __init__(self, failures: int = 0, ready: bool = True) -> None:
        self.failures = failures
        self.ready = ready
        self.calls: list[tuple[str, str]] = []

    def ensure_ready(self) -> bool:
        return self.ready

    def send(self, destination: str, text: str) -> SendOutcome:
        self.calls.append((destination, text))
        if len(self.calls) <= self.failures:
            return SendOutcome(success=False, error="HTTP 503", error_code="HTTP_ERROR")
        return SendOutcome(success=True)


class _FakeJob:
    def __init__(self, job_id: str, kwargs: dict) -> None:
        self.id = job_id
        self.kwargs = kwargs


class _FakeJobScheduler:
    def __init__(self, existing: set[str] | None = None) -> None:
        self.jobs: dict[str, _FakeJob] = {job_id: _FakeJob(job_id, {}) for job_id in (existing or set())}
        self.added: list[_FakeJob] = []

    def get_job(self, job_id: str):
        return self.jobs.get(job_id)

    def add_job(self, func, **kwargs):
        job = _FakeJob(kwargs["id"], {"func": func, **kwargs})
        self.jobs[job.id] = job
        self.added.append(job)
        return job


def _entry(entry_id: str, location_id: str, *, sent: bool = False, attempts: int = 0) -> NotificationEntry:
    return NotificationEntry(
        id=entry_id,
        location_id=location_id,
        parameter="wind_kmh",
        severity="danger",
        value=70.0,
        observed_at="t1",
        message=f"message {entry_id}",
        created_at=NOW,
        sent=sent,
        sent_at=NOW if sent else None,
        attempts=attempts,
    )


def _worker(store: JsonFileLedgerStore, transport: _ScriptedTransport, sleeps: list[float], **kwargs) -> DeliveryWorker:
    return DeliveryWorker(
        store=store,
        transport=transport,
        resolver=DestinationResolver(configured={"loc_a": "group-a@g.us", "loc_b": "group-b@g.us"}),
        retry_attempts=kwargs.pop("retry_attempts", 2),
        retry_interval_seconds=30,
        sleep=sleeps.append,
        clock=lambda: NOW + timedelta(minutes=1),
        **kwargs,
    )


def test_plan_groups_unsent_entries_with_cumulative_offsets():
    entries = [
        _entry("a1", "loc_a"),
        _entry("b1", "loc_b"),
        _entry("a2", "loc_a"),
        _entry("c1", "loc_c", sent=True),
    ]

    groups = plan_delivery_groups(entries, max_random_offset_seconds=10, rng=random.Random(7))

    expected_rng = random.Random(7)
    first = expected_rng.randint(0, 10)
    second = first + expected_rng.randint(0, 10)
    assert [group.destination_key for group in groups] == ["loc_a", "loc_b"]
    assert [[entry.id for entry in group.entries] for group in groups] == [["a1", "a2"], ["b1"]]
    assert [group.delay_seconds for group in groups] == [first, second]
    assert all(0 <= group.delay_seconds <= 20 for group in groups)


def test_plan_groups_by_resolved_destination():
    entries = [_entry("a1", "loc_a"), _entry("x1", "loc_x"), _entry("b1", "loc_b")]
    shared = {"loc_a": "group-1", "loc_x": "group-1", "loc_b": "group-2"}

    groups = plan_delivery_groups(entries, destination_key=shared.get, max_random_offset_seconds=0)

    assert [(group.destination_key, group.location_id) for group in groups] == [("group-1", "loc_a"), ("group-2", "loc_b")]
    assert [entry.id for entry in groups[0].entries] == ["a1", "x1"]
    assert [group.delay_seconds for group in groups] == [0, 0]


def test_worker_retries_until_success_on_third_attempt(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    store.save([_entry("a1", "loc_a"), _entry("a2", "loc_a")])
    transport = _ScriptedTransport(failures=2)
    sleeps: list[float] = []
    worker = _worker(store, transport, sleeps)

    group = plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0]
    summary = worker.deliver_group(group)

    assert summary["sent_count"] == 2
    assert summary["failed_count"] == 0
    assert sleeps == [30, 30]
    assert transport.calls == [
        ("group-a@g.us", "message a1"),
        ("group-a@g.us", "message a1"),
        ("group-a@g.us", "message a1"),
        ("group-a@g.us", "message a2"),
    ]

    first, second = store.load()
    assert (first.attempts, first.sent) == (3, True)
    assert first.sent_at == NOW + timedelta(minutes=1)
    assert (second.attempts, second.sent) == (1, True)


def test_worker_leaves_entry_unsent_after_exhausting_retries(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    store.save([_entry("a1", "loc_a", attempts=1)])
    transport = _ScriptedTransport(failures=10)
    sleeps: list[float] = []
    worker = _worker(store, transport, sleeps, retry_attempts=1)

    summary = worker.deliver_group(plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0])

    assert summary["failed_count"] == 1
    assert summary["attempts_total"] == 2
    assert sleeps == [30]
    reloaded = store.load()[0]
    assert reloaded.sent is False
    assert reloaded.sent_at is None
    assert reloaded.attempts == 3


def test_worker_merges_into_ledger_extended_concurrently(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    store.save([_entry("a1", "loc_a")])
    group = plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0]

    store.save([_entry("a1", "loc_a"), _entry("b1", "loc_b")])
    worker = _worker(store, _ScriptedTransport(), [])
    worker.deliver_group(group)

    entries = {entry.id: entry for entry in store.load()}
    assert list(entries) == ["a1", "b1"]
    assert entries["a1"].sent is True
    assert entries["b1"].sent is False


def test_worker_skips_group_without_destination(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    store.save([_entry("z1", "loc_unknown")])
    transport = _ScriptedTransport()
    worker = _worker(store, transport, [])

    summary = worker.deliver_group(plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0])

    assert summary["skipped"] is True
    assert summary["reason"] == "destination"
    assert transport.calls == []
    assert store.load()[0].attempts == 0


def test_worker_abandons_group_when_session_never_ready(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    store.save([_entry("a1", "loc_a")])
    transport = _ScriptedTransport(ready=False)
    gate_sleeps: list[float] = []
    gate = SessionGate(transport=transport, max_attempts=3, backoff_seconds=2, backoff_cap_seconds=3, sleep=gate_sleeps.append)
    worker = _worker(store, transport, [], session_gate=gate)

    summary = worker.deliver_group(plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0])

    assert summary["reason"] == "session"
    assert gate_sleeps == [2, 3]
    assert transport.calls == []
    assert worker.is_in_flight("loc_a") is False


def test_schedule_deliveries_adds_date_jobs_and_skips_pending_destinations(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    worker = _worker(store, _ScriptedTransport(), [])
    job_scheduler = _FakeJobScheduler(existing={"monitor_delivery:loc_b"})
    entries = [_entry("a1", "loc_a"), _entry("b1", "loc_b"), _entry("c1", "loc_c")]

    jobs = schedule_deliveries(
        entries,
        job_scheduler=job_scheduler,
        worker=worker,
        max_random_offset_seconds=5,
        rng=random.Random(3),
        now=NOW,
    )

    expected_rng = random.Random(3)
    delay_a = expected_rng.randint(0, 5)
    delay_b = delay_a + expected_rng.randint(0, 5)
    delay_c = delay_b + expected_rng.randint(0, 5)

    assert [job.id for job in jobs] == ["monitor_delivery:loc_a", "monitor_delivery:loc_c"]
    assert jobs[0].kwargs["trigger"] == "date"
    assert jobs[0].kwargs["func"] == worker.deliver_group
    assert jobs[0].kwargs["run_date"] == NOW + timedelta(seconds=delay_a)
    assert jobs[1].kwargs["run_date"] == NOW + timedelta(seconds=delay_c)
    assert [entry.id for entry in jobs[1].kwargs["args"][0].entries] == ["c1"]
    assert len(job_scheduler.added) == 2


def test_plan_resolves_each_location_once():
    calls: list[str] = []

    def _key(location_id: str) -> str:
        calls.append(location_id)
        return f"group-{location_id}"

    entries = [_entry("a1", "loc_a"), _entry("a2", "loc_a"), _entry("b1", "loc_b"), _entry("a3", "loc_a")]
    plan_delivery_groups(entries, destination_key=_key, max_random_offset_seconds=0)

    assert calls == ["loc_a", "loc_b"]


def test_attempts_accumulate_across_resend_pass(tmp_path: Path):
    store = JsonFileLedgerStore(tmp_path / "notif.json")
    already_sent = _entry("loc_a_wind_kmh_danger_t1", "loc_a", sent=True, attempts=3)
    store.save([already_sent])
    config = parse_monitor_config(
        {
            "thresholds": {"wind_kmh": {"warning": 40, "danger": 60}},
            "send": {"resend_after_minutes": 30},
            "locations": ["loc_a"],
        }
    )

    summary = run_scan_cycle(
        config=config,
        store=store,
        row_source=lambda location: [{"Timestamp": "t1", "Wind Speed": 70}],
        now=NOW + timedelta(minutes=45),
    )
    assert summary["resend_count"] == 1
    reset = store.load()[0]
    assert (reset.sent, reset.attempts) == (False, 3)

    worker = _worker(store, _ScriptedTransport(), [])
    worker.deliver_group(plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0])

    delivered = store.load()[0]
    assert delivered.sent is True
    assert delivered.attempts == 4


class _ReadFailingStore(JsonFileLedgerStore):
    fail_reads = False

    def load(self):
        if self.fail_reads:
            raise LedgerUnavailableError("ledger volume offline")
        return super().load()


def test_worker_skips_state_write_when_ledger_unreadable(tmp_path: Path):
    store = _ReadFailingStore(tmp_path / "notif.json")
    store.save([_entry("a1", "loc_a"), _entry("a2", "loc_a"), _entry("b1", "loc_b")])
    before = store.path.read_bytes()
    group = plan_delivery_groups(store.load(), max_random_offset_seconds=0)[0]
    transport = _ScriptedTransport()

    store.fail_reads = True
    summary = _worker(store, transport, []).deliver_group(group)

    assert summary["sent_count"] == 2
    assert len(transport.calls) == 2
    assert store.path.read_bytes() == before
