from __future__ import annotations

from types import SimpleNamespace

from app.services.monitor_scheduler import SCAN_JOB_ID, MonitorScheduler


class _FakeJobScheduler:
    def __init__(self) -> None:
        self.jobs: list[dict] = []
        self.started = False
        self.shutdown_calls: list[bool] = []

    def add_job(self, func, **kwargs):
        self.jobs.append({"func": func, **kwargs})

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.shutdown_calls.append(wait)


class _FakeRuntime:
    def __init__(self, batch_interval_minutes: int = 5) -> None:
        self.config = SimpleNamespace(send=SimpleNamespace(batch_interval_minutes=batch_interval_minutes), locations=())
        self.cycles: list[dict] = []

    def run_cycle(self, *, job_scheduler=None, location_ids=None, now=None):
        self.cycles.append({"job_scheduler": job_scheduler, "location_ids": location_ids})
        return {"scanned_at": "now", "created_count": 0}


def test_scheduler_disabled_via_env(monkeypatch):
    monkeypatch.setenv("MONITOR_SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("MONITOR_SCHEDULER_AUTO_START", "1")

    scheduler = MonitorScheduler.from_env()
    started = scheduler.start()
    assert started is False
    assert scheduler.is_running is False
    scheduler.shutdown()


def test_scheduler_interval_env_is_clamped(monkeypatch):
    monkeypatch.setenv("MONITOR_SCHEDULER_ENABLED", "yes")
    monkeypatch.setenv("MONITOR_SCHEDULER_AUTO_START", "off")
    monkeypatch.setenv("MONITOR_SCAN_INTERVAL_MINUTES", "0")

    scheduler = MonitorScheduler.from_env()
    assert scheduler.enabled is True
    assert scheduler.auto_start is False
    assert scheduler.interval_minutes == 1
    assert scheduler.start() is False


def test_scheduler_registers_scan_job_with_config_interval():
    runtime = _FakeRuntime(batch_interval_minutes=7)
    job_scheduler = _FakeJobScheduler()
    scheduler = MonitorScheduler(
        enabled=True,
        auto_start=True,
        interval_minutes=None,
        runtime_factory=lambda: runtime,
        scheduler_factory=lambda: job_scheduler,
    )

    assert scheduler.start() is True
    assert scheduler.start() is True
    assert scheduler.is_running is True
    assert job_scheduler.started is True
    assert len(job_scheduler.jobs) == 1
    job = job_scheduler.jobs[0]
    assert job["id"] == SCAN_JOB_ID
    assert job["trigger"] == "interval"
    assert job["minutes"] == 7
    assert job["max_instances"] == 1

    job["func"]()
    assert runtime.cycles == [{"job_scheduler": job_scheduler, "location_ids": None}]

    scheduler.run_now(location_ids=["pulau_komodo"])
    assert runtime.cycles[-1]["location_ids"] == ["pulau_komodo"]

    scheduler.shutdown()
    assert job_scheduler.shutdown_calls == [False]
    assert scheduler.is_running is False
    assert scheduler.job_scheduler is None


def test_scan_tick_failure_is_logged_not_raised():
    class _BrokenRuntime(_FakeRuntime):
        def run_cycle(self, **kwargs):
            raise RuntimeError("ledger unavailable")

    scheduler = MonitorScheduler(
        enabled=True,
        auto_start=True,
        interval_minutes=3,
        runtime_factory=_BrokenRuntime,
        scheduler_factory=_FakeJobScheduler,
    )
    scheduler.start()
    scheduler.job_scheduler.jobs[0]["func"]()
    assert scheduler.job_scheduler.jobs[0]["minutes"] == 3


class _BlockingJobScheduler(_FakeJobScheduler):
    def start(self) -> None:
        self.started = True
        for job in self.jobs:
            job["func"]()


def test_blocking_scheduler_ticks_with_configured_locations(monkeypatch):
    monkeypatch.setenv("MONITOR_SCHEDULER_ENABLED", "0")
    monkeypatch.setenv("MONITOR_SCAN_INTERVAL_MINUTES", "2")
    runtime = _FakeRuntime()
    job_scheduler = _BlockingJobScheduler()

    scheduler = MonitorScheduler.from_env(
        enabled=True,
        auto_start=True,
        location_ids=["teluk_ambon"],
        runtime_factory=lambda: runtime,
        scheduler_factory=lambda: job_scheduler,
    )

    assert scheduler.start() is True
    assert job_scheduler.jobs[0]["minutes"] == 2
    assert runtime.cycles == [{"job_scheduler": job_scheduler, "location_ids": ["teluk_ambon"]}]
