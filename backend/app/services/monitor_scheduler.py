from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import BaseScheduler

from app.services.monitor_runtime import MonitorRuntime, build_monitor_runtime

logger = logging.getLogger("monitor.scheduler")

SCAN_JOB_ID = "monitor_scan_tick"


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int | None, *, min_value: int = 1) -> int | None:
    raw = str(os.getenv(name, "" if default is None else str(default))).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = default
    if value is None:
        return None
    return max(min_value, value)


@dataclass
class MonitorScheduler:
    enabled: bool
    auto_start: bool
    interval_minutes: int | None
    location_ids: list[str] | None = None
    runtime_factory: Callable[[], MonitorRuntime] = build_monitor_runtime
    scheduler_factory: Callable[[], BaseScheduler] = lambda: AsyncIOScheduler(timezone="UTC")

    def __post_init__(self) -> None:
        self._scheduler: BaseScheduler | None = None
        self._runtime: MonitorRuntime | None = None
        self._is_running = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "MonitorScheduler":
        options: dict[str, Any] = {
            "enabled": _env_bool("MONITOR_SCHEDULER_ENABLED", True),
            "auto_start": _env_bool("MONITOR_SCHEDULER_AUTO_START", True),
            "interval_minutes": _env_int("MONITOR_SCAN_INTERVAL_MINUTES", None, min_value=1),
        }
        options.update(overrides)
        return cls(**options)

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def runtime(self) -> MonitorRuntime | None:
        return self._runtime

    @property
    def job_scheduler(self) -> BaseScheduler | None:
        return self._scheduler

    def start(self) -> bool:
        if self._is_running:
            return True

        if not self.enabled:
            logger.info("Monitor scheduler disabled (MONITOR_SCHEDULER_ENABLED=0).")
            return False

        if not self.auto_start:
            logger.info("Monitor scheduler auto-start disabled (MONITOR_SCHEDULER_AUTO_START=0).")
            return False

        runtime = self.runtime_factory()
        interval_minutes = self.interval_minutes or runtime.config.send.batch_interval_minutes

        scheduler = self.scheduler_factory()
        scheduler.add_job(
            self._run_tick,
            trigger="interval",
            minutes=interval_minutes,
            id=SCAN_JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(15, interval_minutes * 60),
        )

        # Set before start(): BlockingScheduler.start() returns only on shutdown.
        self._runtime = runtime
        self._scheduler = scheduler
        self._is_running = True
        logger.info(
            "Monitor scheduler started interval_minutes=%s locations=%s",
            interval_minutes,
            len(self.location_ids or runtime.config.locations),
        )
        try:
            scheduler.start()
        except Exception:
            self._runtime = None
            self._scheduler = None
            self._is_running = False
            raise
        return True

    def shutdown(self) -> None:
        if self._scheduler is not None:
            try:
                # Pending delivery jobs are abandoned; their entries stay unsent in the ledger.
                self._scheduler.shutdown(wait=False)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to shutdown monitor scheduler cleanly: %s", exc)
            finally:
                self._scheduler = None

        if self._is_running:
            logger.info("Monitor scheduler stopped")
        self._is_running = False

    def run_now(self, *, location_ids: list[str] | None = None) -> dict[str, Any]:
        runtime = self._runtime or self.runtime_factory()
        return runtime.run_cycle(job_scheduler=self._scheduler, location_ids=location_ids or self.location_ids)

    def _run_tick(self) -> None:
        if self._runtime is None:
            return
        try:
            summary = self._runtime.run_cycle(job_scheduler=self._scheduler, location_ids=self.location_ids)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Monitor scan tick failed: %s", exc)
            return

        logger.info(
            "Monitor scan tick completed scanned_at=%s created=%s resend=%s pending=%s scheduled_groups=%s",
            summary.get("scanned_at"),
            summary.get("created_count"),
            summary.get("resend_count"),
            summary.get("pending_count"),
            summary.get("scheduled_groups"),
        )
