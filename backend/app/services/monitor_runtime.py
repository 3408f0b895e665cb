from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Sequence

from app.config import Settings, get_settings
from app.services.delivery_service import DeliveryWorker, schedule_deliveries
from app.services.destination_resolver import DestinationResolver
from app.services.monitor_config_service import MonitorConfig, MonitoredLocation, load_monitor_config
from app.services.monitor_scan_service import run_scan_cycle
from app.services.transport_service import MessageTransport, SessionGate, build_transport

PROJECT_ROOT = Path(__file__).resolve().parents[3]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.storage.destination_directory_registry import load_destination_directory  # noqa: E402
from src.storage.notification_ledger_registry import (  # noqa: E402
    LedgerUnavailableError,
    NotificationEntry,
    NotificationLedger,
    build_ledger_store,
    count_pending_by_severity,
)
from src.storage.row_cache_registry import fetch_latest_rows  # noqa: E402

logger = logging.getLogger("monitor.runtime")


@dataclass
class MonitorRuntime:
    config: MonitorConfig
    settings: Settings
    store: NotificationLedger
    resolver: DestinationResolver
    transport: MessageTransport
    worker: DeliveryWorker

    def fetch_rows(self, location: MonitoredLocation) -> list[dict[str, Any]] | None:
        return fetch_latest_rows(
            location.location_id,
            cache_folder=location.cache_folder,
            base_path=self.settings.resolve_path(self.settings.monitor_cache_base_path),
            timezone_name=self.config.timezone,
        )

    def destination_key(self, location_id: str) -> str | None:
        return self.resolver.resolve(location_id)

    def schedule(self, entries: list[NotificationEntry], job_scheduler: Any) -> list[Any]:
        return schedule_deliveries(
            entries,
            job_scheduler=job_scheduler,
            worker=self.worker,
            destination_key=self.destination_key,
            max_random_offset_seconds=self.config.send.random_offset_seconds_max,
        )

    def run_cycle(
        self,
        *,
        job_scheduler: Any | None = None,
        location_ids: Sequence[str] | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        dispatch = None
        if job_scheduler is not None:
            dispatch = lambda entries: self.schedule(entries, job_scheduler)  # noqa: E731
        return run_scan_cycle(
            config=self.config,
            store=self.store,
            row_source=self.fetch_rows,
            dispatch=dispatch,
            location_ids=location_ids,
            now=now,
        )

    def health_snapshot(self) -> dict[str, Any]:
        try:
            entries = self.store.load()
        except LedgerUnavailableError as exc:
            logger.warning("Health check could not read the ledger: %s", exc)
            return {"status": "degraded", "warnings": 0, "dangers": 0, "pending_total": 0, "ledger_total": 0}
        pending = count_pending_by_severity(entries)
        return {
            "status": "ok",
            "warnings": pending["warning"],
            "dangers": pending["danger"],
            "pending_total": sum(pending.values()),
            "ledger_total": len(entries),
        }


def build_monitor_runtime(
    *,
    settings: Settings | None = None,
    config: MonitorConfig | None = None,
    transport: MessageTransport | None = None,
    store: NotificationLedger | None = None,
) -> MonitorRuntime:
    resolved_settings = settings or get_settings()
    resolved_config = config or load_monitor_config(resolved_settings.resolve_path(resolved_settings.monitor_config_path))
    resolved_store = store or build_ledger_store(
        path=resolved_settings.resolve_path(resolved_settings.monitor_ledger_path),
        database_url=resolved_settings.monitor_ledger_database_url,
    )
    resolved_transport = transport or build_transport(resolved_settings)

    groups_path = resolved_settings.resolve_path(resolved_settings.monitor_groups_path)
    resolver = DestinationResolver(
        configured=resolved_config.groups,
        directory_loader=lambda: load_destination_directory(groups_path),
        aliases={location.location_id: location.aliases for location in resolved_config.locations},
    )

    send = resolved_config.send
    worker = DeliveryWorker(
        store=resolved_store,
        transport=resolved_transport,
        resolver=resolver,
        retry_attempts=send.retry_attempts,
        retry_interval_seconds=send.retry_interval_seconds,
        session_gate=SessionGate(
            transport=resolved_transport,
            max_attempts=send.session_max_attempts,
            backoff_seconds=send.session_backoff_seconds,
            backoff_cap_seconds=send.session_backoff_cap_seconds,
        ),
    )
    logger.info(
        "Monitor runtime ready locations=%s thresholds=%s transport=%s",
        len(resolved_config.locations),
        len(resolved_config.thresholds),
        type(resolved_transport).__name__,
    )
    return MonitorRuntime(
        config=resolved_config,
        settings=resolved_settings,
        store=resolved_store,
        resolver=resolver,
        transport=resolved_transport,
        worker=worker,
    )
