#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
BACKEND_ROOT = PROJECT_ROOT / "backend"
for candidate in (PROJECT_ROOT, BACKEND_ROOT):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)

from app.services.monitor_config_service import MonitorConfigError, load_monitor_config  # noqa: E402
from app.services.monitor_runtime import build_monitor_runtime  # noqa: E402
from app.services.monitor_scheduler import MonitorScheduler  # noqa: E402

logger = logging.getLogger("monitor.cli")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan cached sensor rows and deliver threshold notifications.")
    parser.add_argument("--config", default=None, help="Override monitor config YAML path")
    parser.add_argument(
        "--location",
        action="append",
        dest="locations",
        default=None,
        help="Scan only this location id (repeatable)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--deliver", action="store_true", help="Run scheduled deliveries before exiting")
    mode.add_argument("--serve", action="store_true", help="Keep scanning on the configured interval")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")
    return parser.parse_args()


def _serve(runtime, location_ids: list[str] | None) -> int:
    monitor_scheduler = MonitorScheduler.from_env(
        enabled=True,
        auto_start=True,
        location_ids=location_ids,
        runtime_factory=lambda: runtime,
        scheduler_factory=lambda: BlockingScheduler(timezone="UTC"),
    )
    try:
        monitor_scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Monitor loop stopped")
    finally:
        monitor_scheduler.shutdown()
    return 0


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = _parse_args()

    try:
        config = load_monitor_config(args.config) if args.config else None
        runtime = build_monitor_runtime(config=config)
    except MonitorConfigError as exc:
        print(f"Monitor config error: {exc}", file=sys.stderr)
        return 2

    unknown = [location_id for location_id in args.locations or [] if runtime.config.get_location(location_id) is None]
    if unknown:
        print(f"Unknown location(s): {', '.join(unknown)}", file=sys.stderr)
        return 2

    if args.serve:
        return _serve(runtime, args.locations)

    scheduler = None
    if args.deliver:
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.start()

    try:
        summary = runtime.run_cycle(job_scheduler=scheduler, location_ids=args.locations)
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    finally:
        if scheduler is not None:
            while scheduler.get_jobs():
                time.sleep(1)
            scheduler.shutdown(wait=True)

    if args.json:
        print(json.dumps(summary, ensure_ascii=False, indent=2))
        return 0

    print("Monitor scan completed.")
    for key in ("locations_scanned", "locations_skipped", "locations_failed", "created_count", "resend_count", "pending_count"):
        print(f"{key:<18}: {summary[key]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
