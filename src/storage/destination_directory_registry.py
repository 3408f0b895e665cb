from __future__ import annotations

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger("monitor.destinations")

DEFAULT_GROUPS_PATH = Path(__file__).resolve().parents[2] / "data" / "groups.json"


def _groups_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser().resolve()
    env_path = str(os.getenv("MONITOR_GROUPS_PATH", str(DEFAULT_GROUPS_PATH)))
    return Path(env_path).expanduser().resolve()


def load_destination_directory(path: str | Path | None = None) -> dict[str, str]:
    """Discovered group name -> destination handle, as written by the transport's group sync."""
    resolved_path = _groups_path(path)
    if not resolved_path.exists():
        return {}

    try:
        with open(resolved_path, encoding="utf-8") as file:
            payload = json.load(file)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load destination directory path=%s: %s", resolved_path, exc)
        return {}

    if not isinstance(payload, dict):
        logger.error("Destination directory path=%s must be a JSON object.", resolved_path)
        return {}

    directory: dict[str, str] = {}
    for name, handle in payload.items():
        normalized_handle = str(handle or "").strip()
        if not normalized_handle:
            continue
        directory[str(name)] = normalized_handle
    return directory
