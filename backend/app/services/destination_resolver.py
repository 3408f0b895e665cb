from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Mapping

logger = logging.getLogger("monitor.destinations")

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

Matcher = Callable[[str, Mapping[str, str]], "str | None"]


def normalize_name(value: object) -> str:
    if value is None:
        return ""
    return _NON_ALNUM_RE.sub("", str(value).lower())


def match_exact(name: str, mapping: Mapping[str, str]) -> str | None:
    return mapping.get(name) or None


def match_normalized(name: str, mapping: Mapping[str, str]) -> str | None:
    target = normalize_name(name)
    if not target:
        return None
    for key, handle in mapping.items():
        if normalize_name(key) == target:
            return handle
    return None


def match_substring(name: str, mapping: Mapping[str, str]) -> str | None:
    target = normalize_name(name)
    if not target:
        return None
    for key, handle in mapping.items():
        normalized_key = normalize_name(key)
        if normalized_key and (target in normalized_key or normalized_key in target):
            return handle
    return None


CONFIGURED_MATCHERS: tuple[Matcher, ...] = (match_exact, match_normalized)
DIRECTORY_MATCHERS: tuple[Matcher, ...] = (match_exact, match_normalized, match_substring)


@dataclass
class DestinationResolver:
    """Maps a location id to a transport destination handle.

    Lookups run in a fixed order and the first hit wins: the configured mapping
    (exact, then normalized), the discovered directory (exact, normalized,
    substring), and then the same lookups for each known alias of the location.
    """

    configured: Mapping[str, str] = field(default_factory=dict)
    directory_loader: Callable[[], Mapping[str, str]] = dict
    aliases: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def _lookup(self, name: str, directory: Mapping[str, str]) -> tuple[str, str] | None:
        for matcher in CONFIGURED_MATCHERS:
            handle = matcher(name, self.configured)
            if handle:
                return handle, f"configured:{matcher.__name__}"
        for matcher in DIRECTORY_MATCHERS:
            handle = matcher(name, directory)
            if handle:
                return handle, f"directory:{matcher.__name__}"
        return None

    def resolve_with_strategy(self, location_id: str) -> tuple[str, str] | None:
        try:
            directory = self.directory_loader() or {}
        except Exception as exc:  # noqa: BLE001
            logger.warning("Destination directory unavailable; using configured mapping only: %s", exc)
            directory = {}

        names = [location_id, *[alias for alias in self.aliases.get(location_id, ()) if alias != location_id]]
        for index, name in enumerate(names):
            found = self._lookup(name, directory)
            if found is None:
                continue
            handle, strategy = found
            if index > 0:
                strategy = f"alias:{strategy}"
            return handle, strategy
        return None

    def resolve(self, location_id: str) -> str | None:
        found = self.resolve_with_strategy(location_id)
        if found is None:
            logger.debug("No destination found for location=%s", location_id)
            return None
        handle, strategy = found
        logger.debug("Resolved destination for location=%s strategy=%s", location_id, strategy)
        return handle
