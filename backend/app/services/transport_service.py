from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Protocol

from app.config import Settings, get_settings

logger = logging.getLogger("monitor.transport")

DRY_RUN_HISTORY_SIZE = 200


class TransportSessionError(RuntimeError):
    pass


@dataclass(frozen=True)
class SendOutcome:
    success: bool
    error: str | None = None
    error_code: str | None = None


class MessageTransport(Protocol):
    def ensure_ready(self) -> bool:
        ...

    def send(self, destination: str, text: str) -> SendOutcome:
        ...


def _sanitize_error(status_code: int | None, error_text: str | None = None) -> str:
    if status_code is not None:
        return f"HTTP {status_code}"
    if error_text:
        return str(error_text).split("\n")[0][:240]
    return "Delivery failed"


@dataclass
class GatewayTransport:
    """Messaging gateway reached over HTTP (`GET /status`, `POST /send`)."""

    base_url: str
    token: str | None = None
    timeout_seconds: int = 10

    def _request(self, path: str, *, payload: dict | None = None) -> urllib.request.Request:
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return urllib.request.Request(
            url=f"{self.base_url.rstrip('/')}{path}",
            data=data,
            headers=headers,
            method="POST" if payload is not None else "GET",
        )

    def ensure_ready(self) -> bool:
        try:
            with urllib.request.urlopen(self._request("/status"), timeout=self.timeout_seconds) as response:  # noqa: S310
                status_code = int(getattr(response, "status", 0) or response.getcode())
                body = response.read()
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            logger.warning("Gateway status check failed: %s", _sanitize_error(None, str(exc)))
            return False

        if not 200 <= status_code < 300:
            return False
        try:
            payload = json.loads(body or b"{}")
        except ValueError:
            return False
        return isinstance(payload, dict) and bool(payload.get("connected", False))

    def send(self, destination: str, text: str) -> SendOutcome:
        request = self._request("/send", payload={"to": destination, "text": text})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:  # noqa: S310
                status_code = int(getattr(response, "status", 0) or response.getcode())
        except urllib.error.HTTPError as exc:
            status_code = int(getattr(exc, "code", 0) or 0) or None
            return SendOutcome(success=False, error=_sanitize_error(status_code, str(exc)), error_code="HTTP_ERROR")
        except urllib.error.URLError as exc:
            return SendOutcome(
                success=False,
                error=_sanitize_error(None, str(getattr(exc, "reason", "network_error"))),
                error_code="NETWORK_ERROR",
            )
        except TimeoutError:
            return SendOutcome(success=False, error="Network timeout", error_code="TIMEOUT")

        if 200 <= status_code < 300:
            return SendOutcome(success=True)
        return SendOutcome(success=False, error=_sanitize_error(status_code), error_code="HTTP_ERROR")


@dataclass
class LoggingTransport:
    """Dry-run transport: logs every message and reports success.

    Only the most recent messages are kept in `sent`.
    """

    sent: deque[tuple[str, str]] = field(default_factory=lambda: deque(maxlen=DRY_RUN_HISTORY_SIZE))

    def ensure_ready(self) -> bool:
        return True

    def send(self, destination: str, text: str) -> SendOutcome:
        self.sent.append((destination, text))
        logger.info("Dry-run send destination=%s text=%s", destination, text.replace("\n", " ")[:240])
        return SendOutcome(success=True)


def compute_backoff_seconds(base_seconds: int, attempt: int, cap_seconds: int) -> int:
    normalized_base = max(1, int(base_seconds))
    normalized_attempt = max(1, int(attempt))
    return min(normalized_base * (2 ** (normalized_attempt - 1)), max(1, int(cap_seconds)))


@dataclass
class SessionGate:
    transport: MessageTransport
    max_attempts: int = 5
    backoff_seconds: int = 2
    backoff_cap_seconds: int = 60
    sleep: Callable[[float], None] = time.sleep

    def wait_until_ready(self) -> None:
        attempts = max(1, int(self.max_attempts))
        for attempt in range(1, attempts + 1):
            try:
                if self.transport.ensure_ready():
                    return
            except Exception as exc:  # noqa: BLE001
                logger.warning("Transport session check raised attempt=%s: %s", attempt, exc)
            if attempt < attempts:
                delay = compute_backoff_seconds(self.backoff_seconds, attempt, self.backoff_cap_seconds)
                logger.info("Transport session not ready attempt=%s/%s retry_in_seconds=%s", attempt, attempts, delay)
                self.sleep(delay)
        raise TransportSessionError(f"Transport session not ready after {attempts} attempts.")


def build_transport(settings: Settings | None = None) -> MessageTransport:
    resolved = settings or get_settings()
    if not resolved.monitor_gateway_url:
        logger.warning("MONITOR_GATEWAY_URL is not set; notifications are logged instead of sent.")
        return LoggingTransport()
    return GatewayTransport(
        base_url=resolved.monitor_gateway_url,
        token=resolved.monitor_gateway_token,
        timeout_seconds=max(1, int(resolved.monitor_gateway_timeout_seconds)),
    )
