"""
License lifecycle events.

The authority publishes an event after each committed transition. The bus
hands events to a single worker thread through a bounded queue so publishing
never blocks a request; when the queue is full the event is dropped.
Sinks are best-effort: one attempt, failures are logged and forgotten.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Literal, Protocol

import requests

from license_authority.clock import to_rfc3339
from license_authority.models import IntegrationConfigRecord

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("license_authority.audit")

EventKind = Literal["issued", "activated", "renewed", "revoked", "expired", "expiringSoon"]

DEFAULT_QUEUE_SIZE = 1000
EMBED_FOOTER = "PrudaTweak License Manager"
EMBED_COLOR = 0x0078D4

_EMBED_STYLES: dict[str, tuple[str, int]] = {
    "issued": ("License Issued", 0x0078D4),
    "activated": ("License Activated", 0x107C10),
    "renewed": ("License Renewed", 0x107C10),
    "revoked": ("License Revoked", 0xD83B01),
    "expired": ("License Expired", 0xD83B01),
    "expiringSoon": ("License Expiring Soon", 0xF8CD46),
}


@dataclass(frozen=True)
class LicenseEvent:
    kind: EventKind
    license_id: int
    key: str
    at: datetime
    discord_username: str | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "licenseId": self.license_id,
            "key": self.key,
            "at": to_rfc3339(self.at),
        }
        if self.discord_username:
            payload["discordUsername"] = self.discord_username
        if self.expires_at is not None:
            payload["expiresAt"] = to_rfc3339(self.expires_at)
        return payload


class EventSink(Protocol):
    def handle(self, event: LicenseEvent) -> None: ...


class EventBus:
    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._queue: queue.Queue[LicenseEvent] = queue.Queue(maxsize=maxsize)
        self._sinks: list[EventSink] = []
        self._stopping = threading.Event()
        self._worker: threading.Thread | None = None
        self._dropped_lock = threading.Lock()
        self._dropped = 0

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)
        logger.debug("Subscribed %s", sink.__class__.__name__)

    def publish(self, event: LicenseEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1
            logger.warning(
                "Event queue full, dropping %s event for license %s",
                event.kind,
                event.license_id,
            )
            return False
        return True

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopping.clear()
        self._worker = threading.Thread(target=self._run, name="license-event-bus", daemon=True)
        self._worker.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def join(self) -> None:
        """Block until every queued event has been handed to the sinks."""
        self._queue.join()

    def _run(self) -> None:
        while not (self._stopping.is_set() and self._queue.empty()):
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._dispatch(event)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: LicenseEvent) -> None:
        for sink in list(self._sinks):
            try:
                sink.handle(event)
            except Exception:
                logger.exception(
                    "Error handling %s event with %s", event.kind, sink.__class__.__name__
                )


class AuditLogSink:
    def handle(self, event: LicenseEvent) -> None:
        audit_logger.info(
            "Audit log: %s - license %s (%s)",
            event.kind,
            event.license_id,
            event.key,
            extra={"event": event.to_dict()},
        )


def build_embed(event: LicenseEvent) -> dict[str, Any]:
    title, color = _EMBED_STYLES.get(event.kind, ("License Event", EMBED_COLOR))
    fields = [
        {"name": "License Key", "value": event.key, "inline": False},
        {"name": "License ID", "value": str(event.license_id), "inline": True},
    ]
    if event.expires_at is not None:
        fields.append({"name": "Expires", "value": to_rfc3339(event.expires_at), "inline": True})
    if event.discord_username:
        fields.append({"name": "User", "value": event.discord_username, "inline": True})

    return {
        "title": title,
        "description": f"License {event.key} {event.kind}.",
        "color": color,
        "fields": fields,
        "footer": {"text": EMBED_FOOTER},
        "timestamp": to_rfc3339(event.at),
    }


def build_test_embed(at: datetime) -> dict[str, Any]:
    return {
        "title": EMBED_FOOTER,
        "description": "This is a test message from the license manager.",
        "color": EMBED_COLOR,
        "footer": {"text": EMBED_FOOTER},
        "timestamp": to_rfc3339(at),
    }


class DiscordWebhookSink:
    """Posts lifecycle events to the configured Discord webhook."""

    def __init__(
        self,
        config_provider: Callable[[], IntegrationConfigRecord],
        timeout_seconds: float = 5.0,
    ) -> None:
        self._config_provider = config_provider
        self.timeout_seconds = timeout_seconds

    def handle(self, event: LicenseEvent) -> None:
        config = self._config_provider()
        if not config.is_enabled or not config.webhook_url:
            logger.debug("Discord integration disabled, skipping %s event", event.kind)
            return

        payload: dict[str, Any] = {"embeds": [build_embed(event)]}
        if event.discord_username:
            payload["content"] = f"@{event.discord_username}"

        try:
            self.post(config.webhook_url, payload)
        except requests.exceptions.RequestException as exc:
            logger.warning("Discord webhook delivery failed for %s event: %s", event.kind, exc)
            return

        logger.info("Discord webhook delivered: %s - license %s", event.kind, event.license_id)

    def post(self, url: str, payload: dict[str, Any]) -> None:
        response = requests.post(
            url,
            json=payload,
            headers={"User-Agent": "License-Authority-Webhook/1.0"},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()

    def send_test_message(self, url: str, at: datetime) -> None:
        self.post(url, {"embeds": [build_test_embed(at)]})
