from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from license_authority.authority import LicenseAuthority
from license_authority.clock import ManualClock
from license_authority.db import init_db
from license_authority.events import EventBus, LicenseEvent
from license_authority.main import create_app
from license_authority.registry import SettingsRegistry
from license_authority.settings import get_settings

ADMIN_AUTH = ("admin", "secret-pass")
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[LicenseEvent] = []

    def handle(self, event: LicenseEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self, license_id: int | None = None) -> list[str]:
        with self._lock:
            return [
                event.kind
                for event in self.events
                if license_id is None or event.license_id == license_id
            ]


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    path = tmp_path / "licenses.db"
    monkeypatch.setenv("DB_PATH", str(path))
    monkeypatch.setenv("ADMIN_USERNAME", ADMIN_AUTH[0])
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_AUTH[1])
    monkeypatch.setenv("SWEEP_ENABLED", "false")
    init_db(str(path))
    return str(path)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture()
def recorder() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def registry(db_path: str) -> SettingsRegistry:
    return SettingsRegistry(db_path)


@pytest.fixture()
def authority(
    db_path: str,
    registry: SettingsRegistry,
    clock: ManualClock,
    recorder: RecordingSink,
) -> Iterator[LicenseAuthority]:
    bus = EventBus()
    bus.subscribe(recorder)
    bus.start()
    try:
        yield LicenseAuthority(db_path, registry, bus, clock)
    finally:
        bus.stop()


@pytest.fixture()
def app(db_path: str, clock: ManualClock, recorder: RecordingSink) -> FastAPI:
    app = create_app(get_settings(), clock=clock)
    app.state.services.bus.subscribe(recorder)
    return app


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
