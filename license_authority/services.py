from __future__ import annotations

from dataclasses import dataclass
from functools import partial

from fastapi import Request

from license_authority.authority import LicenseAuthority
from license_authority.clock import Clock, SystemClock
from license_authority.db import get_integration_config, transaction
from license_authority.events import AuditLogSink, DiscordWebhookSink, EventBus
from license_authority.models import IntegrationConfigRecord
from license_authority.registry import SettingsRegistry
from license_authority.settings import Settings
from license_authority.sweep import ExpirySweeper


def load_integration_config(db_path: str) -> IntegrationConfigRecord:
    with transaction(db_path) as conn:
        return get_integration_config(conn)


@dataclass
class Services:
    settings: Settings
    clock: Clock
    registry: SettingsRegistry
    bus: EventBus
    webhook: DiscordWebhookSink
    authority: LicenseAuthority
    sweeper: ExpirySweeper

    def start(self) -> None:
        self.bus.start()
        if self.settings.sweep_enabled:
            self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()
        self.bus.stop()


def build_services(settings: Settings, clock: Clock | None = None) -> Services:
    clock = clock or SystemClock()
    registry = SettingsRegistry(settings.db_path)
    bus = EventBus(maxsize=settings.event_queue_size)
    authority = LicenseAuthority(settings.db_path, registry, bus, clock)

    webhook = DiscordWebhookSink(
        partial(load_integration_config, settings.db_path),
        timeout_seconds=settings.webhook_timeout_seconds,
    )
    bus.subscribe(AuditLogSink())
    bus.subscribe(webhook)

    return Services(
        settings=settings,
        clock=clock,
        registry=registry,
        bus=bus,
        webhook=webhook,
        authority=authority,
        sweeper=ExpirySweeper(authority, settings.sweep_interval_seconds),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
