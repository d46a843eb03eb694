from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from license_authority.db import list_settings, transaction, upsert_setting
from license_authority.errors import ValidationError
from license_authority.hwid import HwidBinder
from license_authority.keys import (
    DEFAULT_KEY_LENGTH,
    DEFAULT_PREFIX,
    KeyCodec,
    validate_length,
    validate_prefix,
)

logger = logging.getLogger(__name__)

LICENSE_PREFIX = "licensePrefix"
LICENSE_LENGTH = "licenseLength"
DEFAULT_LICENSE_DURATION = "defaultLicenseDuration"
STRICT_HWID_CHECK = "strictHwidCheck"
ALLOW_MULTIPLE_DEVICES = "allowMultipleDevices"

DEFAULT_SETTINGS: dict[str, str] = {
    LICENSE_PREFIX: DEFAULT_PREFIX,
    LICENSE_LENGTH: str(DEFAULT_KEY_LENGTH),
    DEFAULT_LICENSE_DURATION: "30",
    STRICT_HWID_CHECK: "true",
    ALLOW_MULTIPLE_DEVICES: "false",
}

MAX_SETTING_KEY_LENGTH = 64
# A hundred years.
MAX_DURATION_DAYS = 36500


@dataclass(frozen=True)
class LicensePolicy:
    prefix: str
    key_length: int
    default_duration_days: int
    strict_hwid_check: bool
    allow_multiple_devices: bool

    def key_codec(self) -> KeyCodec:
        return KeyCodec(self.prefix, self.key_length)

    def hwid_binder(self) -> HwidBinder:
        return HwidBinder(
            strict=self.strict_hwid_check,
            allow_multiple_devices=self.allow_multiple_devices,
        )


def _parse_int(value: str, name: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _parse_bool(value: str, name: str) -> bool:
    candidate = value.strip().lower()
    if candidate == "true":
        return True
    if candidate == "false":
        return False
    raise ValidationError(f"{name} must be 'true' or 'false'")


def normalize_setting(key: str, value: str) -> str:
    """Validate a recognized setting and return its stored form."""
    if key == LICENSE_PREFIX:
        return validate_prefix(value)
    if key == LICENSE_LENGTH:
        return str(validate_length(_parse_int(value, key)))
    if key == DEFAULT_LICENSE_DURATION:
        days = _parse_int(value, key)
        if days < 1 or days > MAX_DURATION_DAYS:
            raise ValidationError(f"{key} must be between 1 and {MAX_DURATION_DAYS}")
        return str(days)
    if key in (STRICT_HWID_CHECK, ALLOW_MULTIPLE_DEVICES):
        return "true" if _parse_bool(value, key) else "false"
    return value


class SettingsRegistry:
    """Process-wide view of the ``settings`` table.

    Reads go through an in-memory copy loaded on first use; writes hit the
    database first and then drop the copy so the next read reloads it.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._cache: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        with self._lock:
            if self._cache is None:
                with transaction(self.db_path) as conn:
                    stored = list_settings(conn)
                self._cache = {**DEFAULT_SETTINGS, **stored}
            return self._cache

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None

    def all(self) -> dict[str, str]:
        return dict(self._load())

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> str:
        if not key or len(key) > MAX_SETTING_KEY_LENGTH:
            raise ValidationError(f"setting key must be 1-{MAX_SETTING_KEY_LENGTH} characters")

        stored_value = normalize_setting(key, value)
        with self._lock:
            with transaction(self.db_path) as conn:
                upsert_setting(conn, key, stored_value)
            self._cache = None

        logger.info("Setting %s updated", key)
        return stored_value

    def policy(self) -> LicensePolicy:
        values = self._load()
        return LicensePolicy(
            prefix=values[LICENSE_PREFIX],
            key_length=int(values[LICENSE_LENGTH]),
            default_duration_days=int(values[DEFAULT_LICENSE_DURATION]),
            strict_hwid_check=values[STRICT_HWID_CHECK] == "true",
            allow_multiple_devices=values[ALLOW_MULTIPLE_DEVICES] == "true",
        )
