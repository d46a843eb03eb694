"""
License authority.

Owns the license state machine: issue, activate, verify, renew and revoke,
plus lazy expiry and the periodic sweep. Every mutation holds the per-key
lock and runs inside one sqlite transaction; lifecycle events are published
only after that transaction commits.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from license_authority.clock import Clock, SystemClock, to_rfc3339
from license_authority.db import (
    count_by_status,
    delete_license,
    get_license,
    get_license_by_key,
    get_user,
    insert_license,
    license_key_exists,
    list_due_licenses,
    list_expiring_licenses,
    list_licenses,
    mark_expired,
    transaction,
    update_license,
)
from license_authority.errors import (
    DuplicateKey,
    Gone,
    IllegalTransition,
    NotFound,
    ValidationError,
)
from license_authority.events import EventBus, EventKind, LicenseEvent
from license_authority.hwid import normalize_hwid
from license_authority.keys import canonicalize, has_key_shape
from license_authority.models import (
    LICENSE_STATUSES,
    LicenseFeatures,
    LicenseRecord,
    VerifyResponse,
)
from license_authority.registry import MAX_DURATION_DAYS, SettingsRegistry

logger = logging.getLogger(__name__)

LICENSE_TYPE_DAYS: dict[str, int] = {"standard": 30, "premium": 90, "annual": 365}
# Calendar approximation: a month is 30 days and a year 365.
DURATION_UNIT_DAYS: dict[str, int] = {"days": 1, "months": 30, "years": 365}
HWID_POLICIES = ("required", "optional", "none")

MIN_RENEWAL = timedelta(days=1)
EXPIRING_SOON_WINDOW = timedelta(days=3)
EXPIRING_SOON_RENOTIFY = timedelta(hours=24)


@dataclass(frozen=True)
class SweepResult:
    expired: int
    expiring_soon: int


def resolve_duration_days(
    license_type: str,
    duration: int | None,
    duration_type: str | None,
    default_days: int,
) -> int:
    if license_type not in LICENSE_TYPE_DAYS and license_type != "custom":
        raise ValidationError(f"Unknown license type: {license_type}")

    if duration is not None:
        unit = duration_type or "days"
        if unit not in DURATION_UNIT_DAYS:
            raise ValidationError(f"Unknown duration type: {unit}")
        if duration < 1:
            raise ValidationError("duration must be >= 1")
        days = duration * DURATION_UNIT_DAYS[unit]
    elif license_type == "custom":
        days = default_days
    else:
        days = LICENSE_TYPE_DAYS[license_type]

    if days > MAX_DURATION_DAYS:
        raise ValidationError(f"duration must be at most {MAX_DURATION_DAYS} days")
    return days


def normalize_features(features: LicenseFeatures | Mapping[str, Any] | None) -> dict[str, Any]:
    if features is None:
        return LicenseFeatures().to_storage()
    if isinstance(features, LicenseFeatures):
        return features.to_storage()
    try:
        return LicenseFeatures.model_validate(dict(features)).to_storage()
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid features: {exc.errors()[0]['msg']}") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


class KeyedLocks:
    """One mutex per license key, dropped again once nobody holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LicenseAuthority:
    def __init__(
        self,
        db_path: str,
        registry: SettingsRegistry,
        bus: EventBus,
        clock: Clock | None = None,
    ) -> None:
        self.db_path = db_path
        self.registry = registry
        self.bus = bus
        self.clock = clock or SystemClock()
        self._locks = KeyedLocks()

    def _emit(self, kind: EventKind, record: LicenseRecord, at: datetime) -> None:
        self.bus.publish(
            LicenseEvent(
                kind=kind,
                license_id=record.id,
                key=record.license_key,
                at=at,
                discord_username=record.discord_username,
                expires_at=record.expires_at,
            )
        )

    @staticmethod
    def _observe(record: LicenseRecord, now: datetime) -> LicenseRecord:
        if record.is_due(now):
            return replace(record, status="expired")
        return record

    def _key_for_id(self, license_id: int) -> str:
        with transaction(self.db_path) as conn:
            record = get_license(conn, license_id)
        if record is None:
            raise NotFound()
        return record.license_key

    @staticmethod
    def _canonical_key(raw_key: str) -> str:
        key = canonicalize(raw_key)
        if not has_key_shape(key):
            raise ValidationError("Malformed license key", code="INVALID_KEY")
        return key

    def issue(
        self,
        *,
        license_type: str = "standard",
        duration: int | None = None,
        duration_type: str | None = None,
        hwid_lock: str = "required",
        features: LicenseFeatures | Mapping[str, Any] | None = None,
        discord_username: str | None = None,
        user_id: int | None = None,
    ) -> LicenseRecord:
        if hwid_lock not in HWID_POLICIES:
            raise ValidationError(f"Unknown hwidLock policy: {hwid_lock}")

        policy = self.registry.policy()
        days = resolve_duration_days(
            license_type, duration, duration_type, policy.default_duration_days
        )
        stored_features = normalize_features(features)
        codec = policy.key_codec()
        now = self.clock.now()
        status = "active" if hwid_lock == "none" else "pending"

        with transaction(self.db_path, immediate=True) as conn:
            if user_id is not None and get_user(conn, user_id) is None:
                raise ValidationError(f"User not found: {user_id}")

            key = codec.generate_unique(lambda candidate: license_key_exists(conn, candidate))
            candidate = LicenseRecord(
                id=None,
                license_key=key,
                status=status,
                hwid_policy=hwid_lock,
                license_type=license_type,
                created_at=now,
                activated_at=now if status == "active" else None,
                expires_at=now + timedelta(days=days),
                user_id=user_id,
                discord_username=(discord_username or "").strip() or None,
                features=stored_features,
            )
            try:
                record = insert_license(conn, candidate)
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey(f"License key already exists: {key}") from exc

        logger.info("Issued license %s (%s, %s days)", record.license_key, license_type, days)
        self._emit("issued", record, now)
        return record

    def activate(self, raw_key: str, hwid: str | None) -> LicenseRecord:
        key = self._canonical_key(raw_key)
        presented = normalize_hwid(hwid)
        policy = self.registry.policy()
        now = self.clock.now()
        expired_now = False
        activated = False

        with self._locks.hold(key):
            with transaction(self.db_path, immediate=True) as conn:
                record = get_license_by_key(conn, key)
                if record is None:
                    raise NotFound()

                if record.is_due(now):
                    expired_now = mark_expired(conn, record.id, now)
                    record = replace(record, status="expired")

                if record.status == "active" and record.hwid_policy != "none":
                    policy.hwid_binder().check(record.hwid, presented)
                elif record.status == "pending":
                    if record.hwid_policy != "none" and presented is None:
                        raise ValidationError("hwid is required to activate this license")
                    bound = presented if record.hwid_policy != "none" else None
                    update_license(
                        conn, record.id, status="active", hwid=bound, activated_at=now
                    )
                    record = get_license(conn, record.id)
                    activated = True

        if expired_now:
            self._emit("expired", record, now)
        if record.status in ("expired", "revoked"):
            raise Gone(f"License is {record.status}", code=f"LICENSE_{record.status.upper()}")
        if activated:
            logger.info("Activated license %s", record.license_key)
            self._emit("activated", record, now)
        return record

    def verify(self, raw_key: str, hwid: str | None) -> VerifyResponse:
        key = canonicalize(raw_key)
        if not has_key_shape(key):
            return VerifyResponse(valid=False, activated=False, message="InvalidKey")

        now = self.clock.now()
        with transaction(self.db_path) as conn:
            record = get_license_by_key(conn, key)
        if record is None:
            return VerifyResponse(valid=False, activated=False, message="License not found")

        if record.is_due(now):
            self._persist_expiry(record, now)

        status = record.observed_status(now)
        expires = to_rfc3339(record.expires_at) if record.expires_at else None
        activated = record.activated_at is not None

        if status == "expired":
            return VerifyResponse(
                valid=False, activated=activated, status=status, expires=expires,
                message="License has expired",
            )
        if status == "revoked":
            return VerifyResponse(
                valid=False, activated=activated, status=status, expires=expires,
                message="License has been revoked",
            )

        if record.hwid_policy != "none":
            try:
                presented = normalize_hwid(hwid)
            except ValidationError as exc:
                return VerifyResponse(
                    valid=False, activated=activated, status=status, message=exc.message
                )
            binder = self.registry.policy().hwid_binder()
            if not binder.is_compatible(record.hwid, presented):
                return VerifyResponse(
                    valid=False, activated=activated, status=status, message="HwidMismatch"
                )

        return VerifyResponse(
            valid=True,
            activated=status == "active",
            status=status,
            expires=expires,
            features=record.features,
        )

    def _persist_expiry(self, record: LicenseRecord, now: datetime) -> bool:
        with self._locks.hold(record.license_key):
            with transaction(self.db_path, immediate=True) as conn:
                expired_now = mark_expired(conn, record.id, now)
        if expired_now:
            logger.info("License %s expired", record.license_key)
            self._emit("expired", replace(record, status="expired"), now)
        return expired_now

    @staticmethod
    def _apply_metadata(
        conn: sqlite3.Connection, license_id: int, metadata: Mapping[str, Any]
    ) -> None:
        changes = dict(metadata)
        if changes.get("user_id") is not None and get_user(conn, changes["user_id"]) is None:
            raise ValidationError(f"User not found: {changes['user_id']}")
        if "discord_username" in changes:
            changes["discord_username"] = (changes["discord_username"] or "").strip() or None
        if changes:
            update_license(conn, license_id, **changes)

    def renew(
        self,
        license_id: int,
        *,
        days: int | None = None,
        expires_at: datetime | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> LicenseRecord:
        key = self._key_for_id(license_id)
        now = self.clock.now()
        expired_now = False

        with self._locks.hold(key):
            with transaction(self.db_path, immediate=True) as conn:
                record = get_license(conn, license_id)
                if record is None:
                    raise NotFound()

                if record.status == "pending" and not record.is_due(now):
                    raise IllegalTransition("Cannot renew a pending license")

                base = max(record.expires_at or now, now)
                if expires_at is not None:
                    new_expiry = _as_utc(expires_at)
                    if new_expiry - base < MIN_RENEWAL:
                        raise ValidationError(
                            "expiresAt must extend the license by at least one day"
                        )
                    if new_expiry - now > timedelta(days=MAX_DURATION_DAYS):
                        raise ValidationError(
                            f"expiresAt must be within {MAX_DURATION_DAYS} days"
                        )
                else:
                    renewal_days = days
                    if renewal_days is None:
                        renewal_days = self.registry.policy().default_duration_days
                    if renewal_days < 1:
                        raise ValidationError("Renewal must be at least one day")
                    if renewal_days > MAX_DURATION_DAYS:
                        raise ValidationError(
                            f"Renewal must be at most {MAX_DURATION_DAYS} days"
                        )
                    new_expiry = base + timedelta(days=renewal_days)

                if record.is_due(now):
                    expired_now = mark_expired(conn, record.id, now)

                # A license that never bound its device goes back to waiting for activation.
                bound = record.hwid_policy == "none" or record.hwid is not None
                update_license(
                    conn,
                    record.id,
                    status="active" if bound else "pending",
                    expires_at=new_expiry,
                )
                self._apply_metadata(conn, record.id, metadata or {})
                renewed = get_license(conn, record.id)

        if expired_now:
            self._emit("expired", replace(record, status="expired"), now)
        logger.info("Renewed license %s until %s", renewed.license_key, to_rfc3339(new_expiry))
        self._emit("renewed", renewed, now)
        return renewed

    def revoke(
        self, license_id: int, *, metadata: Mapping[str, Any] | None = None
    ) -> LicenseRecord:
        key = self._key_for_id(license_id)
        now = self.clock.now()
        expired_now = False

        with self._locks.hold(key):
            with transaction(self.db_path, immediate=True) as conn:
                record = get_license(conn, license_id)
                if record is None:
                    raise NotFound()
                if record.status == "revoked":
                    raise IllegalTransition("License is already revoked")

                if record.is_due(now):
                    expired_now = mark_expired(conn, record.id, now)
                update_license(conn, record.id, status="revoked")
                self._apply_metadata(conn, record.id, metadata or {})
                revoked = get_license(conn, record.id)

        if expired_now:
            self._emit("expired", replace(record, status="expired"), now)
        logger.info("Revoked license %s", revoked.license_key)
        self._emit("revoked", revoked, now)
        return revoked

    def update(self, license_id: int, changes: Mapping[str, Any]) -> LicenseRecord:
        """Apply a dashboard patch: status/expiresAt drive transitions, the rest is metadata.

        The transition and the metadata commit together or not at all.
        """
        status = changes.get("status")
        expires_at = changes.get("expires_at")
        metadata = {
            column: changes[column]
            for column in ("discord_username", "user_id")
            if column in changes
        }

        if status is not None and status not in LICENSE_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        if status is None and expires_at is None and not metadata:
            raise ValidationError("Nothing to update")
        if status in ("pending", "expired"):
            raise IllegalTransition(f"Cannot move a license to {status}")
        if status == "revoked" and expires_at is not None:
            raise ValidationError("expiresAt cannot be combined with status 'revoked'")

        if status == "revoked":
            self.revoke(license_id, metadata=metadata)
        elif status == "active" or expires_at is not None:
            self.renew(license_id, expires_at=expires_at, metadata=metadata)
        else:
            key = self._key_for_id(license_id)
            with self._locks.hold(key):
                with transaction(self.db_path, immediate=True) as conn:
                    if get_license(conn, license_id) is None:
                        raise NotFound()
                    self._apply_metadata(conn, license_id, metadata)

        return self.get(license_id)

    def get(self, license_id: int) -> LicenseRecord:
        with transaction(self.db_path) as conn:
            record = get_license(conn, license_id)
        if record is None:
            raise NotFound()
        return self._observe(record, self.clock.now())

    def get_by_key(self, raw_key: str) -> LicenseRecord:
        key = self._canonical_key(raw_key)
        with transaction(self.db_path) as conn:
            record = get_license_by_key(conn, key)
        if record is None:
            raise NotFound()
        return self._observe(record, self.clock.now())

    def list(self, *, status: str | None = None, search: str | None = None) -> list[LicenseRecord]:
        if status is not None and status not in LICENSE_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        now = self.clock.now()
        with transaction(self.db_path) as conn:
            records = list_licenses(conn, now=now, status=status, search=search)
        return [self._observe(record, now) for record in records]

    def stats(self) -> dict[str, int]:
        with transaction(self.db_path) as conn:
            counts = count_by_status(conn, self.clock.now())
        return {"total": sum(counts.values()), **counts}

    def delete(self, license_id: int) -> None:
        key = self._key_for_id(license_id)
        with self._locks.hold(key):
            with transaction(self.db_path) as conn:
                if not delete_license(conn, license_id):
                    raise NotFound()
        logger.info("Deleted license %s", key)

    def sweep(self) -> SweepResult:
        now = self.clock.now()

        with transaction(self.db_path) as conn:
            due = list_due_licenses(conn, now)
        expired = sum(1 for record in due if self._persist_expiry(record, now))

        with transaction(self.db_path) as conn:
            expiring = list_expiring_licenses(
                conn,
                now=now,
                horizon=now + EXPIRING_SOON_WINDOW,
                notified_before=now - EXPIRING_SOON_RENOTIFY,
            )

        notified = 0
        for candidate in expiring:
            with self._locks.hold(candidate.license_key):
                with transaction(self.db_path, immediate=True) as conn:
                    record = get_license(conn, candidate.id)
                    if record is None or record.status not in ("pending", "active"):
                        continue
                    if record.expires_at is None or not (
                        now < record.expires_at <= now + EXPIRING_SOON_WINDOW
                    ):
                        continue
                    last = record.expiring_notified_at
                    if last is not None and now - last < EXPIRING_SOON_RENOTIFY:
                        continue
                    update_license(conn, record.id, expiring_notified_at=now)
            self._emit("expiringSoon", record, now)
            notified += 1

        if expired or notified:
            logger.info("Sweep expired %s license(s), %s expiring soon", expired, notified)
        return SweepResult(expired=expired, expiring_soon=notified)
