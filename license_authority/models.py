from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr
from pydantic.alias_generators import to_camel

from license_authority.clock import to_rfc3339


LicenseStatus = Literal["pending", "active", "expired", "revoked"]
HwidPolicy = Literal["required", "optional", "none"]
LicenseType = Literal["standard", "premium", "annual", "custom"]
DurationType = Literal["days", "months", "years"]

LICENSE_STATUSES: tuple[str, ...] = ("pending", "active", "expired", "revoked")
EXPIRABLE_STATUSES: tuple[str, ...] = ("pending", "active")


@dataclass(frozen=True)
class LicenseRecord:
    id: int | None
    license_key: str
    status: LicenseStatus
    hwid_policy: HwidPolicy
    created_at: datetime
    expires_at: datetime | None
    license_type: LicenseType = "custom"
    hwid: str | None = None
    user_id: int | None = None
    discord_username: str | None = None
    features: dict[str, Any] = field(default_factory=dict)
    activated_at: datetime | None = None
    expiring_notified_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        return (
            self.status in EXPIRABLE_STATUSES
            and self.expires_at is not None
            and now >= self.expires_at
        )

    def observed_status(self, now: datetime) -> LicenseStatus:
        return "expired" if self.is_due(now) else self.status


@dataclass(frozen=True)
class UserRecord:
    id: int | None
    username: str
    password_hash: str
    created_at: datetime
    email: str | None = None
    discord_id: str | None = None
    discord_username: str | None = None
    is_admin: bool = False


@dataclass(frozen=True)
class IntegrationConfigRecord:
    bot_token: str | None = None
    webhook_url: str | None = None
    server_id: str | None = None
    license_role_id: str | None = None
    admin_role_id: str | None = None
    is_enabled: bool = False
    updated_at: datetime | None = None


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LicenseFeatures(ApiModel):
    """Recognized capabilities; unknown keys are carried through untouched."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    script_access: StrictBool = False
    priority_support: StrictBool = False
    beta_features: StrictBool = False

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class GenerateLicenseRequest(ApiModel):
    license_type: LicenseType = "standard"
    duration: StrictInt | None = None
    duration_type: DurationType | None = None
    discord_username: str | None = None
    hwid_lock: HwidPolicy = "required"
    features: LicenseFeatures = Field(default_factory=LicenseFeatures)
    user_id: int | None = None


class UpdateLicenseRequest(ApiModel):
    status: LicenseStatus | None = None
    expires_at: datetime | None = None
    discord_username: str | None = None
    user_id: int | None = None


class LicenseKeyRequest(ApiModel):
    license_key: str = Field(min_length=1)
    hwid: str | None = None


class LicenseOut(ApiModel):
    id: int
    license_key: str
    status: LicenseStatus
    hwid: str | None
    user_id: int | None
    discord_username: str | None
    features: dict[str, Any]
    hwid_policy: HwidPolicy
    license_type: LicenseType
    created_at: str
    activated_at: str | None
    expires_at: str | None

    @classmethod
    def from_record(cls, record: LicenseRecord) -> "LicenseOut":
        return cls(
            id=record.id,
            license_key=record.license_key,
            status=record.status,
            hwid=record.hwid,
            user_id=record.user_id,
            discord_username=record.discord_username,
            features=record.features,
            hwid_policy=record.hwid_policy,
            license_type=record.license_type,
            created_at=to_rfc3339(record.created_at),
            activated_at=to_rfc3339(record.activated_at) if record.activated_at else None,
            expires_at=to_rfc3339(record.expires_at) if record.expires_at else None,
        )


class LicenseEnvelope(ApiModel):
    license: LicenseOut


class VerifyResponse(ApiModel):
    valid: bool
    activated: bool
    status: LicenseStatus | None = None
    expires: str | None = None
    features: dict[str, Any] | None = None
    message: str | None = None


class ActivateResponse(ApiModel):
    success: bool
    license: LicenseOut


class StatsResponse(ApiModel):
    total_count: int = Field(ge=0)
    active_count: int = Field(ge=0)
    pending_count: int = Field(ge=0)
    expired_count: int = Field(ge=0)
    revoked_count: int = Field(ge=0)


class SweepResponse(ApiModel):
    expired: int = Field(ge=0)
    expiring_soon: int = Field(ge=0)


class SettingOut(ApiModel):
    key: str
    value: str


class SettingUpdate(ApiModel):
    value: StrictStr | StrictBool | StrictInt

    def as_text(self) -> str:
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return str(self.value)


class DiscordConfigIn(ApiModel):
    bot_token: str | None = None
    webhook_url: str | None = None
    server_id: str | None = None
    license_role_id: str | None = None
    admin_role_id: str | None = None
    is_enabled: bool = False


class DiscordConfigOut(ApiModel):
    bot_token: str | None
    webhook_url: str | None
    server_id: str | None
    license_role_id: str | None
    admin_role_id: str | None
    is_enabled: bool
    updated_at: str | None

    @classmethod
    def from_record(cls, record: IntegrationConfigRecord) -> "DiscordConfigOut":
        return cls(
            bot_token=mask_secret(record.bot_token),
            webhook_url=record.webhook_url,
            server_id=record.server_id,
            license_role_id=record.license_role_id,
            admin_role_id=record.admin_role_id,
            is_enabled=record.is_enabled,
            updated_at=to_rfc3339(record.updated_at) if record.updated_at else None,
        )


class DiscordTestRequest(ApiModel):
    webhook_url: str | None = None


class UserCreate(ApiModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)
    email: str | None = None
    discord_id: str | None = None
    discord_username: str | None = None
    is_admin: bool = False


class UserOut(ApiModel):
    id: int
    username: str
    email: str | None
    discord_id: str | None
    discord_username: str | None
    is_admin: bool
    created_at: str

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserOut":
        return cls(
            id=record.id,
            username=record.username,
            email=record.email,
            discord_id=record.discord_id,
            discord_username=record.discord_username,
            is_admin=record.is_admin,
            created_at=to_rfc3339(record.created_at),
        )


def mask_secret(value: str | None) -> str | None:
    if not value:
        return value
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]
