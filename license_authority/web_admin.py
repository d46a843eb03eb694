from __future__ import annotations

import logging
import secrets
import sqlite3

import requests
from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from werkzeug.security import check_password_hash, generate_password_hash

from license_authority.db import (
    delete_user,
    get_integration_config,
    get_user_by_username,
    has_admin_user,
    insert_user,
    list_users,
    save_integration_config,
    transaction,
)
from license_authority.errors import Conflict, NotFound, UpstreamError, ValidationError
from license_authority.models import (
    DiscordConfigIn,
    DiscordConfigOut,
    DiscordTestRequest,
    IntegrationConfigRecord,
    SettingOut,
    SettingUpdate,
    UserCreate,
    UserOut,
    UserRecord,
    mask_secret,
)
from license_authority.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])
basic_auth = HTTPBasic()


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, encoded: str) -> bool:
    try:
        return check_password_hash(encoded, password)
    except (TypeError, ValueError):
        logger.warning("Unreadable password hash on stored user")
        return False


def require_admin(
    credentials: HTTPBasicCredentials = Depends(basic_auth),
    services: Services = Depends(get_services),
) -> str:
    settings = services.settings

    if settings.admin_enabled:
        expected_username = settings.admin_username or ""
        expected_password = settings.admin_password or ""
        username_valid = secrets.compare_digest(credentials.username, expected_username)
        password_valid = secrets.compare_digest(credentials.password, expected_password)
        if username_valid and password_valid:
            return credentials.username

    with transaction(settings.db_path) as conn:
        user = get_user_by_username(conn, credentials.username)
        admins_exist = has_admin_user(conn)

    if user is not None and user.is_admin and verify_password(credentials.password, user.password_hash):
        return credentials.username

    if not settings.admin_enabled and not admins_exist:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled. Set ADMIN_USERNAME and ADMIN_PASSWORD.",
        )

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid admin credentials",
        headers={"WWW-Authenticate": "Basic"},
    )


@router.get("/settings", response_model=list[SettingOut])
def list_settings_view(
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[SettingOut]:
    return [SettingOut(key=key, value=value) for key, value in services.registry.all().items()]


@router.get("/settings/{key}", response_model=SettingOut)
def get_setting_view(
    key: str,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> SettingOut:
    value = services.registry.get(key)
    if value is None:
        raise NotFound(f"Setting not found: {key}")
    return SettingOut(key=key, value=value)


@router.post("/settings/{key}", response_model=SettingOut)
def update_setting_view(
    key: str,
    payload: SettingUpdate,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> SettingOut:
    stored = services.registry.set(key, payload.as_text())
    return SettingOut(key=key, value=stored)


@router.get("/discord", response_model=DiscordConfigOut)
def get_discord_view(
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> DiscordConfigOut:
    with transaction(services.settings.db_path) as conn:
        config = get_integration_config(conn)
    return DiscordConfigOut.from_record(config)


@router.post("/discord", response_model=DiscordConfigOut)
@router.put("/discord", response_model=DiscordConfigOut)
def save_discord_view(
    payload: DiscordConfigIn,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> DiscordConfigOut:
    webhook_url = (payload.webhook_url or "").strip() or None
    if webhook_url is not None and not webhook_url.startswith(("https://", "http://")):
        raise ValidationError("webhookUrl must be an http(s) URL")

    with transaction(services.settings.db_path) as conn:
        current = get_integration_config(conn)
        bot_token = (payload.bot_token or "").strip() or None
        # The dashboard echoes back the masked token it was shown.
        if bot_token is not None and bot_token == mask_secret(current.bot_token):
            bot_token = current.bot_token

        saved = save_integration_config(
            conn,
            IntegrationConfigRecord(
                bot_token=bot_token,
                webhook_url=webhook_url,
                server_id=(payload.server_id or "").strip() or None,
                license_role_id=(payload.license_role_id or "").strip() or None,
                admin_role_id=(payload.admin_role_id or "").strip() or None,
                is_enabled=payload.is_enabled,
                updated_at=services.clock.now(),
            ),
        )

    logger.info("Discord integration saved (enabled=%s)", saved.is_enabled)
    return DiscordConfigOut.from_record(saved)


@router.post("/discord/test")
def test_discord_view(
    payload: DiscordTestRequest | None = None,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> dict[str, bool]:
    url = (payload.webhook_url if payload else None) or None
    if url is None:
        with transaction(services.settings.db_path) as conn:
            url = get_integration_config(conn).webhook_url
    if not url:
        raise ValidationError("Webhook URL required")

    try:
        services.webhook.send_test_message(url, services.clock.now())
    except requests.exceptions.RequestException as exc:
        raise UpstreamError(f"Could not send test message to Discord: {exc}") from exc

    return {"ok": True}


@router.get("/users", response_model=list[UserOut])
def list_users_view(
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> list[UserOut]:
    with transaction(services.settings.db_path) as conn:
        users = list_users(conn)
    return [UserOut.from_record(user) for user in users]


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user_view(
    payload: UserCreate,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> UserOut:
    username = payload.username.strip()
    if not username:
        raise ValidationError("username must be non-empty")

    record = UserRecord(
        id=None,
        username=username,
        password_hash=hash_password(payload.password),
        created_at=services.clock.now(),
        email=(payload.email or "").strip() or None,
        discord_id=(payload.discord_id or "").strip() or None,
        discord_username=(payload.discord_username or "").strip() or None,
        is_admin=payload.is_admin,
    )
    try:
        with transaction(services.settings.db_path) as conn:
            created = insert_user(conn, record)
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"Username already exists: {username}", code="DUPLICATE_USER") from exc

    logger.info("User %s created (admin=%s)", created.username, created.is_admin)
    return UserOut.from_record(created)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user_view(
    user_id: int,
    _: str = Depends(require_admin),
    services: Services = Depends(get_services),
) -> Response:
    with transaction(services.settings.db_path) as conn:
        deleted = delete_user(conn, user_id)
    if not deleted:
        raise NotFound(f"User not found: {user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
