from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import timedelta
from typing import Any

import pytest
import requests
from conftest import ADMIN_AUTH, START, RecordingSink
from fastapi import FastAPI
from fastapi.testclient import TestClient

from license_authority.clock import ManualClock, to_rfc3339
from license_authority.db import get_license, insert_user, transaction
from license_authority.main import create_app
from license_authority.models import UserRecord
from license_authority.settings import get_settings

HWID = "A3-7F-10-22"
WEBHOOK_URL = "https://discord.example/api/webhooks/1/abc"


def _generate(client: TestClient, **body: Any) -> dict[str, Any]:
    payload = {"licenseType": "standard", "hwidLock": "required", **body}
    response = client.post("/licenses/generate", json=payload, auth=ADMIN_AUTH)
    assert response.status_code == 201, response.text
    return response.json()["license"]


def test_health_reports_server_time(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "serverTime": "2026-01-01T12:00:00Z"}


def test_issue_verify_and_activate(client: TestClient) -> None:
    license_ = _generate(
        client,
        features={"scriptAccess": True, "prioritySupport": False, "betaFeatures": False},
    )
    key = license_["licenseKey"]

    assert re.fullmatch(r"PRUDA(-[A-Z0-9]{4}){4}", key)
    assert license_["status"] == "pending"
    assert license_["hwid"] is None

    verify = client.post("/licenses/verify", json={"licenseKey": key, "hwid": HWID})
    assert verify.status_code == 200
    assert verify.json() == {
        "valid": True,
        "activated": False,
        "status": "pending",
        "expires": "2026-01-31T12:00:00Z",
        "features": {"scriptAccess": True, "prioritySupport": False, "betaFeatures": False},
    }

    activate = client.post("/licenses/activate", json={"licenseKey": key, "hwid": HWID})
    assert activate.status_code == 200
    assert activate.json()["success"] is True
    assert activate.json()["license"]["hwid"] == HWID

    again = client.post("/licenses/activate", json={"licenseKey": key, "hwid": HWID})
    assert again.status_code == 200
    assert again.json()["success"] is True

    verify = client.post("/licenses/verify", json={"licenseKey": key, "hwid": HWID})
    body = verify.json()
    assert body["valid"] is True
    assert body["activated"] is True
    assert body["status"] == "active"
    assert body["expires"] == to_rfc3339(START + timedelta(days=30))


def test_hwid_mismatch_does_not_rebind(client: TestClient, db_path: str) -> None:
    license_ = _generate(client)
    key = license_["licenseKey"]
    client.post("/licenses/activate", json={"licenseKey": key, "hwid": HWID})

    verify = client.post("/licenses/verify", json={"licenseKey": key, "hwid": "FF-FF-FF-FF"})
    activate = client.post("/licenses/activate", json={"licenseKey": key, "hwid": "FF-FF-FF-FF"})

    assert verify.status_code == 200
    assert verify.json()["valid"] is False
    assert verify.json()["message"] == "HwidMismatch"
    assert activate.status_code == 409
    assert activate.json() == {"message": "HwidMismatch", "code": "HWID_MISMATCH"}

    with transaction(db_path) as conn:
        assert get_license(conn, license_["id"]).hwid == HWID


def test_lazy_expiry_in_stats_and_verify(client: TestClient, clock: ManualClock) -> None:
    license_ = _generate(client, licenseType="custom", duration=1, durationType="days")
    clock.advance(hours=25)

    stats = client.get("/licenses/stats", auth=ADMIN_AUTH)
    assert stats.status_code == 200
    assert stats.json() == {
        "totalCount": 1,
        "activeCount": 0,
        "pendingCount": 0,
        "expiredCount": 1,
        "revokedCount": 0,
    }

    verify = client.post(
        "/licenses/verify", json={"licenseKey": license_["licenseKey"], "hwid": HWID}
    )
    assert verify.json()["valid"] is False
    assert verify.json()["status"] == "expired"

    listed = client.get("/licenses", params={"status": "expired"}, auth=ADMIN_AUTH)
    assert [item["id"] for item in listed.json()] == [license_["id"]]
    assert listed.json()[0]["status"] == "expired"


def test_renew_expired_license_via_update(
    app: FastAPI, client: TestClient, clock: ManualClock, recorder: RecordingSink
) -> None:
    license_ = _generate(client, duration=1)
    client.post("/licenses/activate", json={"licenseKey": license_["licenseKey"], "hwid": HWID})
    clock.advance(days=2)
    target = to_rfc3339(clock.now() + timedelta(days=30))

    response = client.put(
        f"/licenses/{license_['id']}",
        json={"status": "active", "expiresAt": target},
        auth=ADMIN_AUTH,
    )

    assert response.status_code == 200, response.text
    assert response.json()["license"]["status"] == "active"
    assert response.json()["license"]["expiresAt"] == target

    app.state.services.bus.join()
    assert recorder.kinds(license_["id"]).count("renewed") == 1


def test_revoke_then_activate_is_gone_until_renewed(client: TestClient) -> None:
    license_ = _generate(client)
    key = license_["licenseKey"]
    client.post("/licenses/activate", json={"licenseKey": key, "hwid": HWID})

    revoke = client.put(f"/licenses/{license_['id']}", json={"status": "revoked"}, auth=ADMIN_AUTH)
    assert revoke.status_code == 200
    assert revoke.json()["license"]["status"] == "revoked"

    activate = client.post("/licenses/activate", json={"licenseKey": key, "hwid": HWID})
    assert activate.status_code == 410
    assert activate.json()["code"] == "LICENSE_REVOKED"

    again = client.put(f"/licenses/{license_['id']}", json={"status": "revoked"}, auth=ADMIN_AUTH)
    assert again.status_code == 409

    renew = client.put(f"/licenses/{license_['id']}", json={"status": "active"}, auth=ADMIN_AUTH)
    assert renew.status_code == 200
    assert renew.json()["license"]["status"] == "active"


def test_illegal_transition_is_conflict(client: TestClient) -> None:
    license_ = _generate(client, hwidLock="none")

    response = client.put(f"/licenses/{license_['id']}", json={"status": "pending"}, auth=ADMIN_AUTH)

    assert response.status_code == 409
    assert response.json()["code"] == "ILLEGAL_TRANSITION"


def test_get_and_delete_license(client: TestClient) -> None:
    license_ = _generate(client, discordUsername="player#1")

    fetched = client.get(f"/licenses/{license_['id']}", auth=ADMIN_AUTH)
    assert fetched.status_code == 200
    assert fetched.json()["license"]["discordUsername"] == "player#1"

    deleted = client.delete(f"/licenses/{license_['id']}", auth=ADMIN_AUTH)
    assert deleted.status_code == 204

    missing = client.get(f"/licenses/{license_['id']}", auth=ADMIN_AUTH)
    assert missing.status_code == 404
    assert missing.json() == {"message": "License not found", "code": "NOT_FOUND"}


def test_sweep_endpoint(client: TestClient, clock: ManualClock) -> None:
    _generate(client, duration=1)
    _generate(client, duration=2, hwidLock="none")
    clock.advance(hours=25)

    response = client.post("/licenses/sweep", auth=ADMIN_AUTH)

    assert response.status_code == 200
    assert response.json() == {"expired": 1, "expiringSoon": 1}


@pytest.mark.parametrize(
    "body",
    [
        {"licenseType": "lifetime"},
        {"licenseType": "custom", "duration": 0},
        {"licenseType": "custom", "duration": "ten"},
        {"licenseType": "custom", "duration": 100000, "durationType": "years", "hwidLock": "none"},
        {"hwidLock": "sometimes"},
        {"features": {"scriptAccess": "yes"}},
    ],
)
def test_generate_rejects_invalid_input(client: TestClient, body: dict[str, Any]) -> None:
    response = client.post("/licenses/generate", json=body, auth=ADMIN_AUTH)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_verify_unknown_key_is_not_an_error(client: TestClient) -> None:
    response = client.post(
        "/licenses/verify", json={"licenseKey": "PRUDA-AAAA-BBBB-CCCC-DDDD", "hwid": HWID}
    )

    assert response.status_code == 200
    assert response.json() == {
        "valid": False,
        "activated": False,
        "message": "License not found",
    }


def test_admin_routes_require_credentials(client: TestClient) -> None:
    assert client.get("/licenses").status_code == 401
    wrong = client.get("/licenses", auth=("admin", "wrong"))
    assert wrong.status_code == 401
    assert wrong.json() == {"message": "Invalid admin credentials", "code": "UNAUTHORIZED"}
    assert wrong.headers["www-authenticate"] == "Basic"
    assert client.get("/settings", auth=ADMIN_AUTH).status_code == 200


@pytest.fixture()
def open_client(
    db_path: str, clock: ManualClock, monkeypatch: pytest.MonkeyPatch
) -> Iterator[TestClient]:
    monkeypatch.delenv("ADMIN_USERNAME")
    monkeypatch.delenv("ADMIN_PASSWORD")
    with TestClient(create_app(get_settings(), clock=clock)) as test_client:
        yield test_client


def test_admin_api_disabled_without_credentials(open_client: TestClient) -> None:
    response = open_client.get("/licenses", auth=ADMIN_AUTH)

    assert response.status_code == 503
    assert response.json()["code"] == "ADMIN_DISABLED"
    assert open_client.post("/licenses/verify", json={"licenseKey": "x"}).status_code == 200


def test_settings_round_trip(client: TestClient) -> None:
    listed = client.get("/settings", auth=ADMIN_AUTH)
    assert {"key": "licensePrefix", "value": "PRUDA"} in listed.json()

    updated = client.post("/settings/licensePrefix", json={"value": "acme"}, auth=ADMIN_AUTH)
    assert updated.json() == {"key": "licensePrefix", "value": "ACME"}

    strict = client.post("/settings/strictHwidCheck", json={"value": False}, auth=ADMIN_AUTH)
    assert strict.json() == {"key": "strictHwidCheck", "value": "false"}

    length = client.post("/settings/licenseLength", json={"value": 20}, auth=ADMIN_AUTH)
    assert length.json()["value"] == "20"

    license_ = _generate(client)
    assert re.fullmatch(r"ACME(-[A-Z0-9]{4}){5}", license_["licenseKey"])

    fetched = client.get("/settings/licensePrefix", auth=ADMIN_AUTH)
    assert fetched.json()["value"] == "ACME"


def test_settings_validation(client: TestClient) -> None:
    invalid = client.post("/settings/licenseLength", json={"value": 17}, auth=ADMIN_AUTH)
    missing = client.get("/settings/notASetting", auth=ADMIN_AUTH)

    assert invalid.status_code == 400
    assert missing.status_code == 404


def test_discord_config_masks_bot_token(client: TestClient) -> None:
    saved = client.post(
        "/discord",
        json={
            "botToken": "bot-token-1234",
            "webhookUrl": WEBHOOK_URL,
            "serverId": "42",
            "isEnabled": True,
        },
        auth=ADMIN_AUTH,
    )
    assert saved.status_code == 200
    assert saved.json()["botToken"] == "**********1234"
    assert saved.json()["webhookUrl"] == WEBHOOK_URL
    assert saved.json()["isEnabled"] is True

    echoed = client.put(
        "/discord",
        json={
            "botToken": saved.json()["botToken"],
            "webhookUrl": WEBHOOK_URL,
            "isEnabled": False,
        },
        auth=ADMIN_AUTH,
    )
    assert echoed.json()["botToken"] == "**********1234"
    assert echoed.json()["serverId"] is None

    fetched = client.get("/discord", auth=ADMIN_AUTH)
    assert fetched.json()["isEnabled"] is False

    invalid = client.post("/discord", json={"webhookUrl": "ftp://nope"}, auth=ADMIN_AUTH)
    assert invalid.status_code == 400


def test_discord_test_message(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    class FakeResponse:
        def raise_for_status(self) -> None:
            return None

    def fake_post(url: str, **kwargs: Any) -> FakeResponse:
        calls.append({"url": url, **kwargs})
        return FakeResponse()

    no_url = client.post("/discord/test", auth=ADMIN_AUTH)
    assert no_url.status_code == 400

    monkeypatch.setattr(requests, "post", fake_post)
    client.post("/discord", json={"webhookUrl": WEBHOOK_URL}, auth=ADMIN_AUTH)

    response = client.post("/discord/test", auth=ADMIN_AUTH)

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert calls[0]["url"] == WEBHOOK_URL
    embed = calls[0]["json"]["embeds"][0]
    assert embed["description"] == "This is a test message from the license manager."


def test_discord_test_message_upstream_failure(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    def failing_post(url: str, **kwargs: Any) -> None:
        raise requests.exceptions.ConnectionError("unreachable")

    monkeypatch.setattr(requests, "post", failing_post)

    response = client.post("/discord/test", json={"webhookUrl": WEBHOOK_URL}, auth=ADMIN_AUTH)

    assert response.status_code == 502
    assert response.json()["code"] == "UPSTREAM_ERROR"


def test_users_and_stored_admin_credentials(client: TestClient) -> None:
    created = client.post(
        "/users",
        json={"username": "ops", "password": "hunter22", "isAdmin": True, "email": "ops@example.com"},
        auth=ADMIN_AUTH,
    )
    assert created.status_code == 201
    user = created.json()
    assert user["username"] == "ops"
    assert "password" not in user
    assert "passwordHash" not in user

    duplicate = client.post("/users", json={"username": "ops", "password": "x"}, auth=ADMIN_AUTH)
    assert duplicate.status_code == 409

    assert client.get("/users", auth=("ops", "hunter22")).status_code == 200
    assert client.get("/users", auth=("ops", "wrong")).status_code == 401

    license_ = _generate(client, userId=user["id"])
    assert license_["userId"] == user["id"]

    deleted = client.delete(f"/users/{user['id']}", auth=ADMIN_AUTH)
    assert deleted.status_code == 204
    assert client.delete(f"/users/{user['id']}", auth=ADMIN_AUTH).status_code == 404

    orphaned = client.get(f"/licenses/{license_['id']}", auth=ADMIN_AUTH)
    assert orphaned.json()["license"]["userId"] is None


def test_unreadable_stored_password_hash_is_rejected(client: TestClient, db_path: str) -> None:
    with transaction(db_path) as conn:
        insert_user(
            conn,
            UserRecord(
                id=None,
                username="legacy",
                password_hash="pbkdf2:sha256:notanumber$salt$abcdef",
                created_at=START,
                is_admin=True,
            ),
        )

    response = client.get("/users", auth=("legacy", "whatever"))

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"
