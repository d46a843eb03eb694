from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from license_authority.clock import parse_rfc3339, to_rfc3339
from license_authority.models import (
    LICENSE_STATUSES,
    IntegrationConfigRecord,
    LicenseRecord,
    UserRecord,
)

BUSY_TIMEOUT_SECONDS = 30.0

LICENSE_COLUMNS = (
    "id, license_key, status, hwid, user_id, discord_username, features, hwid_policy, "
    "license_type, created_at, activated_at, expires_at, expiring_notified_at"
)

# Status as a reader observes it: due pending/active rows read as expired.
OBSERVED_STATUS_SQL = (
    "CASE WHEN status IN ('pending', 'active') AND expires_at IS NOT NULL "
    "AND expires_at <= :now THEN 'expired' ELSE status END"
)

_UPDATABLE_LICENSE_COLUMNS = frozenset(
    {
        "status",
        "hwid",
        "user_id",
        "discord_username",
        "activated_at",
        "expires_at",
        "expiring_notified_at",
    }
)


def connect(db_path: str) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a connection whose work commits on success and rolls back on error."""
    with closing(connect(db_path)) as conn:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()


def init_db(db_path: str) -> None:
    statuses = ", ".join(f"'{status}'" for status in LICENSE_STATUSES)
    with transaction(db_path) as conn:
        conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                email TEXT NULL,
                discord_id TEXT NULL,
                discord_username TEXT NULL,
                is_admin INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS licenses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                license_key TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL CHECK(status IN ({statuses})),
                hwid TEXT NULL,
                user_id INTEGER NULL REFERENCES users(id) ON DELETE SET NULL,
                discord_username TEXT NULL,
                features TEXT NOT NULL DEFAULT '{{}}',
                hwid_policy TEXT NOT NULL CHECK(hwid_policy IN ('required', 'optional', 'none')),
                license_type TEXT NOT NULL DEFAULT 'custom',
                created_at TEXT NOT NULL,
                activated_at TEXT NULL,
                expires_at TEXT NULL,
                expiring_notified_at TEXT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_licenses_status_expires
                ON licenses (status, expires_at);

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS integration_config (
                id INTEGER PRIMARY KEY CHECK(id = 1),
                bot_token TEXT NULL,
                webhook_url TEXT NULL,
                server_id TEXT NULL,
                license_role_id TEXT NULL,
                admin_role_id TEXT NULL,
                is_enabled INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NULL
            );
            """
        )


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_rfc3339(value)
    return value


def _parse_optional(value: str | None) -> datetime | None:
    return parse_rfc3339(value) if value else None


def _row_to_license(row: sqlite3.Row) -> LicenseRecord:
    return LicenseRecord(
        id=int(row["id"]),
        license_key=row["license_key"],
        status=row["status"],
        hwid=row["hwid"],
        user_id=row["user_id"],
        discord_username=row["discord_username"],
        features=json.loads(row["features"] or "{}"),
        hwid_policy=row["hwid_policy"],
        license_type=row["license_type"],
        created_at=parse_rfc3339(row["created_at"]),
        activated_at=_parse_optional(row["activated_at"]),
        expires_at=_parse_optional(row["expires_at"]),
        expiring_notified_at=_parse_optional(row["expiring_notified_at"]),
    )


def insert_license(conn: sqlite3.Connection, record: LicenseRecord) -> LicenseRecord:
    cursor = conn.execute(
        """
        INSERT INTO licenses (
            license_key, status, hwid, user_id, discord_username, features,
            hwid_policy, license_type, created_at, activated_at, expires_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.license_key,
            record.status,
            record.hwid,
            record.user_id,
            record.discord_username,
            json.dumps(record.features, separators=(",", ":")),
            record.hwid_policy,
            record.license_type,
            to_rfc3339(record.created_at),
            _to_column(record.activated_at),
            _to_column(record.expires_at),
        ),
    )
    return get_license(conn, int(cursor.lastrowid))


def license_key_exists(conn: sqlite3.Connection, key: str) -> bool:
    row = conn.execute("SELECT 1 FROM licenses WHERE license_key = ?", (key,)).fetchone()
    return row is not None


def get_license(conn: sqlite3.Connection, license_id: int) -> LicenseRecord | None:
    row = conn.execute(
        f"SELECT {LICENSE_COLUMNS} FROM licenses WHERE id = ?",
        (license_id,),
    ).fetchone()
    return _row_to_license(row) if row is not None else None


def get_license_by_key(conn: sqlite3.Connection, key: str) -> LicenseRecord | None:
    row = conn.execute(
        f"SELECT {LICENSE_COLUMNS} FROM licenses WHERE license_key = ?",
        (key,),
    ).fetchone()
    return _row_to_license(row) if row is not None else None


def list_licenses(
    conn: sqlite3.Connection,
    *,
    now: datetime,
    status: str | None = None,
    search: str | None = None,
) -> list[LicenseRecord]:
    clauses: list[str] = []
    params: dict[str, Any] = {"now": to_rfc3339(now)}

    if status is not None:
        clauses.append(f"({OBSERVED_STATUS_SQL}) = :status")
        params["status"] = status

    if search:
        clauses.append("instr(license_key, :search) > 0")
        params["search"] = search.strip().upper()

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"""
        SELECT {LICENSE_COLUMNS}
        FROM licenses
        {where}
        ORDER BY created_at DESC, id DESC
        """,
        params,
    ).fetchall()

    return [_row_to_license(row) for row in rows]


def update_license(conn: sqlite3.Connection, license_id: int, **changes: Any) -> bool:
    unknown = set(changes) - _UPDATABLE_LICENSE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update license columns: {', '.join(sorted(unknown))}")
    if not changes:
        return False

    assignments = ", ".join(f"{column} = ?" for column in changes)
    values = [_to_column(value) for value in changes.values()]
    cursor = conn.execute(
        f"UPDATE licenses SET {assignments} WHERE id = ?",
        (*values, license_id),
    )
    return cursor.rowcount > 0


def mark_expired(conn: sqlite3.Connection, license_id: int, now: datetime) -> bool:
    """Persist expiry only if the row is still due; True when this call did it."""
    cursor = conn.execute(
        """
        UPDATE licenses
        SET status = 'expired'
        WHERE id = ?
          AND status IN ('pending', 'active')
          AND expires_at IS NOT NULL
          AND expires_at <= ?
        """,
        (license_id, to_rfc3339(now)),
    )
    return cursor.rowcount > 0


def list_due_licenses(conn: sqlite3.Connection, now: datetime) -> list[LicenseRecord]:
    rows = conn.execute(
        f"""
        SELECT {LICENSE_COLUMNS}
        FROM licenses
        WHERE status IN ('pending', 'active')
          AND expires_at IS NOT NULL
          AND expires_at <= ?
        ORDER BY expires_at ASC, id ASC
        """,
        (to_rfc3339(now),),
    ).fetchall()
    return [_row_to_license(row) for row in rows]


def list_expiring_licenses(
    conn: sqlite3.Connection,
    *,
    now: datetime,
    horizon: datetime,
    notified_before: datetime,
) -> list[LicenseRecord]:
    rows = conn.execute(
        f"""
        SELECT {LICENSE_COLUMNS}
        FROM licenses
        WHERE status IN ('pending', 'active')
          AND expires_at > ?
          AND expires_at <= ?
          AND (expiring_notified_at IS NULL OR expiring_notified_at <= ?)
        ORDER BY expires_at ASC, id ASC
        """,
        (to_rfc3339(now), to_rfc3339(horizon), to_rfc3339(notified_before)),
    ).fetchall()
    return [_row_to_license(row) for row in rows]


def count_by_status(conn: sqlite3.Connection, now: datetime) -> dict[str, int]:
    rows = conn.execute(
        f"""
        SELECT {OBSERVED_STATUS_SQL} AS observed, COUNT(*) AS total
        FROM licenses
        GROUP BY observed
        """,
        {"now": to_rfc3339(now)},
    ).fetchall()

    counts = {status: 0 for status in LICENSE_STATUSES}
    for row in rows:
        counts[row["observed"]] = int(row["total"])
    return counts


def delete_license(conn: sqlite3.Connection, license_id: int) -> bool:
    cursor = conn.execute("DELETE FROM licenses WHERE id = ?", (license_id,))
    return cursor.rowcount > 0


def list_settings(conn: sqlite3.Connection) -> dict[str, str]:
    rows = conn.execute("SELECT key, value FROM settings ORDER BY key ASC").fetchall()
    return {row["key"]: row["value"] for row in rows}


def upsert_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=int(row["id"]),
        username=row["username"],
        password_hash=row["password_hash"],
        email=row["email"],
        discord_id=row["discord_id"],
        discord_username=row["discord_username"],
        is_admin=bool(row["is_admin"]),
        created_at=parse_rfc3339(row["created_at"]),
    )


def insert_user(conn: sqlite3.Connection, record: UserRecord) -> UserRecord:
    cursor = conn.execute(
        """
        INSERT INTO users (
            username, password_hash, email, discord_id, discord_username, is_admin, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record.username,
            record.password_hash,
            record.email,
            record.discord_id,
            record.discord_username,
            int(record.is_admin),
            to_rfc3339(record.created_at),
        ),
    )
    return get_user(conn, int(cursor.lastrowid))


def get_user(conn: sqlite3.Connection, user_id: int) -> UserRecord | None:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row is not None else None


def get_user_by_username(conn: sqlite3.Connection, username: str) -> UserRecord | None:
    row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    return _row_to_user(row) if row is not None else None


def list_users(conn: sqlite3.Connection) -> list[UserRecord]:
    rows = conn.execute("SELECT * FROM users ORDER BY id ASC").fetchall()
    return [_row_to_user(row) for row in rows]


def delete_user(conn: sqlite3.Connection, user_id: int) -> bool:
    cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
    return cursor.rowcount > 0


def get_integration_config(conn: sqlite3.Connection) -> IntegrationConfigRecord:
    row = conn.execute("SELECT * FROM integration_config WHERE id = 1").fetchone()
    if row is None:
        return IntegrationConfigRecord()

    return IntegrationConfigRecord(
        bot_token=row["bot_token"],
        webhook_url=row["webhook_url"],
        server_id=row["server_id"],
        license_role_id=row["license_role_id"],
        admin_role_id=row["admin_role_id"],
        is_enabled=bool(row["is_enabled"]),
        updated_at=_parse_optional(row["updated_at"]),
    )


def save_integration_config(
    conn: sqlite3.Connection, record: IntegrationConfigRecord
) -> IntegrationConfigRecord:
    conn.execute(
        """
        INSERT INTO integration_config (
            id, bot_token, webhook_url, server_id, license_role_id, admin_role_id,
            is_enabled, updated_at
        )
        VALUES (1, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            bot_token = excluded.bot_token,
            webhook_url = excluded.webhook_url,
            server_id = excluded.server_id,
            license_role_id = excluded.license_role_id,
            admin_role_id = excluded.admin_role_id,
            is_enabled = excluded.is_enabled,
            updated_at = excluded.updated_at
        """,
        (
            record.bot_token,
            record.webhook_url,
            record.server_id,
            record.license_role_id,
            record.admin_role_id,
            int(record.is_enabled),
            _to_column(record.updated_at),
        ),
    )
    return get_integration_config(conn)


def has_admin_user(conn: sqlite3.Connection) -> bool:
    row = conn.execute("SELECT 1 FROM users WHERE is_admin = 1 LIMIT 1").fetchone()
    return row is not None
