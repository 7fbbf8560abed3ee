"""
SQLite persistence for accounts, calendars and imported events.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .backends.base import CanonicalEvent, ExternalCalendar
from .models import Calendar, CalendarAccount, Provider, SyncStatus

logger = logging.getLogger("calendar-sync-engine")

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    provider_account_id TEXT NOT NULL,
    email TEXT NOT NULL,
    access_token_encrypted TEXT,
    refresh_token_encrypted TEXT,
    token_expires_at TEXT,
    caldav_password_encrypted TEXT,
    caldav_url TEXT,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    sync_error TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_synced_at TEXT,
    last_attempt_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(user_id, provider, provider_account_id)
);

CREATE TABLE IF NOT EXISTS calendars (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    name TEXT NOT NULL,
    color TEXT,
    is_read_only INTEGER NOT NULL DEFAULT 0,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    sync_token TEXT,
    UNIQUE(account_id, external_id)
);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    external_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    location TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    all_day INTEGER NOT NULL DEFAULT 0,
    timezone TEXT,
    recurrence_rule TEXT,
    recurring_event_id TEXT,
    status TEXT NOT NULL,
    response_status TEXT,
    html_link TEXT,
    etag TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE(calendar_id, external_id)
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _new_id() -> str:
    return uuid.uuid4().hex


class SyncStore:
    """Manages the SQLite database behind the sync engine."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database and create the schema if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------ #
    # Accounts                                                           #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _account(row: sqlite3.Row) -> CalendarAccount:
        return CalendarAccount(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            provider_account_id=row["provider_account_id"],
            email=row["email"],
            access_token_encrypted=row["access_token_encrypted"],
            refresh_token_encrypted=row["refresh_token_encrypted"],
            token_expires_at=_dt(row["token_expires_at"]),
            caldav_password_encrypted=row["caldav_password_encrypted"],
            caldav_url=row["caldav_url"],
            sync_status=SyncStatus(row["sync_status"]),
            sync_error=row["sync_error"],
            is_active=bool(row["is_active"]),
            last_synced_at=_dt(row["last_synced_at"]),
            last_attempt_at=_dt(row["last_attempt_at"]),
        )

    def get_account(self, account_id: str) -> CalendarAccount | None:
        row = self.conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        return self._account(row) if row else None

    def list_accounts(self, user_id: str | None = None) -> list[CalendarAccount]:
        if user_id is None:
            rows = self.conn.execute("SELECT * FROM accounts ORDER BY created_at").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM accounts WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._account(r) for r in rows]

    def upsert_account(
        self,
        user_id: str,
        provider: Provider,
        provider_account_id: str,
        email: str,
        access_token_encrypted: str | None = None,
        refresh_token_encrypted: str | None = None,
        token_expires_at: datetime | None = None,
        caldav_password_encrypted: str | None = None,
        caldav_url: str | None = None,
    ) -> CalendarAccount:
        """Insert or refresh an account keyed by (user, provider, provider account id).

        Reconnecting reactivates the account and clears its error. A missing
        refresh token keeps the one already stored.
        """
        now = _now()
        self.conn.execute(
            """
            INSERT INTO accounts (
                id, user_id, provider, provider_account_id, email,
                access_token_encrypted, refresh_token_encrypted, token_expires_at,
                caldav_password_encrypted, caldav_url, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, provider, provider_account_id) DO UPDATE SET
                email = excluded.email,
                access_token_encrypted = excluded.access_token_encrypted,
                refresh_token_encrypted = COALESCE(excluded.refresh_token_encrypted,
                                                   accounts.refresh_token_encrypted),
                token_expires_at = excluded.token_expires_at,
                caldav_password_encrypted = excluded.caldav_password_encrypted,
                caldav_url = excluded.caldav_url,
                is_active = 1,
                sync_status = CASE WHEN accounts.sync_status = 'syncing'
                                   THEN 'syncing' ELSE 'idle' END,
                sync_error = NULL,
                updated_at = excluded.updated_at
            """,
            (
                _new_id(), user_id, Provider(provider).value, provider_account_id, email,
                access_token_encrypted, refresh_token_encrypted, _iso(token_expires_at),
                caldav_password_encrypted, caldav_url, now, now,
            ),
        )
        self.conn.commit()
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE user_id = ? AND provider = ? AND provider_account_id = ?",
            (user_id, Provider(provider).value, provider_account_id),
        ).fetchone()
        return self._account(row)

    def update_account_tokens(
        self,
        account_id: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str | None,
        token_expires_at: datetime,
    ):
        self.conn.execute(
            "UPDATE accounts SET access_token_encrypted = ?, "
            "refresh_token_encrypted = COALESCE(?, refresh_token_encrypted), "
            "token_expires_at = ?, updated_at = ? WHERE id = ?",
            (access_token_encrypted, refresh_token_encrypted, _iso(token_expires_at), _now(), account_id),
        )
        self.conn.commit()

    def begin_sync(self, account_id: str, now: datetime | None = None) -> bool:
        """Atomically move an active, non-syncing account to ``syncing``.

        Returns False when another pass already holds the account.
        """
        now = now or datetime.now(timezone.utc)
        cursor = self.conn.execute(
            "UPDATE accounts SET sync_status = 'syncing', last_attempt_at = ?, updated_at = ? "
            "WHERE id = ? AND sync_status != 'syncing' AND is_active = 1",
            (_iso(now), _now(), account_id),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def finish_sync(
        self,
        account_id: str,
        status: SyncStatus,
        error: str | None = None,
        synced_at: datetime | None = None,
    ):
        self.conn.execute(
            "UPDATE accounts SET sync_status = ?, sync_error = ?, "
            "last_synced_at = COALESCE(?, last_synced_at), updated_at = ? WHERE id = ?",
            (SyncStatus(status).value, error, _iso(synced_at), _now(), account_id),
        )
        self.conn.commit()

    def deactivate_account(self, account_id: str):
        self.conn.execute(
            "UPDATE accounts SET is_active = 0, updated_at = ? WHERE id = ?",
            (_now(), account_id),
        )
        self.conn.commit()
        logger.warning("Account %s deactivated: credentials are no longer valid", account_id)

    def reset_interrupted_syncs(self) -> int:
        """Return accounts left in ``syncing`` by a previous process to ``idle``."""
        cursor = self.conn.execute(
            "UPDATE accounts SET sync_status = 'idle', updated_at = ? WHERE sync_status = 'syncing'",
            (_now(),),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.info("Reset %d interrupted sync(s)", cursor.rowcount)
        return cursor.rowcount

    def accounts_due_for_sync(self, cutoff: datetime) -> list[CalendarAccount]:
        """Active, non-syncing accounts whose last attempt is older than ``cutoff``."""
        rows = self.conn.execute(
            "SELECT * FROM accounts WHERE is_active = 1 AND sync_status != 'syncing' "
            "AND (last_attempt_at IS NULL OR last_attempt_at < ?) "
            "ORDER BY last_attempt_at IS NOT NULL, last_attempt_at",
            (_iso(cutoff),),
        ).fetchall()
        return [self._account(r) for r in rows]

    # ------------------------------------------------------------------ #
    # Calendars                                                          #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _calendar(row: sqlite3.Row) -> Calendar:
        return Calendar(
            id=row["id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            name=row["name"],
            color=row["color"],
            is_read_only=bool(row["is_read_only"]),
            is_enabled=bool(row["is_enabled"]),
            sync_token=row["sync_token"],
        )

    def upsert_calendars(self, account: CalendarAccount, calendars: Iterable[ExternalCalendar]) -> list[Calendar]:
        """Merge a fetched calendar list into the store.

        Known calendars keep ``is_enabled`` and ``sync_token``. Calendars no
        longer listed by the provider are removed with their events, unless the
        provider returned an empty list.
        """
        calendars = list(calendars)
        for cal in calendars:
            self.conn.execute(
                """
                INSERT INTO calendars (id, account_id, user_id, external_id, name, color, is_read_only)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, external_id) DO UPDATE SET
                    name = excluded.name,
                    color = excluded.color,
                    is_read_only = excluded.is_read_only
                """,
                (_new_id(), account.id, account.user_id, cal.external_id, cal.name, cal.color, int(cal.is_read_only)),
            )
        if calendars:
            placeholders = ",".join("?" for _ in calendars)
            cursor = self.conn.execute(
                f"DELETE FROM calendars WHERE account_id = ? AND external_id NOT IN ({placeholders})",
                (account.id, *[c.external_id for c in calendars]),
            )
            if cursor.rowcount:
                logger.info("Removed %d calendar(s) no longer present on account %s", cursor.rowcount, account.id)
        self.conn.commit()
        return self.list_calendars(account.id)

    def get_calendar(self, calendar_id: str) -> Calendar | None:
        row = self.conn.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,)).fetchone()
        return self._calendar(row) if row else None

    def list_calendars(self, account_id: str) -> list[Calendar]:
        rows = self.conn.execute(
            "SELECT * FROM calendars WHERE account_id = ? ORDER BY rowid", (account_id,)
        ).fetchall()
        return [self._calendar(r) for r in rows]

    def list_enabled_calendars(self, account_id: str) -> list[Calendar]:
        return [c for c in self.list_calendars(account_id) if c.is_enabled]

    def set_calendar_enabled(self, calendar_id: str, enabled: bool) -> Calendar | None:
        self.conn.execute(
            "UPDATE calendars SET is_enabled = ? WHERE id = ?", (int(enabled), calendar_id)
        )
        self.conn.commit()
        return self.get_calendar(calendar_id)

    def set_calendar_sync_token(self, calendar_id: str, sync_token: str | None):
        self.conn.execute("UPDATE calendars SET sync_token = ? WHERE id = ?", (sync_token, calendar_id))
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Events                                                             #
    # ------------------------------------------------------------------ #

    def upsert_events(self, user_id: str, calendar_id: str, events: Iterable[CanonicalEvent]) -> int:
        """Insert or update events keyed by (calendar_id, external_id)."""
        now = _now()
        count = 0
        for ev in events:
            self.conn.execute(
                """
                INSERT INTO events (
                    id, user_id, calendar_id, external_id, title, description, location,
                    start_time, end_time, all_day, timezone, recurrence_rule, recurring_event_id,
                    status, response_status, html_link, etag, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(calendar_id, external_id) DO UPDATE SET
                    title = excluded.title,
                    description = excluded.description,
                    location = excluded.location,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    all_day = excluded.all_day,
                    timezone = excluded.timezone,
                    recurrence_rule = excluded.recurrence_rule,
                    recurring_event_id = excluded.recurring_event_id,
                    status = excluded.status,
                    response_status = excluded.response_status,
                    html_link = excluded.html_link,
                    etag = excluded.etag,
                    updated_at = excluded.updated_at
                """,
                (
                    _new_id(), user_id, calendar_id, ev.external_id, ev.title, ev.description, ev.location,
                    _iso(ev.start), _iso(ev.end), int(ev.all_day), ev.timezone, ev.recurrence_rule,
                    ev.recurring_event_id, ev.status, ev.response_status, ev.html_link, ev.etag, now,
                ),
            )
            count += 1
        self.conn.commit()
        return count

    def delete_events_by_external_id(
        self, user_id: str, external_ids: Iterable[str], calendar_id: str | None = None
    ) -> int:
        """Delete events by provider id, optionally scoped to one calendar."""
        external_ids = list(external_ids)
        if not external_ids:
            return 0
        placeholders = ",".join("?" for _ in external_ids)
        sql = f"DELETE FROM events WHERE user_id = ? AND external_id IN ({placeholders})"
        params: list = [user_id, *external_ids]
        if calendar_id is not None:
            sql += " AND calendar_id = ?"
            params.append(calendar_id)
        cursor = self.conn.execute(sql, params)
        self.conn.commit()
        return cursor.rowcount

    def list_events(self, calendar_id: str) -> list[dict]:
        rows = self.conn.execute(
            "SELECT * FROM events WHERE calendar_id = ? ORDER BY start_time", (calendar_id,)
        ).fetchall()
        return [dict(r) for r in rows]

    def count_events(self, calendar_id: str | None = None) -> int:
        if calendar_id is None:
            return self.conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]
        return self.conn.execute(
            "SELECT COUNT(*) FROM events WHERE calendar_id = ?", (calendar_id,)
        ).fetchone()[0]
