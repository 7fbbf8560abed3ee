"""Persistent records: accounts, calendars and the sync window."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

DEFAULT_DAYS_PAST = 30
DEFAULT_DAYS_FUTURE = 90


class Provider(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    ICLOUD = "icloud"

    @property
    def uses_oauth(self) -> bool:
        return self is not Provider.ICLOUD


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass
class CalendarAccount:
    """One external calendar identity linked to a user."""

    id: str
    user_id: str
    provider: Provider
    provider_account_id: str
    email: str
    access_token_encrypted: str | None = None
    refresh_token_encrypted: str | None = None
    token_expires_at: datetime | None = None
    caldav_password_encrypted: str | None = None
    caldav_url: str | None = None
    sync_status: SyncStatus = SyncStatus.IDLE
    sync_error: str | None = None
    is_active: bool = True
    last_synced_at: datetime | None = None
    last_attempt_at: datetime | None = None

    def token_expired(self, now: datetime | None = None, skew: timedelta = timedelta(seconds=60)) -> bool:
        if self.token_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.token_expires_at <= now + skew


@dataclass
class Calendar:
    """One calendar belonging to a CalendarAccount."""

    id: str
    account_id: str
    user_id: str
    external_id: str
    name: str
    color: str | None = None
    is_read_only: bool = False
    is_enabled: bool = True
    sync_token: str | None = None


@dataclass(frozen=True)
class SyncWindow:
    """Time range used for a first (or token-less) fetch."""

    start: datetime
    end: datetime

    @classmethod
    def around(
        cls,
        now: datetime | None = None,
        days_past: int = DEFAULT_DAYS_PAST,
        days_future: int = DEFAULT_DAYS_FUTURE,
    ) -> SyncWindow:
        now = now or datetime.now(timezone.utc)
        return cls(start=now - timedelta(days=days_past), end=now + timedelta(days=days_future))


@dataclass(frozen=True)
class SyncSummary:
    account_id: str
    events_count: int
    deleted_count: int
