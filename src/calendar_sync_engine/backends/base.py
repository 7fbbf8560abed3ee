"""Base types and protocol for calendar provider adapters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, Union, runtime_checkable

from ..errors import EventParseError

NO_TITLE = "(No title)"

EVENT_STATUSES = {"confirmed", "tentative", "cancelled"}
RESPONSE_STATUSES = {"accepted", "declined", "tentative", "needsAction"}


@dataclass
class CanonicalEvent:
    """Provider-agnostic event representation all adapters produce."""

    external_id: str
    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    all_day: bool = False
    timezone: str | None = None
    recurrence_rule: str | None = None  # RRULE body, without the "RRULE:" prefix
    recurring_event_id: str | None = None
    status: str = "confirmed"
    response_status: str | None = None
    html_link: str | None = None
    etag: str | None = None

    def __post_init__(self):
        if not self.external_id:
            raise EventParseError("Event is missing an external id")
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise EventParseError(f"Event {self.external_id}: start/end must be timezone-aware")
        if self.end < self.start:
            raise EventParseError(
                f"Event {self.external_id}: end {self.end.isoformat()} is before start {self.start.isoformat()}"
            )
        if self.status not in EVENT_STATUSES:
            raise EventParseError(f"Event {self.external_id}: unknown status '{self.status}'")
        if self.response_status is not None and self.response_status not in RESPONSE_STATUSES:
            raise EventParseError(f"Event {self.external_id}: unknown response status '{self.response_status}'")


@dataclass
class ExternalCalendar:
    external_id: str
    name: str
    color: str | None = None
    is_read_only: bool = False


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


@dataclass
class AccountProfile:
    id: str
    email: str


@dataclass
class CalDavCredentials:
    username: str  # Apple ID email
    password: str  # app-specific password
    server_url: str | None = None


Credential = Union[str, CalDavCredentials]


@dataclass
class SyncOptions:
    """Either a continuation token or a window; the token wins when both are set."""

    sync_token: str | None = None
    time_min: datetime | None = None
    time_max: datetime | None = None

    @property
    def has_window(self) -> bool:
        return self.time_min is not None and self.time_max is not None


class SyncResult:
    """Changes observed for one calendar; the later observation of an id wins."""

    def __init__(
        self,
        events: list[CanonicalEvent] | None = None,
        deleted: list[str] | None = None,
        next_sync_token: str | None = None,
    ):
        # keyed by external id, in insertion order
        self._events: dict[str, CanonicalEvent] = {}
        self._deleted: dict[str, None] = {}
        self.next_sync_token = next_sync_token
        for event in events or []:
            self.add_event(event)
        for external_id in deleted or []:
            self.add_deleted(external_id)

    @property
    def events(self) -> list[CanonicalEvent]:
        return list(self._events.values())

    @property
    def deleted(self) -> list[str]:
        return list(self._deleted)

    def add_event(self, event: CanonicalEvent) -> None:
        """Record a changed event; supersedes an earlier deletion of the same id."""
        self._deleted.pop(event.external_id, None)
        self._events.pop(event.external_id, None)
        self._events[event.external_id] = event

    def add_deleted(self, external_id: str) -> None:
        """Record a removal; supersedes an earlier change of the same id."""
        self._events.pop(external_id, None)
        self._deleted.setdefault(external_id, None)

    def __repr__(self) -> str:
        return (
            f"SyncResult(events={len(self._events)}, deleted={len(self._deleted)}, "
            f"next_sync_token={self.next_sync_token!r})"
        )


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@runtime_checkable
class CalendarAdapter(Protocol):
    """Protocol that all provider adapters must satisfy."""

    def get_auth_url(self, state: str, redirect_uri: str) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens: ...

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens: ...

    async def get_profile(self, access_token: str) -> AccountProfile: ...

    async def list_calendars(self, credential: Credential) -> list[ExternalCalendar]: ...

    async def list_events(self, credential: Credential, calendar_id: str, options: SyncOptions) -> SyncResult: ...
