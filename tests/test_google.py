"""Tests for the Google Calendar adapter."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from calendar_sync_engine.backends.base import SyncOptions
from calendar_sync_engine.backends.google import GoogleAdapter, parse_google_event
from calendar_sync_engine.errors import (
    AccountSyncError,
    ContinuationTokenInvalidError,
    CredentialExchangeError,
    CredentialInvalidError,
    EventParseError,
    ProviderError,
    ProviderUnreachableError,
    SyncErrorKind,
)
from calendar_sync_engine.models import SyncStatus
from calendar_sync_engine.sync import SyncOrchestrator

from conftest import make_account, make_calendars, make_event

UTC = timezone.utc


def _http_error(status: int, message: str = "error", reason: str | None = None) -> HttpError:
    error = {"code": status, "message": message}
    if reason:
        error["errors"] = [{"domain": "usageLimits", "reason": reason, "message": message}]
    content = json.dumps({"error": error}).encode()
    return HttpError(httplib2.Response({"status": str(status)}), content)


def _make_adapter(settings) -> GoogleAdapter:
    return GoogleAdapter(settings.provider("google"), timeout=5)


def _install_service(adapter: GoogleAdapter, pages: list | None = None, error: Exception | None = None) -> MagicMock:
    """Replace API discovery with a mock service returning ``pages`` in order."""
    service = MagicMock()
    request = service.events.return_value.list.return_value
    if error is not None:
        request.execute.side_effect = error
    else:
        request.execute.side_effect = pages
    adapter._build_service = MagicMock(return_value=service)
    return service


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------

class TestParseGoogleEvent:
    def test_all_day_is_utc_midnight(self):
        event = parse_google_event({
            "id": "e1",
            "summary": "Holiday",
            "start": {"date": "2024-03-10"},
            "end": {"date": "2024-03-11"},
        })
        assert event.all_day is True
        assert event.start == datetime(2024, 3, 10, 0, 0, tzinfo=UTC)
        assert event.end == datetime(2024, 3, 11, 0, 0, tzinfo=UTC)

    def test_all_day_without_end_lasts_one_day(self):
        event = parse_google_event({"id": "e1", "start": {"date": "2024-03-10"}})
        assert event.end - event.start == timedelta(days=1)

    def test_timed_event_normalized_to_utc(self):
        event = parse_google_event({
            "id": "e1",
            "start": {"dateTime": "2024-03-10T09:00:00+01:00", "timeZone": "Europe/Berlin"},
            "end": {"dateTime": "2024-03-10T10:30:00+01:00"},
        })
        assert event.all_day is False
        assert event.start == datetime(2024, 3, 10, 8, 0, tzinfo=UTC)
        assert event.end == datetime(2024, 3, 10, 9, 30, tzinfo=UTC)
        assert event.timezone == "Europe/Berlin"

    def test_timed_event_without_end_lasts_one_hour(self):
        event = parse_google_event({"id": "e1", "start": {"dateTime": "2024-03-10T09:00:00Z"}})
        assert event.end - event.start == timedelta(hours=1)

    def test_missing_title(self):
        event = parse_google_event({"id": "e1", "summary": "", "start": {"date": "2024-03-10"}})
        assert event.title == "(No title)"

    def test_fields_mapped(self):
        event = parse_google_event({
            "id": "e1_20240310",
            "summary": "Standup",
            "description": "Daily",
            "location": "Room 1",
            "status": "tentative",
            "recurringEventId": "e1",
            "recurrence": ["EXDATE;VALUE=DATE:20240317", "RRULE:FREQ=WEEKLY;BYDAY=MO"],
            "attendees": [
                {"email": "other@example.com", "responseStatus": "accepted"},
                {"email": "me@example.com", "self": True, "responseStatus": "declined"},
            ],
            "htmlLink": "https://calendar.google.com/event?eid=abc",
            "etag": '"3181161784712000"',
            "start": {"dateTime": "2024-03-10T09:00:00Z"},
            "end": {"dateTime": "2024-03-10T09:15:00Z"},
        })
        assert event.external_id == "e1_20240310"
        assert event.status == "tentative"
        assert event.recurrence_rule == "FREQ=WEEKLY;BYDAY=MO"
        assert event.recurring_event_id == "e1"
        assert event.response_status == "declined"
        assert event.html_link == "https://calendar.google.com/event?eid=abc"
        assert event.etag == '"3181161784712000"'

    def test_no_self_attendee(self):
        event = parse_google_event({
            "id": "e1",
            "attendees": [{"email": "other@example.com", "responseStatus": "accepted"}],
            "start": {"date": "2024-03-10"},
        })
        assert event.response_status is None

    def test_missing_start_raises(self):
        with pytest.raises(EventParseError):
            parse_google_event({"id": "e1", "summary": "Broken"})

    def test_invalid_date_raises(self):
        with pytest.raises(EventParseError):
            parse_google_event({"id": "e1", "start": {"date": "not-a-date"}})

    def test_end_before_start_raises(self):
        with pytest.raises(EventParseError):
            parse_google_event({
                "id": "e1",
                "start": {"dateTime": "2024-03-10T10:00:00Z"},
                "end": {"dateTime": "2024-03-10T09:00:00Z"},
            })


class TestCanonicalEvent:
    def test_inverted_event_rejected(self):
        start = datetime(2024, 3, 10, 10, 0, tzinfo=UTC)
        with pytest.raises(EventParseError, match="before start"):
            make_event(start=start, end=start - timedelta(minutes=1))

    def test_instant_allowed(self):
        start = datetime(2024, 3, 10, 10, 0, tzinfo=UTC)
        assert make_event(start=start, end=start).end == start

    def test_naive_datetime_rejected(self):
        with pytest.raises(EventParseError, match="timezone-aware"):
            make_event(start=datetime(2024, 3, 10, 10, 0), end=datetime(2024, 3, 10, 11, 0))

    def test_unknown_status_rejected(self):
        with pytest.raises(EventParseError):
            make_event(status="busy")


# ---------------------------------------------------------------------------
# list_events
# ---------------------------------------------------------------------------

class TestListEvents:
    async def test_window_fetch_follows_pages(self, settings):
        adapter = _make_adapter(settings)
        service = _install_service(adapter, pages=[
            {
                "items": [
                    {"id": "a", "summary": "A", "start": {"date": "2024-03-10"}},
                    {"id": "b", "status": "cancelled"},
                ],
                "nextPageToken": "page-2",
            },
            {
                "items": [{"id": "c", "summary": "C", "start": {"dateTime": "2024-03-11T09:00:00Z"}}],
                "nextSyncToken": "sync-1",
            },
        ])
        options = SyncOptions(
            time_min=datetime(2024, 3, 1, tzinfo=UTC),
            time_max=datetime(2024, 4, 1, tzinfo=UTC),
        )

        result = await adapter.list_events("access", "primary", options)

        assert [e.external_id for e in result.events] == ["a", "c"]
        assert result.deleted == ["b"]
        assert result.next_sync_token == "sync-1"
        calls = service.events.return_value.list.call_args_list
        assert len(calls) == 2
        first = calls[0].kwargs
        assert first["calendarId"] == "primary"
        assert first["maxResults"] == 250
        assert first["singleEvents"] is True
        assert first["showDeleted"] is True
        assert first["timeMin"] == "2024-03-01T00:00:00Z"
        assert first["timeMax"] == "2024-04-01T00:00:00Z"
        assert "syncToken" not in first
        assert calls[1].kwargs["pageToken"] == "page-2"

    async def test_sync_token_takes_precedence(self, settings):
        adapter = _make_adapter(settings)
        service = _install_service(adapter, pages=[{"items": [], "nextSyncToken": "sync-2"}])
        options = SyncOptions(
            sync_token="sync-1",
            time_min=datetime(2024, 3, 1, tzinfo=UTC),
            time_max=datetime(2024, 4, 1, tzinfo=UTC),
        )

        result = await adapter.list_events("access", "primary", options)

        params = service.events.return_value.list.call_args.kwargs
        assert params["syncToken"] == "sync-1"
        assert "timeMin" not in params
        assert result.next_sync_token == "sync-2"

    async def test_unparseable_event_skipped(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, pages=[{
            "items": [
                {"id": "bad", "start": {"date": "garbage"}},
                {"id": "good", "start": {"date": "2024-03-10"}},
            ],
            "nextSyncToken": "s",
        }])
        result = await adapter.list_events("access", "primary", SyncOptions())
        assert [e.external_id for e in result.events] == ["good"]

    async def test_cancelled_after_change_is_only_deleted(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, pages=[
            {"items": [{"id": "x", "start": {"date": "2024-03-10"}}], "nextPageToken": "p2"},
            {"items": [{"id": "x", "status": "cancelled"}], "nextSyncToken": "s"},
        ])
        result = await adapter.list_events("access", "primary", SyncOptions())
        assert result.events == []
        assert result.deleted == ["x"]

    async def test_410_with_sync_token_is_token_invalid(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(410, "Sync token is no longer valid"))
        with pytest.raises(ContinuationTokenInvalidError) as exc_info:
            await adapter.list_events("access", "primary", SyncOptions(sync_token="old"))
        assert exc_info.value.status_code == 410

    async def test_410_without_token_is_plain_provider_error(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(410))
        with pytest.raises(ProviderError) as exc_info:
            await adapter.list_events("access", "primary", SyncOptions())
        assert not isinstance(exc_info.value, ContinuationTokenInvalidError)

    async def test_401_is_credential_invalid(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(401, "Invalid Credentials"))
        with pytest.raises(CredentialInvalidError):
            await adapter.list_events("access", "primary", SyncOptions())

    @pytest.mark.parametrize("status, reason", [
        (403, "rateLimitExceeded"),
        (403, "userRateLimitExceeded"),
        (429, None),
    ])
    async def test_rate_limit_is_unreachable(self, settings, status, reason):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(status, "Rate Limit Exceeded", reason))
        with pytest.raises(ProviderUnreachableError) as exc_info:
            await adapter.list_events("access", "primary", SyncOptions())
        assert exc_info.value.status_code == status

    async def test_403_forbidden_is_plain_provider_error(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(403, "Forbidden", "forbidden"))
        with pytest.raises(ProviderError) as exc_info:
            await adapter.list_events("access", "primary", SyncOptions())
        assert not isinstance(exc_info.value, (CredentialInvalidError, ProviderUnreachableError))

    async def test_403_auth_error_is_credential_invalid(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(403, "Insufficient Permission", "insufficientPermissions"))
        with pytest.raises(CredentialInvalidError):
            await adapter.list_events("access", "primary", SyncOptions())

    async def test_rate_limit_does_not_deactivate_account(self, store, cipher, settings):
        account = make_account(store, cipher)
        cal = make_calendars(store, account)[0]
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(403, "Rate Limit Exceeded", "rateLimitExceeded"))
        orch = SyncOrchestrator(store, cipher, MagicMock(), settings, adapter_factory=lambda p, s: adapter)

        with pytest.raises(AccountSyncError) as exc_info:
            await orch.sync_account(account, [cal])

        assert exc_info.value.kind is SyncErrorKind.PROVIDER_UNREACHABLE
        updated = store.get_account(account.id)
        assert updated.is_active is True
        assert updated.sync_status is SyncStatus.ERROR

    async def test_5xx_is_unreachable(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=_http_error(503, "Backend Error"))
        with pytest.raises(ProviderUnreachableError):
            await adapter.list_events("access", "primary", SyncOptions())

    async def test_socket_error_is_unreachable(self, settings):
        adapter = _make_adapter(settings)
        _install_service(adapter, error=TimeoutError("timed out"))
        with pytest.raises(ProviderUnreachableError):
            await adapter.list_events("access", "primary", SyncOptions())


# ---------------------------------------------------------------------------
# Calendars and profile
# ---------------------------------------------------------------------------

class TestCalendars:
    async def test_list_calendars(self, settings):
        adapter = _make_adapter(settings)
        service = MagicMock()
        service.calendarList.return_value.list.return_value.execute.side_effect = [
            {
                "items": [{"id": "primary", "summary": "Me", "backgroundColor": "#9fe1e7", "accessRole": "owner"}],
                "nextPageToken": "p2",
            },
            {"items": [{"id": "holidays", "summary": "Holidays", "accessRole": "reader"}]},
        ]
        adapter._build_service = MagicMock(return_value=service)

        calendars = await adapter.list_calendars("access")

        assert [c.external_id for c in calendars] == ["primary", "holidays"]
        assert calendars[0].color == "#9fe1e7"
        assert calendars[0].is_read_only is False
        assert calendars[1].is_read_only is True

    async def test_get_profile(self, settings):
        adapter = _make_adapter(settings)
        service = MagicMock()
        service.userinfo.return_value.get.return_value.execute.return_value = {
            "id": "1234", "email": "me@gmail.com", "verified_email": True,
        }
        adapter._build_service = MagicMock(return_value=service)

        profile = await adapter.get_profile("access")

        assert profile.id == "1234"
        assert profile.email == "me@gmail.com"
        adapter._build_service.assert_called_once_with("oauth2", "v2", "access")


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------

class TestOAuth:
    def test_auth_url(self, settings):
        adapter = _make_adapter(settings)
        url = adapter.get_auth_url("state-123", settings.provider("google").redirect_uri)
        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "client_id=google-client" in url
        assert "state=state-123" in url
        assert "access_type=offline" in url
        assert "prompt=consent" in url
        assert "calendar.readonly" in url

    async def test_exchange_code(self, settings):
        adapter = _make_adapter(settings)
        flow = MagicMock()
        flow.credentials.token = "access"
        flow.credentials.refresh_token = "refresh"
        flow.credentials.expiry = datetime(2030, 1, 1, 12, 0)  # google-auth uses naive UTC
        adapter._flow = MagicMock(return_value=flow)

        tokens = await adapter.exchange_code("code-1", "https://example.com/cb")

        flow.fetch_token.assert_called_once_with(code="code-1")
        assert tokens.access_token == "access"
        assert tokens.refresh_token == "refresh"
        assert tokens.expires_at == datetime(2030, 1, 1, 12, 0, tzinfo=UTC)

    async def test_exchange_failure(self, settings):
        from oauthlib.oauth2 import InvalidGrantError

        adapter = _make_adapter(settings)
        flow = MagicMock()
        flow.fetch_token.side_effect = InvalidGrantError("Malformed auth code.")
        adapter._flow = MagicMock(return_value=flow)

        with pytest.raises(CredentialExchangeError):
            await adapter.exchange_code("bad", "https://example.com/cb")

    async def test_refresh_keeps_refresh_token(self, settings):
        adapter = _make_adapter(settings)
        with patch("google.oauth2.credentials.Credentials") as creds_cls:
            creds = creds_cls.return_value
            creds.token = "new-access"
            creds.refresh_token = None
            creds.expiry = datetime(2030, 1, 1, 12, 0)
            tokens = await adapter.refresh_tokens("refresh-1")

        creds.refresh.assert_called_once()
        assert creds_cls.call_args.kwargs["refresh_token"] == "refresh-1"
        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "refresh-1"

    async def test_refresh_rejected(self, settings):
        from google.auth.exceptions import RefreshError

        adapter = _make_adapter(settings)
        with patch("google.oauth2.credentials.Credentials") as creds_cls:
            creds_cls.return_value.refresh.side_effect = RefreshError("invalid_grant: Token has been expired or revoked.")
            with pytest.raises(CredentialInvalidError):
                await adapter.refresh_tokens("revoked")
