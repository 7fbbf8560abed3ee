"""Google Calendar API adapter."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from dateutil.parser import isoparse

from ..config import ProviderConfig
from ..errors import (
    ContinuationTokenInvalidError,
    CredentialExchangeError,
    CredentialInvalidError,
    EventParseError,
    ProviderError,
    ProviderUnreachableError,
)
from .base import (
    NO_TITLE,
    AccountProfile,
    CanonicalEvent,
    ExternalCalendar,
    OAuthTokens,
    SyncOptions,
    SyncResult,
    to_utc,
)

logger = logging.getLogger("calendar-sync-engine")

AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]

READ_ONLY_ROLES = {"reader", "freeBusyReader"}
RESPONSE_STATUSES = {"accepted", "declined", "tentative", "needsAction"}
PAGE_SIZE = 250


def _parse_all_day(value: str) -> datetime:
    # Bare dates are pinned to UTC midnight, never local midnight.
    day = date.fromisoformat(value)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def _rfc3339(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def _map_status(status: str | None) -> str:
    if status in ("tentative", "cancelled"):
        return status
    return "confirmed"


def _self_response(attendees: list[dict[str, Any]] | None) -> str | None:
    for attendee in attendees or []:
        if attendee.get("self"):
            status = attendee.get("responseStatus")
            return status if status in RESPONSE_STATUSES else None
    return None


def _recurrence_rule(recurrence: list[str] | None) -> str | None:
    for line in recurrence or []:
        if line.startswith("RRULE:"):
            return line[len("RRULE:"):]
    return None


def parse_google_event(item: dict[str, Any]) -> CanonicalEvent:
    """Normalize one Google ``events`` resource. Raises EventParseError."""
    event_id = item.get("id")
    start_raw = item.get("start") or {}
    end_raw = item.get("end") or {}
    if not event_id or not start_raw:
        raise EventParseError(f"Google event {event_id or '?'} has no id or start")

    all_day = "dateTime" not in start_raw
    try:
        if all_day:
            start = _parse_all_day(start_raw["date"])
            end = _parse_all_day(end_raw["date"]) if end_raw.get("date") else start + timedelta(days=1)
        else:
            start = to_utc(isoparse(start_raw["dateTime"]))
            end = to_utc(isoparse(end_raw["dateTime"])) if end_raw.get("dateTime") else start + timedelta(hours=1)
    except (KeyError, TypeError, ValueError) as exc:
        raise EventParseError(f"Google event {event_id}: invalid start/end ({exc})") from exc

    return CanonicalEvent(
        external_id=event_id,
        title=item.get("summary") or NO_TITLE,
        description=item.get("description"),
        location=item.get("location"),
        start=start,
        end=end,
        all_day=all_day,
        timezone=start_raw.get("timeZone"),
        recurrence_rule=_recurrence_rule(item.get("recurrence")),
        recurring_event_id=item.get("recurringEventId"),
        status=_map_status(item.get("status")),
        response_status=_self_response(item.get("attendees")),
        html_link=item.get("htmlLink"),
        etag=item.get("etag"),
    )


RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "dailyLimitExceeded"}
CREDENTIAL_REASONS = {"authError", "insufficientPermissions"}


def _error_reasons(exc: Exception) -> set[str]:
    """Collect ``error.errors[].reason`` values from a Google error body."""
    content = getattr(exc, "content", None) or b""
    try:
        body = json.loads(content.decode("utf-8") if isinstance(content, bytes) else content)
    except ValueError:
        return set()
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return set()
    return {e.get("reason") for e in error.get("errors") or [] if isinstance(e, dict) and e.get("reason")}


def _translate_http_error(exc: Exception, token_in_use: bool) -> ProviderError:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        status = int(status) if status is not None else None
    except (TypeError, ValueError):
        status = None
    message = getattr(exc, "reason", None) or str(exc)

    if status == 410 and token_in_use:
        return ContinuationTokenInvalidError(f"Google sync token rejected: {message}", status)
    if status == 401:
        return CredentialInvalidError(f"Google rejected credentials ({status}): {message}", status)
    if status == 403:
        reasons = _error_reasons(exc)
        if reasons & RATE_LIMIT_REASONS:
            return ProviderUnreachableError(f"Google API rate limited ({status}): {message}", status)
        if reasons & CREDENTIAL_REASONS:
            return CredentialInvalidError(f"Google rejected credentials ({status}): {message}", status)
        return ProviderError(f"Google API access denied ({status}): {message}", status)
    if status is not None and (status == 429 or status >= 500):
        return ProviderUnreachableError(f"Google API unavailable ({status}): {message}", status)
    return ProviderError(f"Google API request failed ({status}): {message}", status)


class GoogleAdapter:
    """Provider adapter for Google Calendar via the Google API client."""

    def __init__(self, config: ProviderConfig, timeout: float = 30.0):
        self._config = config
        self._timeout = timeout

    # -- OAuth -----------------------------------------------------------

    def _flow(self, redirect_uri: str, state: str | None = None):
        from google_auth_oauthlib.flow import Flow

        client_config = {
            "web": {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        # prompt=consent forces a refresh token on every authorization
        url, _ = self._flow(redirect_uri, state=state).authorization_url(
            access_type="offline",
            prompt="consent",
        )
        return url

    def _exchange_code_sync(self, code: str, redirect_uri: str) -> OAuthTokens:
        from oauthlib.oauth2 import OAuth2Error
        from requests import RequestException

        flow = self._flow(redirect_uri)
        try:
            flow.fetch_token(code=code)
        except (OAuth2Error, RequestException, Warning) as exc:
            raise CredentialExchangeError(f"Failed to exchange Google authorization code: {exc}") from exc

        creds = flow.credentials
        if not creds.refresh_token:
            logger.warning("Google returned no refresh token for this authorization")
        return OAuthTokens(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expires_at=self._expiry(creds.expiry),
        )

    def _refresh_tokens_sync(self, refresh_token: str) -> OAuthTokens:
        from google.auth.exceptions import RefreshError, TransportError
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self._config.client_id,
            client_secret=self._config.client_secret,
            scopes=SCOPES,
        )
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise CredentialInvalidError(f"Google token refresh rejected: {exc}") from exc
        except TransportError as exc:
            raise ProviderUnreachableError(f"Google token endpoint unreachable: {exc}") from exc

        logger.info("Google access token refreshed")
        return OAuthTokens(
            access_token=creds.token,
            # Google usually keeps the original refresh token
            refresh_token=creds.refresh_token or refresh_token,
            expires_at=self._expiry(creds.expiry),
        )

    @staticmethod
    def _expiry(expiry: datetime | None) -> datetime:
        if expiry is None:
            return datetime.now(timezone.utc) + timedelta(hours=1)
        return to_utc(expiry)

    # -- API -------------------------------------------------------------

    def _build_service(self, api: str, version: str, access_token: str):
        import google_auth_httplib2
        import httplib2
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        http = google_auth_httplib2.AuthorizedHttp(
            Credentials(token=access_token),
            http=httplib2.Http(timeout=self._timeout),
        )
        return build(api, version, http=http, cache_discovery=False)

    def _execute(self, request: Any, token_in_use: bool = False) -> dict[str, Any]:
        from googleapiclient.errors import HttpError
        from httplib2 import HttpLib2Error

        try:
            return request.execute()
        except HttpError as exc:
            raise _translate_http_error(exc, token_in_use) from exc
        except (HttpLib2Error, OSError) as exc:
            raise ProviderUnreachableError(f"Google API unreachable: {exc}") from exc

    def _get_profile_sync(self, access_token: str) -> AccountProfile:
        service = self._build_service("oauth2", "v2", access_token)
        data = self._execute(service.userinfo().get())
        return AccountProfile(id=data.get("id", ""), email=data.get("email", ""))

    def _list_calendars_sync(self, access_token: str) -> list[ExternalCalendar]:
        service = self._build_service("calendar", "v3", access_token)
        calendars: list[ExternalCalendar] = []
        page_token = None
        while True:
            data = self._execute(service.calendarList().list(pageToken=page_token))
            for item in data.get("items", []):
                calendars.append(ExternalCalendar(
                    external_id=item["id"],
                    name=item.get("summary") or item["id"],
                    color=item.get("backgroundColor"),
                    is_read_only=item.get("accessRole") in READ_ONLY_ROLES,
                ))
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendars

    def _list_events_sync(self, access_token: str, calendar_id: str, options: SyncOptions) -> SyncResult:
        service = self._build_service("calendar", "v3", access_token)
        token_in_use = bool(options.sync_token)
        result = SyncResult()
        page_token = None

        while True:
            params: dict[str, Any] = {
                "calendarId": calendar_id,
                "maxResults": PAGE_SIZE,
                "singleEvents": True,  # expand recurring instances server-side
                "showDeleted": True,
            }
            if token_in_use:
                params["syncToken"] = options.sync_token
            else:
                if options.time_min:
                    params["timeMin"] = _rfc3339(options.time_min)
                if options.time_max:
                    params["timeMax"] = _rfc3339(options.time_max)
            if page_token:
                params["pageToken"] = page_token

            data = self._execute(service.events().list(**params), token_in_use=token_in_use)

            for item in data.get("items", []):
                if item.get("status") == "cancelled":
                    if item.get("id"):
                        result.add_deleted(item["id"])
                    continue
                try:
                    result.add_event(parse_google_event(item))
                except EventParseError as exc:
                    logger.warning("Skipping Google event in '%s': %s", calendar_id, exc)

            if data.get("nextSyncToken"):
                result.next_sync_token = data["nextSyncToken"]
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.debug(
            "Google calendar '%s': %d changed, %d deleted",
            calendar_id, len(result.events), len(result.deleted),
        )
        return result

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._exchange_code_sync, code, redirect_uri)

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._refresh_tokens_sync, refresh_token)

    async def get_profile(self, access_token: str) -> AccountProfile:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._get_profile_sync, access_token)

    async def list_calendars(self, credential: str) -> list[ExternalCalendar]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_calendars_sync, credential)

    async def list_events(self, credential: str, calendar_id: str, options: SyncOptions) -> SyncResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_events_sync, credential, calendar_id, options)
