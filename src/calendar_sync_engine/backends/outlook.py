"""Outlook adapter using Microsoft Graph API + MSAL."""

from __future__ import annotations

import asyncio
import html
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote

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

GRAPH_URL = "https://graph.microsoft.com/v1.0"

# MSAL appends offline_access/openid/profile itself and rejects them here.
SCOPES = ["Calendars.Read", "Calendars.ReadWrite", "User.Read"]

DEFAULT_COLOR = "#0078D4"
OUTLOOK_COLORS = {
    "auto": DEFAULT_COLOR,
    "lightBlue": "#8ED0FF",
    "lightGreen": "#7FD37F",
    "lightOrange": "#FFB878",
    "lightGray": "#D5D5D5",
    "lightYellow": "#FFF078",
    "lightTeal": "#7FD2D5",
    "lightPink": "#FFB3DE",
    "lightBrown": "#D5B59C",
    "lightRed": "#FF8080",
    "maxColor": DEFAULT_COLOR,
}

FREQUENCIES = {
    "daily": "DAILY",
    "weekly": "WEEKLY",
    "absoluteMonthly": "MONTHLY",
    "relativeMonthly": "MONTHLY",
    "absoluteYearly": "YEARLY",
    "relativeYearly": "YEARLY",
}

RESPONSES = {
    "accepted": "accepted",
    "declined": "declined",
    "tentativelyAccepted": "tentative",
    "notResponded": "needsAction",
    "none": "needsAction",
}

PAGE_SIZE = 250
_TAG_RE = re.compile(r"<[^>]*>")


def build_rrule(recurrence: dict[str, Any] | None) -> str | None:
    """Synthesize RRULE text from a Graph ``patternedRecurrence``.

    >>> build_rrule({"pattern": {"type": "weekly", "interval": 2, "daysOfWeek": ["monday", "wednesday"]}})
    'FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE'
    """
    pattern = (recurrence or {}).get("pattern")
    if not pattern:
        return None
    freq = FREQUENCIES.get(pattern.get("type"))
    if freq is None:
        return None

    parts = [f"FREQ={freq}"]
    interval = pattern.get("interval") or 0
    if interval > 1:
        parts.append(f"INTERVAL={interval}")
    days = pattern.get("daysOfWeek") or []
    if days:
        parts.append("BYDAY=" + ",".join(d[:2].upper() for d in days))
    if pattern.get("dayOfMonth"):
        parts.append(f"BYMONTHDAY={pattern['dayOfMonth']}")
    if pattern.get("month"):
        parts.append(f"BYMONTH={pattern['month']}")

    rng = recurrence.get("range") or {}
    if rng.get("type") == "endDate" and rng.get("endDate"):
        parts.append(f"UNTIL={rng['endDate'].replace('-', '')}T235959Z")
    elif rng.get("type") == "numbered" and rng.get("numberOfOccurrences"):
        parts.append(f"COUNT={rng['numberOfOccurrences']}")
    return ";".join(parts)


def strip_html(content: str) -> str | None:
    text = html.unescape(_TAG_RE.sub("", content)).strip()
    return text or None


def map_color(name: str | None) -> str | None:
    if not name:
        return None
    return OUTLOOK_COLORS.get(name, DEFAULT_COLOR)


def _map_show_as(show_as: str | None) -> str:
    # free is surfaced as tentative so the slot is not shown as blocked
    if show_as in ("tentative", "free"):
        return "tentative"
    return "confirmed"


def _parse_graph_time(value: str, all_day: bool) -> datetime:
    if not all_day and not value.endswith("Z"):
        value += "Z"
    return to_utc(isoparse(value))


def parse_outlook_event(item: dict[str, Any]) -> CanonicalEvent:
    """Normalize one Graph ``event`` resource. Raises EventParseError."""
    event_id = item.get("id")
    start_raw = item.get("start") or {}
    end_raw = item.get("end") or {}
    if not event_id or not start_raw.get("dateTime"):
        raise EventParseError(f"Outlook event {event_id or '?'} has no id or start")

    all_day = bool(item.get("isAllDay"))
    try:
        start = _parse_graph_time(start_raw["dateTime"], all_day)
        if end_raw.get("dateTime"):
            end = _parse_graph_time(end_raw["dateTime"], all_day)
        else:
            end = start + (timedelta(days=1) if all_day else timedelta(hours=1))
    except (TypeError, ValueError) as exc:
        raise EventParseError(f"Outlook event {event_id}: invalid start/end ({exc})") from exc

    description = None
    body = item.get("body") or {}
    if body.get("content"):
        if body.get("contentType") == "text":
            description = body["content"]
        else:
            description = strip_html(body["content"])

    return CanonicalEvent(
        external_id=event_id,
        title=item.get("subject") or NO_TITLE,
        description=description,
        location=(item.get("location") or {}).get("displayName") or None,
        start=start,
        end=end,
        all_day=all_day,
        timezone=start_raw.get("timeZone"),
        recurrence_rule=build_rrule(item.get("recurrence")),
        recurring_event_id=item.get("seriesMasterId"),
        status=_map_show_as(item.get("showAs")),
        response_status=RESPONSES.get((item.get("responseStatus") or {}).get("response")),
        html_link=item.get("webLink"),
        etag=item.get("changeKey"),
    )


class OutlookAdapter:
    """Provider adapter for Outlook / Microsoft 365 calendars."""

    def __init__(self, config: ProviderConfig, timeout: float = 30.0):
        self._config = config
        self._timeout = timeout
        self._app = None  # Lazy init, MSAL performs authority discovery

    def _get_app(self):
        if self._app is not None:
            return self._app

        import msal

        self._app = msal.ConfidentialClientApplication(
            self._config.client_id,
            client_credential=self._config.client_secret,
            authority=f"https://login.microsoftonline.com/{self._config.tenant}",
            timeout=self._timeout,
        )
        return self._app

    # -- OAuth -----------------------------------------------------------

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        return self._get_app().get_authorization_request_url(
            SCOPES,
            state=state,
            redirect_uri=redirect_uri,
            response_mode="query",
        )

    @staticmethod
    def _tokens(result: dict[str, Any], fallback_refresh: str | None = None) -> OAuthTokens:
        expires_in = int(result.get("expires_in") or 3600)
        return OAuthTokens(
            access_token=result["access_token"],
            refresh_token=result.get("refresh_token") or fallback_refresh,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def _exchange_code_sync(self, code: str, redirect_uri: str) -> OAuthTokens:
        import requests

        try:
            result = self._get_app().acquire_token_by_authorization_code(
                code, scopes=SCOPES, redirect_uri=redirect_uri,
            )
        except (requests.RequestException, ValueError) as exc:
            raise CredentialExchangeError(f"Failed to exchange Outlook authorization code: {exc}") from exc

        if "access_token" not in result:
            raise CredentialExchangeError(
                f"Failed to exchange Outlook authorization code: "
                f"{result.get('error')}: {result.get('error_description', 'Unknown error')}"
            )
        return self._tokens(result)

    def _refresh_tokens_sync(self, refresh_token: str) -> OAuthTokens:
        import requests

        try:
            # Scopes are re-asserted; some tenants narrow them otherwise.
            result = self._get_app().acquire_token_by_refresh_token(refresh_token, scopes=SCOPES)
        except requests.RequestException as exc:
            raise ProviderUnreachableError(f"Microsoft token endpoint unreachable: {exc}") from exc

        if "access_token" not in result:
            error = result.get("error", "")
            message = f"Outlook token refresh failed: {error}: {result.get('error_description', 'Unknown error')}"
            if error in ("invalid_grant", "invalid_client", "unauthorized_client", "interaction_required"):
                raise CredentialInvalidError(message)
            raise ProviderError(message)

        logger.info("Outlook access token refreshed")
        return self._tokens(result, fallback_refresh=refresh_token)

    # -- Graph -----------------------------------------------------------

    def _get(self, url: str, access_token: str, params: dict[str, str] | None = None,
             token_in_use: bool = False) -> dict[str, Any]:
        import requests

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={PAGE_SIZE}',
        }
        try:
            resp = requests.get(url, headers=headers, params=params, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ProviderUnreachableError(f"Graph API unreachable: {exc}") from exc

        if resp.status_code == 200:
            return resp.json()

        detail = resp.text[:200]
        status = resp.status_code
        if token_in_use and status in (400, 410):
            raise ContinuationTokenInvalidError(f"Graph delta link rejected ({status}): {detail}", status)
        if status == 401:
            raise CredentialInvalidError(f"Graph rejected credentials ({status}): {detail}", status)
        if status == 429 or status >= 500:
            raise ProviderUnreachableError(f"Graph API unavailable ({status}): {detail}", status)
        # 403 is a per-resource denial, e.g. a shared calendar the user lost access to
        raise ProviderError(f"Graph API error ({status}): {detail}", status)

    def _get_profile_sync(self, access_token: str) -> AccountProfile:
        data = self._get(f"{GRAPH_URL}/me", access_token)
        return AccountProfile(
            id=data.get("id", ""),
            email=data.get("mail") or data.get("userPrincipalName") or "",
        )

    def _list_calendars_sync(self, access_token: str) -> list[ExternalCalendar]:
        calendars: list[ExternalCalendar] = []
        url = f"{GRAPH_URL}/me/calendars"
        while url:
            data = self._get(url, access_token)
            for item in data.get("value", []):
                calendars.append(ExternalCalendar(
                    external_id=item["id"],
                    name=item.get("name") or item["id"],
                    color=map_color(item.get("color")),
                    is_read_only=not item.get("canEdit", False),
                ))
            url = data.get("@odata.nextLink")
        return calendars

    def _list_events_sync(self, access_token: str, calendar_id: str, options: SyncOptions) -> SyncResult:
        token_in_use = bool(options.sync_token)
        params: dict[str, str] | None = None
        calendar_path = f"{GRAPH_URL}/me/calendars/{quote(calendar_id, safe='')}"
        if token_in_use:
            # The stored continuation is the full delta URL.
            url = options.sync_token
        elif options.has_window:
            url = f"{calendar_path}/calendarView/delta"
            params = {
                "startDateTime": to_utc(options.time_min).isoformat().replace("+00:00", "Z"),
                "endDateTime": to_utc(options.time_max).isoformat().replace("+00:00", "Z"),
            }
        else:
            url = f"{calendar_path}/events/delta"

        result = SyncResult()
        while url:
            data = self._get(url, access_token, params=params, token_in_use=token_in_use)
            params = None  # nextLink includes params

            for item in data.get("value", []):
                if "@removed" in item:
                    if item.get("id"):
                        result.add_deleted(item["id"])
                    continue
                try:
                    result.add_event(parse_outlook_event(item))
                except EventParseError as exc:
                    logger.warning("Skipping Outlook event in '%s': %s", calendar_id, exc)

            if data.get("@odata.deltaLink"):
                result.next_sync_token = data["@odata.deltaLink"]
            url = data.get("@odata.nextLink")

        logger.debug(
            "Outlook calendar '%s': %d changed, %d deleted",
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
