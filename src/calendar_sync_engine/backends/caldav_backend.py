"""CalDAV backend (iCloud and other CalDAV servers)."""

from __future__ import annotations

import asyncio
import logging

from ..config import DEFAULT_ICLOUD_URL
from ..errors import (
    CalDavValidationError,
    CredentialInvalidError,
    EventParseError,
    NotSupportedError,
    ProviderError,
    ProviderUnreachableError,
)
from .base import (
    AccountProfile,
    CalDavCredentials,
    ExternalCalendar,
    OAuthTokens,
    SyncOptions,
    SyncResult,
    to_utc,
)
from .ical import parse_vevent

logger = logging.getLogger("calendar-sync-engine")

UNNAMED_CALENDAR = "Unnamed Calendar"
NO_CALENDARS_MESSAGE = "No calendars found. Check your Apple ID and app-specific password."
INVALID_CREDENTIALS_MESSAGE = (
    "Invalid credentials. Make sure you are using an app-specific password, not your Apple ID password."
)


class ICloudAdapter:
    """Provider adapter for iCloud calendars over CalDAV with Basic auth."""

    def __init__(self, server_url: str = DEFAULT_ICLOUD_URL, timeout: float = 30.0):
        self._server_url = server_url
        self._timeout = timeout

    def _client(self, credentials: CalDavCredentials):
        import caldav

        return caldav.DAVClient(
            url=credentials.server_url or self._server_url,
            username=credentials.username,
            password=credentials.password,
            timeout=self._timeout,
        )

    def _call(self, fn, *args):
        """Run a caldav call, translating its errors."""
        from caldav.lib.error import AuthorizationError, DAVError

        try:
            return fn(*args)
        except AuthorizationError as exc:
            raise CredentialInvalidError(f"CalDAV server rejected credentials: {exc}", 401) from exc
        except DAVError as exc:
            raise ProviderError(f"CalDAV request failed: {exc}") from exc
        except OSError as exc:
            raise ProviderUnreachableError(f"CalDAV server unreachable: {exc}") from exc

    # -- OAuth-only operations --------------------------------------------

    def get_auth_url(self, state: str, redirect_uri: str) -> str:
        raise NotSupportedError("iCloud uses app-specific passwords, not OAuth")

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        raise NotSupportedError("iCloud uses app-specific passwords, not OAuth")

    async def refresh_tokens(self, refresh_token: str) -> OAuthTokens:
        raise NotSupportedError("iCloud credentials do not expire")

    async def get_profile(self, access_token: str) -> AccountProfile:
        raise NotSupportedError("iCloud accounts are identified by their Apple ID")

    # -- Calendars ------------------------------------------------------

    def _list_calendars_sync(self, credentials: CalDavCredentials) -> list[ExternalCalendar]:
        from caldav.elements import dav, ical

        principal = self._client(credentials).principal()
        result = []
        for cal in principal.calendars():
            props = cal.get_properties([dav.DisplayName(), ical.CalendarColor()])
            color = props.get(ical.CalendarColor.tag)
            if color and len(color) == 9 and color.startswith("#"):
                color = color[:7]  # Apple appends an alpha channel
            result.append(ExternalCalendar(
                external_id=str(cal.url),
                name=props.get(dav.DisplayName.tag) or UNNAMED_CALENDAR,
                color=color or None,
                is_read_only=False,
            ))
        return result

    def _validate_sync(self, credentials: CalDavCredentials) -> list[ExternalCalendar]:
        try:
            calendars = self._call(self._list_calendars_sync, credentials)
        except CredentialInvalidError as exc:
            raise CalDavValidationError(INVALID_CREDENTIALS_MESSAGE) from exc
        if not calendars:
            raise CalDavValidationError(NO_CALENDARS_MESSAGE)
        logger.info("CalDAV credentials validated: %d calendar(s)", len(calendars))
        return calendars

    def _list_events_sync(self, credentials: CalDavCredentials, calendar_url: str, options: SyncOptions) -> SyncResult:
        import caldav
        from caldav.elements import dav

        cal = caldav.Calendar(client=self._client(credentials), url=calendar_url)
        if options.has_window:
            objects = cal.search(
                start=to_utc(options.time_min),
                end=to_utc(options.time_max),
                event=True,
                expand=False,
                props=[dav.GetEtag()],
            )
        else:
            objects = cal.search(event=True, props=[dav.GetEtag()])

        # CalDAV has no change feed here: no token, no deletions
        result = SyncResult()
        for obj in objects:
            etag = (getattr(obj, "props", None) or {}).get(dav.GetEtag.tag)
            try:
                event = parse_vevent(obj.data, etag=etag)
            except EventParseError as exc:
                logger.warning("Skipping CalDAV object %s: %s", getattr(obj, "url", "?"), exc)
                continue
            if event is not None:
                result.add_event(event)
        logger.debug("CalDAV calendar '%s': %d events", calendar_url, len(result.events))
        return result

    async def validate_credentials(self, credentials: CalDavCredentials) -> list[ExternalCalendar]:
        """Log in and list calendars; raise CalDavValidationError with a user-facing hint."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._validate_sync, credentials)

    async def list_calendars(self, credential: CalDavCredentials) -> list[ExternalCalendar]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._call, self._list_calendars_sync, credential)

    async def list_events(self, credential: CalDavCredentials, calendar_id: str, options: SyncOptions) -> SyncResult:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, self._call, self._list_events_sync, credential, calendar_id, options,
        )
