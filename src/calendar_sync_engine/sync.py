"""Sync orchestrator: one pass imports every enabled calendar of an account."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, runtime_checkable

from .backends.base import CalDavCredentials, CalendarAdapter, Credential, SyncOptions, SyncResult
from .backends.factory import create_adapter
from .config import Settings
from .crypto import CredentialCipher
from .errors import (
    AccountSyncError,
    ContinuationTokenInvalidError,
    CredentialInvalidError,
    classify_error,
    truncate_error,
)
from .models import Calendar, CalendarAccount, Provider, SyncStatus, SyncSummary, SyncWindow
from .store import SyncStore

logger = logging.getLogger("calendar-sync-engine")

SYNCED_EVENT = "calendar:synced"
SYNC_FAILED_EVENT = "calendar:sync_failed"

AdapterFactory = Callable[[Provider, Settings], CalendarAdapter]


@runtime_checkable
class Notifier(Protocol):
    def publish(self, user_id: str, event: str, payload: dict[str, Any]) -> None: ...


class LogNotifier:
    """Notifier that only logs. Stands in for a realtime broadcaster."""

    def publish(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info("notify user=%s %s %s", user_id, event, payload)


class SyncOrchestrator:
    """Runs sync passes: fetch through the provider adapter, apply to the store, persist tokens."""

    def __init__(
        self,
        store: SyncStore,
        cipher: CredentialCipher,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        adapter_factory: AdapterFactory = create_adapter,
    ):
        self._store = store
        self._cipher = cipher
        self._notifier = notifier or LogNotifier()
        self._settings = settings or Settings()
        self._adapter_factory = adapter_factory

    def _window(self) -> SyncWindow:
        return SyncWindow.around(
            days_past=self._settings.sync.days_past,
            days_future=self._settings.sync.days_future,
        )

    def _publish(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self._notifier.publish(user_id, event, payload)
        except Exception as e:
            logger.warning("Failed to publish %s for user %s: %s", event, user_id, e)

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def _resolve_credential(self, adapter: CalendarAdapter, account: CalendarAccount) -> Credential:
        """Decrypt the stored credential, refreshing OAuth tokens that are about to expire."""
        if account.provider is Provider.ICLOUD:
            if not account.caldav_password_encrypted:
                raise CredentialInvalidError(f"Account {account.id} has no stored app-specific password")
            return CalDavCredentials(
                username=account.email,
                password=self._cipher.decrypt(account.caldav_password_encrypted),
                server_url=account.caldav_url,
            )

        if not account.access_token_encrypted:
            raise CredentialInvalidError(f"Account {account.id} has no stored access token")
        if not account.token_expired():
            return self._cipher.decrypt(account.access_token_encrypted)
        if not account.refresh_token_encrypted:
            raise CredentialInvalidError(f"Access token for account {account.id} expired and no refresh token is stored")

        tokens = await adapter.refresh_tokens(self._cipher.decrypt(account.refresh_token_encrypted))
        self._store.update_account_tokens(
            account.id,
            self._cipher.encrypt(tokens.access_token),
            self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            tokens.expires_at,
        )
        return tokens.access_token

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def discover_calendars(self, account: CalendarAccount) -> list[Calendar]:
        """Fetch the account's calendar list and merge it into the store."""
        adapter = self._adapter_factory(account.provider, self._settings)
        credential = await self._resolve_credential(adapter, account)
        external = await adapter.list_calendars(credential)
        calendars = self._store.upsert_calendars(account, external)
        logger.info("Account %s: %d calendar(s) discovered", account.id, len(calendars))
        return calendars

    async def _fetch(
        self, adapter: CalendarAdapter, credential: Credential, calendar: Calendar, window: SyncWindow
    ) -> SyncResult:
        if calendar.sync_token:
            try:
                return await adapter.list_events(
                    credential, calendar.external_id, SyncOptions(sync_token=calendar.sync_token)
                )
            except ContinuationTokenInvalidError as e:
                logger.info("Calendar %s: continuation token rejected (%s), resyncing window", calendar.id, e)
                self._store.set_calendar_sync_token(calendar.id, None)

        return await adapter.list_events(
            credential,
            calendar.external_id,
            SyncOptions(time_min=window.start, time_max=window.end),
        )

    # ------------------------------------------------------------------
    # Sync pass
    # ------------------------------------------------------------------

    async def sync_account(
        self,
        account: CalendarAccount,
        calendars: list[Calendar],
        window: SyncWindow | None = None,
    ) -> SyncSummary | None:
        """Run one sync pass for ``account``.

        Returns None without side effects when the account is inactive or a
        pass is already running. Raises AccountSyncError on failure, after
        recording the error on the account.
        """
        if not account.is_active:
            logger.info("Account %s is inactive, skipping sync", account.id)
            return None
        if not self._store.begin_sync(account.id):
            logger.info("Account %s is already syncing, skipping", account.id)
            return None

        account = self._store.get_account(account.id) or account
        window = window or self._window()
        upserted = deleted = 0

        try:
            adapter = self._adapter_factory(account.provider, self._settings)
            credential = await self._resolve_credential(adapter, account)

            outcomes = await asyncio.gather(
                *(self._fetch(adapter, credential, cal, window) for cal in calendars),
                return_exceptions=True,
            )

            # Apply in calendar order; a token is only stored after its data.
            failure: BaseException | None = None
            for cal, outcome in zip(calendars, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning("Account %s: fetching calendar %s failed: %s", account.id, cal.id, outcome)
                    failure = failure or outcome
                    continue
                upserted += self._store.upsert_events(account.user_id, cal.id, outcome.events)
                deleted += self._store.delete_events_by_external_id(
                    account.user_id, outcome.deleted, calendar_id=cal.id
                )
                if outcome.next_sync_token is not None:
                    self._store.set_calendar_sync_token(cal.id, outcome.next_sync_token)

            if failure is not None:
                raise failure
        except Exception as e:
            self._fail(account, e)

        self._store.finish_sync(account.id, SyncStatus.IDLE, None, synced_at=datetime.now(timezone.utc))
        logger.info("Account %s synced: %d upserted, %d deleted", account.id, upserted, deleted)
        self._publish(account.user_id, SYNCED_EVENT, {
            "accountId": account.id,
            "upserted": upserted,
            "deleted": deleted,
        })
        return SyncSummary(account_id=account.id, events_count=upserted, deleted_count=deleted)

    def _fail(self, account: CalendarAccount, exc: Exception):
        kind = classify_error(exc)
        message = truncate_error(str(exc), self._settings.sync.error_max_length)
        self._store.finish_sync(account.id, SyncStatus.ERROR, message)
        if isinstance(exc, CredentialInvalidError):
            self._store.deactivate_account(account.id)
        logger.error("Account %s sync failed (%s): %s", account.id, kind.value, message)
        self._publish(account.user_id, SYNC_FAILED_EVENT, {
            "accountId": account.id,
            "kind": kind.value,
            "error": message,
        })
        raise AccountSyncError(account.id, kind, message) from exc
