#!/usr/bin/env python3
"""
calendar-sync-engine: Calendar account sync MCP server.

Connects Google, Outlook and iCloud calendar accounts and keeps their events
imported into a local store. Backends: Google Calendar API, Microsoft Graph, CalDAV.

Environment variables:
    CALENDAR_SYNC_CONFIG: Path to calendar_sync.yaml (default: /config/calendar_sync.yaml)
    CALENDAR_SYNC_ENCRYPTION_KEY: Fernet key for credentials at rest (name configurable)
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from mcp.server.fastmcp import FastMCP

from .config import Settings, load_config
from .connect import ConnectService
from .crypto import FernetCipher
from .errors import AccountSyncError, CalendarSyncError
from .jobs import SyncQueue, run_periodic_check, run_sync_check
from .models import Calendar, CalendarAccount
from .oauth_state import OAuthStateStore, SqliteOAuthStateStore, sweep_expired_states
from .store import SyncStore
from .sync import LogNotifier, SyncOrchestrator

# MCP stdio servers must NEVER write to stdout, log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("calendar-sync-engine")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_settings: Settings = Settings()
_store: SyncStore | None = None
_states: OAuthStateStore | None = None
_orchestrator: SyncOrchestrator | None = None
_queue: SyncQueue | None = None
_connect: ConnectService | None = None


def _init_engine(settings: Settings) -> None:
    """Open the database and wire the engine components."""
    global _settings, _store, _states, _orchestrator, _queue, _connect

    cipher = FernetCipher.from_env(settings.encryption_key_env)
    _settings = settings
    _store = SyncStore(settings.database_path)
    _store.connect()
    _states = SqliteOAuthStateStore(settings.database_path, ttl_seconds=settings.state_ttl_seconds)
    _states.connect()
    _orchestrator = SyncOrchestrator(_store, cipher, LogNotifier(), settings)
    _queue = SyncQueue(_orchestrator, _store, concurrency=settings.sync.concurrency)
    _connect = ConnectService(_store, cipher, _states, _queue, settings)


def _check_ready() -> dict | None:
    """Return error dict if the engine is not initialized, None if ready."""
    if _store is None or _connect is None:
        return {"error": "Sync engine not initialized. Check CALENDAR_SYNC_CONFIG and the encryption key."}
    return None


def _account_to_dict(account: CalendarAccount) -> dict[str, Any]:
    """Convert CalendarAccount to JSON-friendly dict. Never includes credentials."""
    return {
        "id": account.id,
        "user_id": account.user_id,
        "provider": account.provider.value,
        "email": account.email,
        "sync_status": account.sync_status.value,
        "sync_error": account.sync_error,
        "is_active": account.is_active,
        "last_synced_at": account.last_synced_at.isoformat() if account.last_synced_at else None,
    }


def _calendar_to_dict(calendar: Calendar) -> dict[str, Any]:
    return {
        "id": calendar.id,
        "account_id": calendar.account_id,
        "external_id": calendar.external_id,
        "name": calendar.name,
        "color": calendar.color,
        "is_read_only": calendar.is_read_only,
        "is_enabled": calendar.is_enabled,
        "events": _store.count_events(calendar.id),
    }


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(server: FastMCP):
    """Run queue workers, the OAuth state sweep and the periodic sync check."""
    tasks: list[asyncio.Task] = []
    if _queue is not None:
        _store.reset_interrupted_syncs()
        _queue.start()
        tasks.append(asyncio.create_task(sweep_expired_states(_states, _settings.state_sweep_seconds)))
        tasks.append(asyncio.create_task(run_periodic_check(
            _store,
            _queue,
            interval=timedelta(minutes=_settings.sync.interval_minutes),
            check_every=_settings.sync.check_interval_seconds,
        )))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if _queue is not None:
            await _queue.stop()


mcp = FastMCP("calendar-sync", lifespan=lifespan)


@mcp.tool()
async def list_accounts(user_id: str) -> dict:
    """List connected calendar accounts for a user.

    Args:
        user_id: Local user id
    """
    err = _check_ready()
    if err:
        return err
    return {"accounts": [_account_to_dict(a) for a in _store.list_accounts(user_id)]}


@mcp.tool()
async def list_calendars(account_id: str) -> dict:
    """List the calendars of one connected account.

    Args:
        account_id: Account id (from list_accounts)
    """
    err = _check_ready()
    if err:
        return err
    if _store.get_account(account_id) is None:
        return {"error": f"Unknown account: {account_id}"}
    return {"calendars": [_calendar_to_dict(c) for c in _store.list_calendars(account_id)]}


@mcp.tool()
async def refresh_calendars(account_id: str) -> dict:
    """Re-fetch the calendar list of an account from its provider.

    Args:
        account_id: Account id (from list_accounts)
    """
    err = _check_ready()
    if err:
        return err
    account = _store.get_account(account_id)
    if account is None:
        return {"error": f"Unknown account: {account_id}"}
    try:
        calendars = await _orchestrator.discover_calendars(account)
    except CalendarSyncError as e:
        return {"error": f"Failed to fetch calendars: {e}"}
    return {"calendars": [_calendar_to_dict(c) for c in calendars]}


@mcp.tool()
async def set_calendar_enabled(calendar_id: str, enabled: bool) -> dict:
    """Enable or disable syncing for one calendar.

    Args:
        calendar_id: Calendar id (from list_calendars)
        enabled: True to include the calendar in sync passes
    """
    err = _check_ready()
    if err:
        return err
    calendar = _store.set_calendar_enabled(calendar_id, enabled)
    if calendar is None:
        return {"error": f"Unknown calendar: {calendar_id}"}
    return {"success": True, "calendar": _calendar_to_dict(calendar)}


@mcp.tool()
async def start_oauth(user_id: str, provider: str) -> dict:
    """Start connecting a Google or Outlook account.

    Returns the authorization URL to open in the browser.

    Args:
        user_id: Local user id
        provider: "google" or "outlook"
    """
    err = _check_ready()
    if err:
        return err
    try:
        start = _connect.start_oauth(user_id, provider)
    except ValueError as e:
        return {"error": str(e)}
    except CalendarSyncError as e:
        return {"error": f"Failed to start OAuth: {e}"}
    return {"auth_url": start.auth_url, "state": start.state}


@mcp.tool()
async def complete_oauth(
    provider: str,
    code: str = "",
    state: str = "",
    error: str = "",
    error_description: str = "",
) -> dict:
    """Finish an OAuth connection with the parameters of the provider callback.

    Returns the settings-page redirect URL; an initial sync is queued on success.

    Args:
        provider: "google" or "outlook"
        code: Authorization code from the callback
        state: State token from the callback
        error: Provider error code, if the user denied access
        error_description: Provider error description
    """
    err = _check_ready()
    if err:
        return err
    try:
        result = await _connect.complete_oauth(
            provider,
            code=code or None,
            state=state or None,
            error=error or None,
            error_description=error_description or None,
        )
    except ValueError as e:
        return {"error": str(e)}
    if not result.ok:
        return {"error": result.message, "code": result.error_code, "redirect_url": result.redirect_url}
    return {
        "success": True,
        "redirect_url": result.redirect_url,
        "account": _account_to_dict(result.account),
    }


@mcp.tool()
async def connect_icloud(user_id: str, email: str, app_password: str, caldav_url: str = "") -> dict:
    """Connect an iCloud calendar account with an app-specific password.

    Args:
        user_id: Local user id
        email: Apple ID email
        app_password: App-specific password (not the Apple ID password)
        caldav_url: CalDAV server URL (optional, default iCloud)
    """
    err = _check_ready()
    if err:
        return err
    try:
        account = await _connect.connect_caldav(user_id, email, app_password, caldav_url or None)
    except CalendarSyncError as e:
        return {"error": str(e)}
    return {
        "success": True,
        "account": _account_to_dict(account),
        "calendars": len(_store.list_calendars(account.id)),
    }


@mcp.tool()
async def sync_account(account_id: str) -> dict:
    """Run a sync pass for one account now and report the counts.

    Args:
        account_id: Account id (from list_accounts)
    """
    err = _check_ready()
    if err:
        return err
    account = _store.get_account(account_id)
    if account is None:
        return {"error": f"Unknown account: {account_id}"}
    try:
        summary = await _orchestrator.sync_account(account, _store.list_enabled_calendars(account_id))
    except AccountSyncError as e:
        return {"error": e.message, "kind": e.kind.value}
    if summary is None:
        return {"skipped": True, "reason": "Account is inactive or already syncing"}
    return {"success": True, "upserted": summary.events_count, "deleted": summary.deleted_count}


@mcp.tool()
async def sync_due_accounts() -> dict:
    """Queue a background sync for every account that is due."""
    err = _check_ready()
    if err:
        return err
    interval = timedelta(minutes=_settings.sync.interval_minutes)
    submitted = run_sync_check(_store, _queue, interval)
    return {"submitted": submitted, "count": len(submitted)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run_check_once() -> None:
    """Sync every due account once and wait for the queue to drain."""
    _store.reset_interrupted_syncs()
    _queue.start()
    try:
        run_sync_check(_store, _queue, timedelta(minutes=_settings.sync.interval_minutes))
        await _queue.join()
    finally:
        await _queue.stop()
    if _queue.failures:
        logger.warning("%d account(s) failed: %s", len(_queue.failures), sorted(_queue.failures))


def main():
    """Entry point for console script and python -m."""
    settings = load_config()
    if not settings.providers:
        logger.warning("No providers configured. Check CALENDAR_SYNC_CONFIG.")
    try:
        _init_engine(settings)
    except ValueError as e:
        logger.error("Cannot start sync engine: %s", e)
        sys.exit(1)
    logger.info("Providers configured: %s", sorted(settings.providers))

    # One-shot scheduler pass, e.g. from cron
    if "--check" in sys.argv:
        asyncio.run(_run_check_once())
        return

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
