"""Shared fixtures: a temporary SQLite store, a Fernet cipher and test settings."""

from datetime import datetime, timedelta, timezone

import pytest

from calendar_sync_engine.backends.base import CanonicalEvent, ExternalCalendar
from calendar_sync_engine.config import ProviderConfig, Settings
from calendar_sync_engine.crypto import FernetCipher
from calendar_sync_engine.models import Provider
from calendar_sync_engine.store import SyncStore


@pytest.fixture
def store(tmp_path):
    s = SyncStore(tmp_path / "sync.db")
    s.connect()
    yield s
    s.close()


@pytest.fixture
def cipher():
    return FernetCipher(FernetCipher.generate_key())


@pytest.fixture
def settings(tmp_path):
    return Settings(
        providers={
            "google": ProviderConfig(
                name="google",
                client_id="google-client",
                client_secret="google-secret",
                redirect_uri="https://api.example.com/calendar/oauth/google/callback",
            ),
            "outlook": ProviderConfig(
                name="outlook",
                client_id="ms-client",
                client_secret="ms-secret",
                redirect_uri="https://api.example.com/calendar/oauth/outlook/callback",
            ),
            "icloud": ProviderConfig(name="icloud"),
        },
        database_path=str(tmp_path / "sync.db"),
    )


def make_event(
    external_id: str = "evt-1",
    title: str = "Team Meeting",
    start: datetime | None = None,
    end: datetime | None = None,
    **kwargs,
) -> CanonicalEvent:
    start = start or datetime(2026, 2, 13, 14, 0, tzinfo=timezone.utc)
    return CanonicalEvent(
        external_id=external_id,
        title=title,
        start=start,
        end=end or start + timedelta(hours=1),
        **kwargs,
    )


def make_account(
    store: SyncStore,
    cipher: FernetCipher,
    provider: Provider = Provider.GOOGLE,
    user_id: str = "user-1",
    provider_account_id: str = "acct-1",
    email: str = "user@example.com",
    expires_at: datetime | None = None,
):
    if provider is Provider.ICLOUD:
        return store.upsert_account(
            user_id=user_id,
            provider=provider,
            provider_account_id=email,
            email=email,
            caldav_password_encrypted=cipher.encrypt("app-pass"),
        )
    return store.upsert_account(
        user_id=user_id,
        provider=provider,
        provider_account_id=provider_account_id,
        email=email,
        access_token_encrypted=cipher.encrypt("access-1"),
        refresh_token_encrypted=cipher.encrypt("refresh-1"),
        token_expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
    )


def make_calendars(store: SyncStore, account, *external_ids: str):
    return store.upsert_calendars(
        account,
        [ExternalCalendar(external_id=e, name=f"Calendar {e}") for e in (external_ids or ("primary",))],
    )
