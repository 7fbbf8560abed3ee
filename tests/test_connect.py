"""Tests for the account connection handshake."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from calendar_sync_engine.backends.base import AccountProfile, ExternalCalendar, OAuthTokens
from calendar_sync_engine.connect import ConnectService
from calendar_sync_engine.errors import (
    CalDavValidationError,
    CredentialExchangeError,
    ProviderError,
    ProviderUnreachableError,
)
from calendar_sync_engine.models import Provider
from calendar_sync_engine.oauth_state import MemoryOAuthStateStore

UTC = timezone.utc


def _make_adapter() -> MagicMock:
    adapter = MagicMock()
    adapter.get_auth_url.side_effect = lambda state, redirect_uri: f"https://auth.example.com/?state={state}"
    adapter.exchange_code = AsyncMock(return_value=OAuthTokens(
        "access-1", "refresh-1", datetime.now(UTC) + timedelta(hours=1),
    ))
    adapter.get_profile = AsyncMock(return_value=AccountProfile(id="google-123", email="me@gmail.com"))
    adapter.list_calendars = AsyncMock(return_value=[
        ExternalCalendar("primary", "Me"),
        ExternalCalendar("holidays", "Holidays", is_read_only=True),
    ])
    adapter.validate_credentials = AsyncMock(return_value=[ExternalCalendar("https://dav/home/", "Home")])
    return adapter


@pytest.fixture
def adapter():
    return _make_adapter()


@pytest.fixture
def states():
    return MemoryOAuthStateStore()


@pytest.fixture
def queue():
    q = MagicMock()
    q.submit.return_value = True
    return q


@pytest.fixture
def service(store, cipher, states, queue, settings, adapter):
    settings.settings_url = "https://app.example.com/settings"
    return ConnectService(store, cipher, states, queue, settings, adapter_factory=lambda provider, s: adapter)


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ---------------------------------------------------------------------------
# start_oauth
# ---------------------------------------------------------------------------

class TestStartOAuth:
    def test_returns_url_with_stored_state(self, service, states, adapter, settings):
        start = service.start_oauth("user-1", "google")

        assert start.auth_url == f"https://auth.example.com/?state={start.state}"
        entry = states.validate(start.state)
        assert entry.user_id == "user-1"
        assert entry.provider == "google"
        adapter.get_auth_url.assert_called_once_with(start.state, settings.provider("google").redirect_uri)

    def test_each_start_gets_fresh_state(self, service):
        assert service.start_oauth("user-1", "outlook").state != service.start_oauth("user-1", "outlook").state

    def test_icloud_rejected(self, service):
        with pytest.raises(ValueError, match="does not use OAuth"):
            service.start_oauth("user-1", Provider.ICLOUD)

    def test_unknown_provider_rejected(self, service):
        with pytest.raises(ValueError):
            service.start_oauth("user-1", "yahoo")


# ---------------------------------------------------------------------------
# complete_oauth
# ---------------------------------------------------------------------------

class TestCompleteOAuth:
    async def test_success(self, service, store, cipher, states, queue, adapter):
        state = service.start_oauth("user-1", "google").state

        result = await service.complete_oauth("google", code="auth-code", state=state)

        assert result.ok
        assert _query(result.redirect_url) == {"calendar": "connected", "provider": "google"}
        assert result.redirect_url.startswith("https://app.example.com/settings?")
        account = store.get_account(result.account.id)
        assert account.user_id == "user-1"
        assert account.provider_account_id == "google-123"
        assert account.email == "me@gmail.com"
        assert cipher.decrypt(account.access_token_encrypted) == "access-1"
        assert cipher.decrypt(account.refresh_token_encrypted) == "refresh-1"
        assert [c.external_id for c in store.list_calendars(account.id)] == ["primary", "holidays"]
        queue.submit.assert_called_once_with(account.id)
        assert states.validate(state) is None
        adapter.exchange_code.assert_awaited_once_with("auth-code", "https://api.example.com/calendar/oauth/google/callback")

    async def test_state_is_single_use(self, service):
        state = service.start_oauth("user-1", "google").state
        assert (await service.complete_oauth("google", code="c", state=state)).ok

        replay = await service.complete_oauth("google", code="c", state=state)

        assert replay.error_code == "invalid_state"

    async def test_reconnect_updates_same_account(self, service, store, adapter):
        first = await service.complete_oauth("google", code="c", state=service.start_oauth("user-1", "google").state)
        adapter.exchange_code.return_value = OAuthTokens("access-2", None, datetime.now(UTC) + timedelta(hours=1))

        second = await service.complete_oauth("google", code="c", state=service.start_oauth("user-1", "google").state)

        assert second.account.id == first.account.id
        assert len(store.list_accounts("user-1")) == 1
        assert second.account.refresh_token_encrypted == first.account.refresh_token_encrypted

    async def test_provider_error(self, service, states, adapter):
        state = service.start_oauth("user-1", "google").state

        result = await service.complete_oauth(
            "google", state=state, error="access_denied", error_description="The user denied access",
        )

        assert result.error_code == "provider_error"
        assert _query(result.redirect_url) == {
            "calendar": "error", "code": "provider_error", "message": "The user denied access",
        }
        assert states.validate(state) is None
        adapter.exchange_code.assert_not_called()

    @pytest.mark.parametrize("state", [None, "", "forged"])
    async def test_invalid_state(self, service, adapter, state):
        result = await service.complete_oauth("google", code="c", state=state)
        assert result.error_code == "invalid_state"
        adapter.exchange_code.assert_not_called()

    async def test_expired_state(self, store, cipher, queue, settings, adapter):
        now = [0.0]
        states = MemoryOAuthStateStore(ttl_seconds=600, clock=lambda: now[0])
        service = ConnectService(store, cipher, states, queue, settings, adapter_factory=lambda p, s: adapter)
        state = service.start_oauth("user-1", "google").state
        now[0] = 601.0

        result = await service.complete_oauth("google", code="c", state=state)

        assert result.error_code == "invalid_state"

    async def test_state_consumed_by_concurrent_callback(self, service, states, adapter):
        state = service.start_oauth("user-1", "google").state
        entry = states.validate(state)
        assert states.delete(state) is True  # the other callback wins
        states.validate = MagicMock(return_value=entry)

        result = await service.complete_oauth("google", code="c", state=state)

        assert result.error_code == "invalid_state"
        adapter.exchange_code.assert_not_called()

    async def test_provider_mismatch(self, service, states, adapter):
        state = service.start_oauth("user-1", "google").state

        result = await service.complete_oauth("outlook", code="c", state=state)

        assert result.error_code == "provider_mismatch"
        assert states.validate(state) is None
        adapter.exchange_code.assert_not_called()

    async def test_missing_code(self, service, adapter):
        state = service.start_oauth("user-1", "google").state
        result = await service.complete_oauth("google", code=None, state=state)
        assert result.error_code == "missing_code"
        adapter.exchange_code.assert_not_called()

    @pytest.mark.parametrize("exc, code", [
        (CredentialExchangeError("invalid_grant"), "credential_exchange_failed"),
        (ProviderUnreachableError("timeout"), "provider_unreachable"),
        (ProviderError("500"), "handshake_failed"),
    ])
    async def test_exchange_failures(self, service, store, queue, adapter, exc, code):
        adapter.exchange_code.side_effect = exc
        state = service.start_oauth("user-1", "google").state

        result = await service.complete_oauth("google", code="c", state=state)

        assert result.error_code == code
        assert store.list_accounts() == []
        queue.submit.assert_not_called()

    async def test_profile_without_email(self, service, store, adapter):
        adapter.get_profile.return_value = AccountProfile(id="x", email="")
        state = service.start_oauth("user-1", "outlook").state

        result = await service.complete_oauth("outlook", code="c", state=state)

        assert result.error_code == "profile_unavailable"
        assert store.list_accounts() == []

    async def test_calendar_listing_failure(self, service, store, queue, adapter):
        adapter.list_calendars.side_effect = ProviderUnreachableError("timeout")
        state = service.start_oauth("user-1", "google").state

        result = await service.complete_oauth("google", code="c", state=state)

        assert result.error_code == "calendar_list_failed"
        assert len(store.list_accounts()) == 1
        queue.submit.assert_not_called()


# ---------------------------------------------------------------------------
# connect_caldav
# ---------------------------------------------------------------------------

class TestConnectCalDav:
    async def test_success(self, service, store, cipher, queue, adapter):
        account = await service.connect_caldav("user-1", "me@icloud.com", "abcd-efgh-ijkl-mnop")

        assert account.provider is Provider.ICLOUD
        assert account.provider_account_id == "me@icloud.com"
        assert cipher.decrypt(account.caldav_password_encrypted) == "abcd-efgh-ijkl-mnop"
        assert account.access_token_encrypted is None
        assert [c.external_id for c in store.list_calendars(account.id)] == ["https://dav/home/"]
        queue.submit.assert_called_once_with(account.id)
        creds = adapter.validate_credentials.call_args.args[0]
        assert creds.username == "me@icloud.com"
        assert creds.server_url is None

    async def test_custom_server(self, service, adapter):
        account = await service.connect_caldav("user-1", "me", "pw", "https://dav.example.com")
        assert account.caldav_url == "https://dav.example.com"
        assert adapter.validate_credentials.call_args.args[0].server_url == "https://dav.example.com"

    async def test_validation_failure_stores_nothing(self, service, store, queue, adapter):
        adapter.validate_credentials.side_effect = CalDavValidationError("Invalid credentials.")

        with pytest.raises(CalDavValidationError, match="Invalid credentials"):
            await service.connect_caldav("user-1", "me@icloud.com", "wrong")

        assert store.list_accounts() == []
        queue.submit.assert_not_called()
