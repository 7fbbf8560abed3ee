"""Account connection handshake: OAuth authorize/callback and CalDAV credentials."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from .backends.base import CalDavCredentials
from .backends.factory import create_adapter
from .config import Settings
from .crypto import CredentialCipher
from .errors import CalendarSyncError, CredentialExchangeError, ProviderUnreachableError
from .jobs import SyncQueue
from .models import CalendarAccount, Provider
from .oauth_state import OAuthStateStore
from .store import SyncStore
from .sync import AdapterFactory

logger = logging.getLogger("calendar-sync-engine")


@dataclass
class OAuthStart:
    auth_url: str
    state: str


@dataclass
class ConnectResult:
    """Outcome of a handshake. ``redirect_url`` is where the browser goes next."""

    redirect_url: str
    account: CalendarAccount | None = None
    error_code: str | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


class ConnectService:
    def __init__(
        self,
        store: SyncStore,
        cipher: CredentialCipher,
        state_store: OAuthStateStore,
        queue: SyncQueue,
        settings: Settings,
        adapter_factory: AdapterFactory = create_adapter,
    ):
        self._store = store
        self._cipher = cipher
        self._states = state_store
        self._queue = queue
        self._settings = settings
        self._adapter_factory = adapter_factory

    def _oauth_provider(self, provider: Provider | str) -> Provider:
        provider = Provider(provider)
        if not provider.uses_oauth:
            raise ValueError(f"Provider '{provider.value}' does not use OAuth")
        return provider

    def _error(self, code: str, message: str) -> ConnectResult:
        query = urlencode({"calendar": "error", "code": code, "message": message})
        return ConnectResult(f"{self._settings.settings_url}?{query}", error_code=code, message=message)

    def _connected(self, provider: Provider, account: CalendarAccount) -> ConnectResult:
        query = urlencode({"calendar": "connected", "provider": provider.value})
        return ConnectResult(f"{self._settings.settings_url}?{query}", account=account)

    def start_oauth(self, user_id: str, provider: Provider | str) -> OAuthStart:
        """Create a state token and the provider authorization URL."""
        provider = self._oauth_provider(provider)
        config = self._settings.provider(provider.value)
        adapter = self._adapter_factory(provider, self._settings)
        state = self._states.create(user_id, provider.value)
        auth_url = adapter.get_auth_url(state, config.redirect_uri)
        logger.info("%s OAuth started for user %s (state=%s...)", provider.value, user_id, state[:8])
        return OAuthStart(auth_url=auth_url, state=state)

    async def complete_oauth(
        self,
        provider: Provider | str,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> ConnectResult:
        """Handle the provider callback and return the redirect to the settings page."""
        provider = self._oauth_provider(provider)

        if error:
            logger.error("%s OAuth provider error: %s - %s", provider.value, error, error_description)
            if state:
                self._states.delete(state)
            return self._error("provider_error", error_description or error)

        stored = self._states.validate(state) if state else None
        if stored is None:
            logger.warning("OAuth callback received invalid or expired state token")
            return self._error("invalid_state", "Invalid or expired state. Please try again.")
        if not self._states.delete(state):
            # another callback consumed the same state first
            logger.warning("OAuth callback state token was already consumed")
            return self._error("invalid_state", "Invalid or expired state. Please try again.")
        if stored.provider != provider.value:
            logger.warning("OAuth callback provider mismatch: state for %s, callback for %s",
                           stored.provider, provider.value)
            return self._error("provider_mismatch", "Provider mismatch. Please try again.")
        if not code:
            return self._error("missing_code", "No authorization code received.")

        config = self._settings.provider(provider.value)
        adapter = self._adapter_factory(provider, self._settings)
        try:
            tokens = await adapter.exchange_code(code, config.redirect_uri)
            profile = await adapter.get_profile(tokens.access_token)
        except CredentialExchangeError as e:
            logger.error("%s code exchange failed: %s", provider.value, e)
            return self._error("credential_exchange_failed", str(e))
        except ProviderUnreachableError as e:
            logger.error("%s unreachable during handshake: %s", provider.value, e)
            return self._error("provider_unreachable", str(e))
        except CalendarSyncError as e:
            logger.error("%s handshake failed: %s", provider.value, e)
            return self._error("handshake_failed", str(e))

        if not profile.email or not profile.id:
            return self._error("profile_unavailable", "Could not determine account email")

        account = self._store.upsert_account(
            user_id=stored.user_id,
            provider=provider,
            provider_account_id=profile.id,
            email=profile.email,
            access_token_encrypted=self._cipher.encrypt(tokens.access_token),
            refresh_token_encrypted=self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            token_expires_at=tokens.expires_at,
        )

        try:
            external = await adapter.list_calendars(tokens.access_token)
        except CalendarSyncError as e:
            logger.error("%s calendar listing failed for account %s: %s", provider.value, account.id, e)
            return self._error("calendar_list_failed", str(e))
        self._store.upsert_calendars(account, external)

        self._queue.submit(account.id)
        logger.info("Connected %s account %s for user %s", provider.value, account.id, stored.user_id)
        return self._connected(provider, account)

    async def connect_caldav(
        self,
        user_id: str,
        email: str,
        app_password: str,
        caldav_url: str | None = None,
    ) -> CalendarAccount:
        """Validate iCloud credentials, store the account and its calendars, queue a sync.

        Raises CalDavValidationError with a message meant for the user.
        """
        adapter = self._adapter_factory(Provider.ICLOUD, self._settings)
        credentials = CalDavCredentials(username=email, password=app_password, server_url=caldav_url or None)
        external = await adapter.validate_credentials(credentials)

        account = self._store.upsert_account(
            user_id=user_id,
            provider=Provider.ICLOUD,
            provider_account_id=email,
            email=email,
            caldav_password_encrypted=self._cipher.encrypt(app_password),
            caldav_url=caldav_url or None,
        )
        self._store.upsert_calendars(account, external)
        self._queue.submit(account.id)
        logger.info("Connected icloud account %s for user %s (%d calendars)", account.id, user_id, len(external))
        return account
