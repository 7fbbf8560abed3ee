"""Error taxonomy shared by the adapters, the orchestrator and the handshake."""

from __future__ import annotations

from enum import Enum

ERROR_MAX_LENGTH = 500


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class CredentialExchangeError(CalendarSyncError):
    """Authorization code could not be exchanged (bad code, redirect mismatch)."""


class ProviderError(CalendarSyncError):
    """A provider call failed.

    ``status_code`` is the HTTP status when one was received.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderUnreachableError(ProviderError):
    """Network failure, timeout or 5xx from the provider."""


class CredentialInvalidError(ProviderError):
    """Provider rejected the stored credentials (401-class); the user must reconnect."""


class ContinuationTokenInvalidError(ProviderError):
    """A stored sync token or delta link was rejected; caller should do a windowed resync."""


class EventParseError(CalendarSyncError):
    """A single provider record could not be normalized."""


class NotSupportedError(CalendarSyncError):
    """Operation not available for this provider (e.g. OAuth calls on CalDAV)."""


class CalDavValidationError(CalendarSyncError):
    """CalDAV credentials failed validation. The message is safe to show to the user."""


class SyncErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    VALIDATION_FAILED = "validation_failed"
    INTERNAL = "internal"


class AccountSyncError(CalendarSyncError):
    """Raised by ``SyncOrchestrator.sync_account`` when a pass fails."""

    def __init__(self, account_id: str, kind: SyncErrorKind, message: str):
        self.account_id = account_id
        self.kind = kind
        self.message = message
        super().__init__(f"Sync failed for account {account_id} ({kind.value}): {message}")


def classify_error(exc: BaseException) -> SyncErrorKind:
    """Map an exception raised during a sync pass onto a ``SyncErrorKind``."""
    if isinstance(exc, CredentialInvalidError):
        return SyncErrorKind.AUTH_EXPIRED
    if isinstance(exc, ProviderUnreachableError):
        return SyncErrorKind.PROVIDER_UNREACHABLE
    if isinstance(exc, CalDavValidationError):
        return SyncErrorKind.VALIDATION_FAILED
    return SyncErrorKind.INTERNAL


def truncate_error(message: str, limit: int = ERROR_MAX_LENGTH) -> str:
    """Collapse whitespace and cut ``message`` to at most ``limit`` characters."""
    normalized = " ".join(str(message).split()) or "Unknown error"
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(limit - 3, 0)] + "..."
