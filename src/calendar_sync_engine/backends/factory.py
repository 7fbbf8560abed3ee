"""Adapter factory keyed by provider."""

from __future__ import annotations

from ..config import DEFAULT_ICLOUD_URL, Settings
from ..models import Provider
from .base import CalendarAdapter


def create_adapter(provider: Provider | str, settings: Settings) -> CalendarAdapter:
    """Create the adapter for ``provider``. SDK imports stay lazy."""
    provider = Provider(provider)
    timeout = settings.sync.http_timeout

    if provider is Provider.GOOGLE:
        from .google import GoogleAdapter
        return GoogleAdapter(settings.provider("google"), timeout=timeout)
    elif provider is Provider.OUTLOOK:
        from .outlook import OutlookAdapter
        return OutlookAdapter(settings.provider("outlook"), timeout=timeout)
    elif provider is Provider.ICLOUD:
        from .caldav_backend import ICloudAdapter
        icloud = settings.providers.get("icloud")
        return ICloudAdapter(icloud.server_url if icloud else DEFAULT_ICLOUD_URL, timeout=timeout)
    else:
        raise ValueError(f"Unknown provider: {provider}")
