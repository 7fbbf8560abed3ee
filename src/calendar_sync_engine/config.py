"""YAML configuration loading for the sync engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .models import DEFAULT_DAYS_FUTURE, DEFAULT_DAYS_PAST

logger = logging.getLogger("calendar-sync-engine")

CONFIG_PATH = os.environ.get("CALENDAR_SYNC_CONFIG", "/config/calendar_sync.yaml")

VALID_PROVIDERS = {"google", "outlook", "icloud"}
OAUTH_PROVIDERS = {"google", "outlook"}

DEFAULT_ICLOUD_URL = "https://caldav.icloud.com"


@dataclass
class ProviderConfig:
    """Credentials and endpoints for one provider."""

    name: str  # google, outlook, icloud
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    tenant: str = "common"  # outlook only
    server_url: str = DEFAULT_ICLOUD_URL  # icloud only


@dataclass
class SyncSettings:
    days_past: int = DEFAULT_DAYS_PAST
    days_future: int = DEFAULT_DAYS_FUTURE
    interval_minutes: int = 15
    check_interval_seconds: int = 300
    concurrency: int = 5
    http_timeout: float = 30.0
    error_max_length: int = 500


@dataclass
class Settings:
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    sync: SyncSettings = field(default_factory=SyncSettings)
    database_path: str = "/data/calendar_sync.db"
    encryption_key_env: str = "CALENDAR_SYNC_ENCRYPTION_KEY"
    settings_url: str = "http://localhost:3000/app/settings"
    state_ttl_seconds: int = 600
    state_sweep_seconds: int = 60

    def provider(self, name: str) -> ProviderConfig:
        if name not in self.providers:
            raise ValueError(f"Provider '{name}' is not configured. Configured: {sorted(self.providers)}")
        return self.providers[name]


def _read_env(provider: str, entry: dict[str, Any], key: str) -> str:
    env_var = entry.get(f"{key}_env")
    if not env_var:
        raise ValueError(f"Provider '{provider}': '{key}_env' is required")
    value = os.environ.get(env_var, "")
    if not value:
        logger.warning("Provider '%s': env var '%s' not set", provider, env_var)
    return value


def _positive(section: str, raw: dict[str, Any], key: str, default: Any, cast=int) -> Any:
    value = raw.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{section}.{key}: expected a number, got '{value}'")
    if value <= 0:
        raise ValueError(f"{section}.{key}: must be positive, got {value}")
    return value


def _load_providers(raw: dict[str, Any]) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for name, entry in raw.items():
        name = str(name).strip().lower()
        if name not in VALID_PROVIDERS:
            raise ValueError(f"Unknown provider '{name}'. Must be one of: {VALID_PROVIDERS}")
        entry = entry or {}

        if name in OAUTH_PROVIDERS:
            if not entry.get("redirect_uri"):
                raise ValueError(f"Provider '{name}': 'redirect_uri' is required")
            providers[name] = ProviderConfig(
                name=name,
                client_id=_read_env(name, entry, "client_id"),
                client_secret=_read_env(name, entry, "client_secret"),
                redirect_uri=entry["redirect_uri"],
                tenant=entry.get("tenant", "common"),
            )
        else:
            providers[name] = ProviderConfig(
                name=name,
                server_url=entry.get("server_url") or DEFAULT_ICLOUD_URL,
            )
    return providers


def load_config(path: str | None = None) -> Settings:
    """Load and validate calendar_sync.yaml.

    A missing file yields default settings with no providers configured.
    """
    path = path or CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s", path)
        return Settings()

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    sync_raw = raw.get("sync") or {}
    sync = SyncSettings(
        days_past=_positive("sync", sync_raw, "days_past", DEFAULT_DAYS_PAST),
        days_future=_positive("sync", sync_raw, "days_future", DEFAULT_DAYS_FUTURE),
        interval_minutes=_positive("sync", sync_raw, "interval_minutes", 15),
        check_interval_seconds=_positive("sync", sync_raw, "check_interval_seconds", 300),
        concurrency=_positive("sync", sync_raw, "concurrency", 5),
        http_timeout=_positive("sync", sync_raw, "http_timeout", 30.0, cast=float),
        error_max_length=_positive("sync", sync_raw, "error_max_length", 500),
    )

    oauth_raw = raw.get("oauth") or {}
    storage_raw = raw.get("storage") or {}
    encryption_raw = raw.get("encryption") or {}
    web_raw = raw.get("web") or {}

    settings = Settings(
        providers=_load_providers(raw.get("providers") or {}),
        sync=sync,
        database_path=storage_raw.get("database", Settings.database_path),
        encryption_key_env=encryption_raw.get("key_env", Settings.encryption_key_env),
        settings_url=web_raw.get("settings_url", Settings.settings_url),
        state_ttl_seconds=_positive("oauth", oauth_raw, "state_ttl_seconds", 600),
        state_sweep_seconds=_positive("oauth", oauth_raw, "sweep_interval_seconds", 60),
    )
    if not os.environ.get(settings.encryption_key_env):
        logger.warning("Encryption key env var '%s' not set", settings.encryption_key_env)
    return settings
