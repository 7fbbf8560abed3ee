"""OAuth anti-CSRF state store.

Each authorization redirect carries a random ``state`` token that is bound to
the user and provider that started the flow. The callback validates it, then
deletes it; only the caller whose ``delete`` returns True may use it. Tokens expire after ``ttl_seconds``
(10 minutes by default).
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, runtime_checkable

logger = logging.getLogger("calendar-sync-engine")

STATE_TTL_SECONDS = 600


def generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class OAuthState:
    state: str
    user_id: str
    provider: str
    created_at: float  # clock() value at creation


@runtime_checkable
class OAuthStateStore(Protocol):
    def create(self, user_id: str, provider: str) -> str: ...

    def validate(self, state: str) -> OAuthState | None: ...

    def delete(self, state: str) -> bool: ...

    def purge_expired(self) -> int: ...


class MemoryOAuthStateStore:
    """Process-local store. Does not work across multiple worker processes."""

    def __init__(self, ttl_seconds: int = STATE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._states: dict[str, OAuthState] = {}

    def create(self, user_id: str, provider: str) -> str:
        self.purge_expired()
        state = generate_state()
        self._states[state] = OAuthState(state, user_id, str(provider), self._clock())
        return state

    def validate(self, state: str) -> OAuthState | None:
        entry = self._states.get(state)
        if entry is None:
            return None
        if self._clock() >= entry.created_at + self._ttl:
            del self._states[state]
            return None
        return entry

    def delete(self, state: str) -> bool:
        return self._states.pop(state, None) is not None

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [s for s, e in self._states.items() if now >= e.created_at + self._ttl]
        for s in expired:
            del self._states[s]
        return len(expired)

    def clear(self) -> None:
        """Clear all state entries. Used in tests."""
        self._states.clear()


class SqliteOAuthStateStore:
    """Durable store with an expiry column; survives restarts and is shared by processes."""

    def __init__(
        self,
        db_path: Path | str,
        ttl_seconds: int = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self._ttl = ttl_seconds
        self._clock = clock
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS oauth_states (
                state TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL
            )
        """)
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    def create(self, user_id: str, provider: str) -> str:
        state = generate_state()
        now = self._clock()
        self.conn.execute(
            "INSERT INTO oauth_states (state, user_id, provider, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
            (state, user_id, str(provider), now, now + self._ttl),
        )
        self.conn.commit()
        return state

    def validate(self, state: str) -> OAuthState | None:
        row = self.conn.execute(
            "SELECT * FROM oauth_states WHERE state = ?", (state,)
        ).fetchone()
        if row is None:
            return None
        if self._clock() >= row["expires_at"]:
            self.delete(state)
            return None
        return OAuthState(row["state"], row["user_id"], row["provider"], row["created_at"])

    def delete(self, state: str) -> bool:
        """Remove ``state``; False when it was already consumed or has expired."""
        cursor = self.conn.execute(
            "DELETE FROM oauth_states WHERE state = ? AND expires_at > ?", (state, self._clock())
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def purge_expired(self) -> int:
        cursor = self.conn.execute("DELETE FROM oauth_states WHERE expires_at <= ?", (self._clock(),))
        self.conn.commit()
        return cursor.rowcount


async def sweep_expired_states(store: OAuthStateStore, interval: float = 60) -> None:
    """Purge expired state tokens every ``interval`` seconds until cancelled."""
    while True:
        purged = store.purge_expired()
        if purged:
            logger.debug("Purged %d expired OAuth state(s)", purged)
        await asyncio.sleep(interval)
