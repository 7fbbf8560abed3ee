"""Background sync workers and the periodic due-account check."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .errors import AccountSyncError
from .models import SyncSummary
from .store import SyncStore
from .sync import SyncOrchestrator

logger = logging.getLogger("calendar-sync-engine")

DEFAULT_CONCURRENCY = 5
DEFAULT_INTERVAL = timedelta(minutes=15)


class SyncQueue:
    """Queue of account ids drained by a fixed pool of asyncio workers.

    ``submit`` returns immediately; the sync runs on a worker. Failed passes
    are kept in ``failures`` (account id -> error) until the next success.
    """

    def __init__(self, orchestrator: SyncOrchestrator, store: SyncStore, concurrency: int = DEFAULT_CONCURRENCY):
        self._orchestrator = orchestrator
        self._store = store
        self._concurrency = concurrency
        self._queue: asyncio.Queue[str] | None = None
        self._pending: set[str] = set()
        self._workers: list[asyncio.Task] = []
        self.failures: dict[str, AccountSyncError] = {}

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def _get_queue(self) -> asyncio.Queue[str]:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def submit(self, account_id: str) -> bool:
        """Enqueue a sync for ``account_id``. Returns False if one is already pending."""
        if account_id in self._pending:
            return False
        self._pending.add(account_id)
        self._get_queue().put_nowait(account_id)
        return True

    async def run_one(self, account_id: str) -> SyncSummary | None:
        """Load the account and its enabled calendars and run one pass."""
        account = self._store.get_account(account_id)
        if account is None:
            logger.warning("Account %s not found, dropping sync", account_id)
            return None
        calendars = self._store.list_enabled_calendars(account_id)
        try:
            summary = await self._orchestrator.sync_account(account, calendars)
        except AccountSyncError as e:
            self.failures[account_id] = e
            logger.warning("Background sync failed for %s: %s", account_id, e.message)
            return None
        if summary is not None:
            self.failures.pop(account_id, None)
        return summary

    async def _worker(self, n: int):
        queue = self._get_queue()
        while True:
            account_id = await queue.get()
            self._pending.discard(account_id)
            try:
                await self.run_one(account_id)
            except Exception:
                logger.exception("Worker %d: unexpected error syncing %s", n, account_id)
            finally:
                queue.task_done()

    def start(self):
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker(n)) for n in range(self._concurrency)]
        logger.info("Sync queue started with %d worker(s)", self._concurrency)

    async def join(self):
        """Wait until every submitted account has been processed."""
        await self._get_queue().join()

    async def stop(self):
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []


def run_sync_check(store: SyncStore, queue: SyncQueue, interval: timedelta = DEFAULT_INTERVAL) -> list[str]:
    """Submit every active, idle account whose last attempt is older than ``interval``."""
    cutoff = datetime.now(timezone.utc) - interval
    submitted = [a.id for a in store.accounts_due_for_sync(cutoff) if queue.submit(a.id)]
    if submitted:
        logger.info("Sync check: %d account(s) due", len(submitted))
    return submitted


async def run_periodic_check(
    store: SyncStore,
    queue: SyncQueue,
    interval: timedelta = DEFAULT_INTERVAL,
    check_every: float = 300,
):
    """Run ``run_sync_check`` every ``check_every`` seconds until cancelled."""
    while True:
        try:
            run_sync_check(store, queue, interval)
        except Exception as e:
            logger.error("Sync check failed: %s", e)
        await asyncio.sleep(check_every)
