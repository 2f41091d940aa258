"""
Per-tab query cache.

Each coordinator instance owns one QueryCache; nothing outside that tab writes
to it directly. Entries are keyed by tuples and matched by prefix, so an
operation on ("products",) also reaches ("products", "infinite").

Supports point lookup/update, stale marking with background refetch, and
cancellation of in-flight fetches.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from marketsync.core.query_keys import QueryKey, as_query_key

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    return key[:len(prefix)] == prefix


@dataclass
class QueryEntry:
    key: QueryKey
    data: Any = None
    is_stale: bool = False
    updated_at: Optional[datetime] = None
    fetcher: Optional[Fetcher] = None
    fetch_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_fetching(self) -> bool:
        return self.fetch_task is not None and not self.fetch_task.done()


class QueryCache:
    def __init__(self):
        self._entries: Dict[QueryKey, QueryEntry] = {}

    def _entry(self, key: QueryKey) -> QueryEntry:
        key = as_query_key(key)
        entry = self._entries.get(key)
        if entry is None:
            entry = QueryEntry(key=key)
            self._entries[key] = entry
        return entry

    def get_entry(self, key) -> Optional[QueryEntry]:
        return self._entries.get(as_query_key(key))

    def find_entries(self, prefix) -> List[QueryEntry]:
        prefix = as_query_key(prefix)
        return [entry for key, entry in self._entries.items() if key_matches(key, prefix)]

    def get_query_data(self, key) -> Any:
        entry = self.get_entry(key)
        return entry.data if entry else None

    def set_query_data(self, key, value_or_updater) -> Any:
        """
        Write data for an exact key.

        A callable is treated as an updater receiving the current data; if it
        returns None the entry is left untouched.
        """
        entry = self._entry(key)
        if callable(value_or_updater):
            new_data = value_or_updater(entry.data)
            if new_data is None:
                return entry.data
        else:
            new_data = value_or_updater

        entry.data = new_data
        entry.is_stale = False
        entry.updated_at = datetime.now(timezone.utc)
        return new_data

    def remove_queries(self, prefix) -> int:
        removed = self.find_entries(prefix)
        for entry in removed:
            if entry.is_fetching:
                entry.fetch_task.cancel()
            del self._entries[entry.key]
        return len(removed)

    async def fetch_query(self, key, fetcher: Fetcher) -> Any:
        """Fetch and store data for a key, remembering the fetcher for later refetches"""
        entry = self._entry(key)
        entry.fetcher = fetcher
        if not entry.is_fetching:
            entry.fetch_task = asyncio.create_task(self._run_fetch(entry))
        try:
            await asyncio.shield(entry.fetch_task)
        except asyncio.CancelledError:
            if entry.fetch_task is not None and entry.fetch_task.cancelled():
                # The fetch was cancelled, not the caller: keep the previous data
                return entry.data
            raise
        return entry.data

    async def _run_fetch(self, entry: QueryEntry):
        try:
            data = await entry.fetcher()
        except asyncio.CancelledError:
            logger.debug(f"Fetch cancelled for {entry.key}")
            raise
        except Exception as e:
            logger.error(f"Fetch failed for {entry.key}: {e}")
            return
        entry.data = data
        entry.is_stale = False
        entry.updated_at = datetime.now(timezone.utc)

    def invalidate_queries(self, prefix, refetch: bool = True) -> int:
        """
        Mark every entry under a prefix stale and schedule a refetch for those
        with a known fetcher. An entry already fetching is not fetched twice.
        """
        entries = self.find_entries(prefix)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for entry in entries:
            entry.is_stale = True
            if refetch and loop is not None and entry.fetcher is not None and not entry.is_fetching:
                entry.fetch_task = loop.create_task(self._run_fetch(entry))
        return len(entries)

    async def cancel_queries(self, prefix) -> int:
        """Cancel in-flight fetches under a prefix; cached data stays as it was"""
        tasks = []
        for entry in self.find_entries(prefix):
            if entry.is_fetching:
                entry.fetch_task.cancel()
                tasks.append(entry.fetch_task)
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return len(tasks)

    async def wait_for_fetches(self):
        """Wait for every in-flight fetch to settle (used on shutdown and in tests)"""
        tasks = [entry.fetch_task for entry in self._entries.values() if entry.is_fetching]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
