"""
Active tab registry.

A JSON array of tab ids under one shared key. Tab ids embed their creation
time (`tab-<ms>-<suffix>`), which is what pruning reads. A refreshing tab
always keeps itself, so a live tab drops out of the count only when it stops
refreshing. Purely informational: nothing depends on the count being exact.
"""

import json
import logging
import secrets
import string
from typing import Callable, List, Optional

from marketsync.integrations.base import SharedStorePort
from marketsync.integrations.events import now_ms

logger = logging.getLogger(__name__)

_ALPHABET = string.ascii_lowercase + string.digits


def new_tab_id(created_ms: Optional[int] = None) -> str:
    created = created_ms if created_ms is not None else now_ms()
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"tab-{created}-{suffix}"


def tab_created_at(tab_id: str) -> Optional[int]:
    parts = tab_id.split("-")
    if len(parts) < 3:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


class ActiveTabRegistry:
    def __init__(
        self,
        store: SharedStorePort,
        tab_id: str,
        key: str = "active-tabs",
        stale_after_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.tab_id = tab_id
        self.key = key
        self.stale_after_ms = stale_after_ms
        self.clock = clock
        self.count = 1

    async def _read(self) -> List[str]:
        raw = await self.store.get(self.key)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            logger.error(f"[CrossTab] Failed to parse active tabs: {e}")
            return []
        return [tab for tab in parsed if isinstance(tab, str)] if isinstance(parsed, list) else []

    def _is_live(self, tab_id: str, now: int) -> bool:
        if tab_id == self.tab_id:
            return True
        created = tab_created_at(tab_id)
        return created is not None and now - created < self.stale_after_ms

    async def refresh(self) -> int:
        """Register this tab, prune stale ids and return the active count"""
        try:
            tabs = await self._read()
            if self.tab_id not in tabs:
                tabs.append(self.tab_id)
            now = self.clock()
            tabs = [tab for tab in tabs if self._is_live(tab, now)]
            await self.store.set(self.key, json.dumps(tabs))
            self.count = len(tabs)
        except Exception as e:
            logger.error(f"[CrossTab] Failed to refresh active tabs: {e}")
        return self.count

    async def remove(self):
        try:
            tabs = [tab for tab in await self._read() if tab != self.tab_id]
            await self.store.set(self.key, json.dumps(tabs))
        except Exception as e:
            logger.error(f"[CrossTab] Failed to cleanup tab count: {e}")
