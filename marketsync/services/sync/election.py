"""
Leader election over the shared store.

Each tick reads the leader record and decides:

    absent                      -> claim it, become leader
    owned by us                 -> leader
    owned by another, fresh     -> follower
    owned by another, stale     -> overwrite it, become leader

There is no fencing: two tabs that both see "absent" both write, the last
write wins and the other tab finds out on its next tick.
"""

import logging
from typing import Callable, Optional

from pydantic import ValidationError

from marketsync.core.enums import TabRole
from marketsync.integrations.base import SharedStorePort
from marketsync.integrations.events import LeaderRecord, now_ms

logger = logging.getLogger(__name__)


class LeaderElection:
    def __init__(
        self,
        store: SharedStorePort,
        tab_id: str,
        key: str = "cross-tab-leader",
        stale_after_ms: int = 30_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.tab_id = tab_id
        self.key = key
        self.stale_after_ms = stale_after_ms
        self.clock = clock
        self.role = TabRole.FOLLOWER

    @property
    def is_leader(self) -> bool:
        return self.role == TabRole.LEADER

    def _set_role(self, role: TabRole):
        if role != self.role:
            logger.info(f"[CrossTab] Tab {self.tab_id} is now {role.value}")
        self.role = role

    async def _claim(self):
        record = LeaderRecord(owner_id=self.tab_id, claimed_at=self.clock())
        await self.store.set(self.key, record.to_wire())
        self._set_role(TabRole.LEADER)

    async def read_record(self) -> Optional[LeaderRecord]:
        raw = await self.store.get(self.key)
        if not raw:
            return None
        return LeaderRecord.model_validate_json(raw)

    async def tick(self) -> bool:
        """Run one election round, returns whether this tab is leader afterwards"""
        try:
            try:
                record = await self.read_record()
            except (ValidationError, ValueError) as e:
                logger.error(f"[CrossTab] Leader election error: {e}")
                return self.is_leader

            if record is None:
                await self._claim()
            elif record.owner_id == self.tab_id:
                self._set_role(TabRole.LEADER)
            elif record.is_stale(self.clock(), self.stale_after_ms):
                logger.info(f"[CrossTab] Leader {record.owner_id} is stale, taking over")
                await self._claim()
            else:
                self._set_role(TabRole.FOLLOWER)
        except Exception as e:
            logger.error(f"[CrossTab] Leader election failed: {e}")
        return self.is_leader

    async def heartbeat(self):
        """Refresh claimedAt while leader"""
        if not self.is_leader:
            return
        try:
            record = LeaderRecord(owner_id=self.tab_id, claimed_at=self.clock())
            await self.store.set(self.key, record.to_wire())
        except Exception as e:
            logger.error(f"[CrossTab] Leader heartbeat failed: {e}")

    async def resign(self):
        """Best-effort removal of the leader record on teardown"""
        if not self.is_leader:
            return
        try:
            await self.store.delete(self.key)
        except Exception as e:
            logger.error(f"[CrossTab] Failed to release leadership: {e}")
        self._set_role(TabRole.FOLLOWER)
