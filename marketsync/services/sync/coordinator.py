"""
Cross-tab coordinator: the public face of the sync layer.

Composes the broadcast channel, leader election, active tab registry and the
message router for one tab. start() runs an election and a tab refresh straight
away, then schedules them (plus the leader heartbeat) on an AsyncIOScheduler.

Everything here is advisory. Failures are logged and never reach the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketsync.core.config import get_settings
from marketsync.core.query_keys import PRODUCT_TYPES, PRODUCTS
from marketsync.integrations.base import SharedStorePort
from marketsync.integrations.events import (
    BroadcastMessage,
    CacheInvalidateMessage,
    CacheInvalidatePayload,
    ProductUpdateMessage,
    ProductUpdatePayload,
    PurchaseUpdateMessage,
    PurchaseUpdatePayload,
    SyncRequestMessage,
    SyncRequestPayload,
    now_ms,
)
from marketsync.services.query_cache import QueryCache
from marketsync.services.sync.channel import BroadcastChannel
from marketsync.services.sync.election import LeaderElection
from marketsync.services.sync.router import MessageRouter
from marketsync.services.sync.tab_registry import ActiveTabRegistry, new_tab_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    is_leader: bool = False
    active_tab_count: int = 1
    last_sync_timestamp: Optional[datetime] = None


class CrossTabCoordinator:
    def __init__(
        self,
        store: SharedStorePort,
        cache: Optional[QueryCache] = None,
        tab_id: Optional[str] = None,
        message_key: str = "cross-tab-message",
        leader_key: str = "cross-tab-leader",
        tabs_key: str = "active-tabs",
        election_interval: float = 10.0,
        heartbeat_interval: float = 5.0,
        tab_refresh_interval: float = 10.0,
        leader_stale_seconds: float = 30.0,
        tab_stale_seconds: float = 60.0,
        clock: Callable[[], int] = now_ms,
        on_state_change: Optional[Callable[[SyncState], None]] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else QueryCache()
        self.tab_id = tab_id or new_tab_id(clock())
        self.election_interval = election_interval
        self.heartbeat_interval = heartbeat_interval
        self.tab_refresh_interval = tab_refresh_interval
        self.on_state_change = on_state_change

        self.channel = BroadcastChannel(store, message_key)
        self.election = LeaderElection(
            store, self.tab_id, leader_key,
            stale_after_ms=int(leader_stale_seconds * 1000), clock=clock,
        )
        self.tabs = ActiveTabRegistry(
            store, self.tab_id, tabs_key,
            stale_after_ms=int(tab_stale_seconds * 1000), clock=clock,
        )
        self.router = MessageRouter(
            self.cache, self.tab_id,
            is_leader=lambda: self.election.is_leader,
            answer_sync_request=self._answer_sync_request,
        )

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._state = SyncState()
        self._running = False

    @classmethod
    def from_settings(cls, store: SharedStorePort, cache: Optional[QueryCache] = None, settings=None, **kwargs):
        settings = settings or get_settings()
        return cls(
            store,
            cache=cache,
            message_key=settings.SYNC_MESSAGE_KEY,
            leader_key=settings.LEADER_KEY,
            tabs_key=settings.ACTIVE_TABS_KEY,
            election_interval=settings.ELECTION_INTERVAL_SECONDS,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
            tab_refresh_interval=settings.TAB_REFRESH_INTERVAL_SECONDS,
            leader_stale_seconds=settings.LEADER_STALE_SECONDS,
            tab_stale_seconds=settings.TAB_STALE_SECONDS,
            **kwargs,
        )

    # --- state ---

    @property
    def sync_state(self) -> SyncState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self.election.is_leader

    @property
    def running(self) -> bool:
        return self._running

    def _refresh_state(self):
        state = SyncState(
            is_leader=self.election.is_leader,
            active_tab_count=self.tabs.count,
            last_sync_timestamp=self.router.last_sync,
        )
        if state != self._state:
            self._state = state
            if self.on_state_change:
                try:
                    self.on_state_change(state)
                except Exception as e:
                    logger.error(f"[CrossTab] State listener failed: {e}")

    # --- lifecycle ---

    async def start(self):
        if self._running:
            return
        self._running = True
        self.channel.subscribe(self.handle_message)

        await self.run_election()
        await self.refresh_tabs()

        self.scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        jobs = [
            (self.run_election, self.election_interval, "election"),
            (self.heartbeat, self.heartbeat_interval, "heartbeat"),
            (self.refresh_tabs, self.tab_refresh_interval, "active_tabs"),
        ]
        for func, seconds, name in jobs:
            self.scheduler.add_job(
                func,
                IntervalTrigger(seconds=seconds),
                id=f"{self.tab_id}-{name}",
                name=f"CrossTab {name}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(f"[CrossTab] Tab {self.tab_id} started (leader={self.is_leader})")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.channel.close()
        await self.election.resign()
        await self.tabs.remove()
        self._refresh_state()
        logger.info(f"[CrossTab] Tab {self.tab_id} stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # --- periodic ticks ---

    async def run_election(self) -> bool:
        is_leader = await self.election.tick()
        self._refresh_state()
        return is_leader

    async def heartbeat(self):
        await self.election.heartbeat()

    async def refresh_tabs(self) -> int:
        count = await self.tabs.refresh()
        self._refresh_state()
        return count

    # --- incoming ---

    async def handle_message(self, message: BroadcastMessage):
        if await self.router.route(message):
            self._refresh_state()

    async def _answer_sync_request(self, message: SyncRequestMessage):
        logger.info(f"[CrossTab] Answering sync request from {message.payload.requester_id}")
        await self.invalidate_across_tabs([PRODUCTS, PRODUCT_TYPES])

    # --- outgoing ---

    async def broadcast_product_update(self, product_id: str, update_fields: Optional[Dict[str, Any]] = None) -> bool:
        return await self.channel.publish(ProductUpdateMessage(
            origin_id=self.tab_id,
            payload=ProductUpdatePayload(product_id=str(product_id), update_fields=update_fields or {}),
        ))

    async def invalidate_across_tabs(self, key_paths: Iterable[Iterable[str]]) -> bool:
        paths: List[List[str]] = [
            [path] if isinstance(path, str) else [str(part) for part in path]
            for path in key_paths
        ]
        return await self.channel.publish(CacheInvalidateMessage(
            origin_id=self.tab_id,
            payload=CacheInvalidatePayload(key_paths=paths),
        ))

    async def broadcast_purchase_update(self, product_id: str, new_quantity: int) -> bool:
        return await self.channel.publish(PurchaseUpdateMessage(
            origin_id=self.tab_id,
            payload=PurchaseUpdatePayload(product_id=str(product_id), new_quantity=new_quantity),
        ))

    async def request_sync(self) -> bool:
        return await self.channel.publish(SyncRequestMessage(
            origin_id=self.tab_id,
            payload=SyncRequestPayload(requester_id=self.tab_id),
        ))
