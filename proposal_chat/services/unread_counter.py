import asyncio
import logging
from typing import Callable, List, Optional

from pymongo.errors import PyMongoError

from proposal_chat.errors import SubscriptionFailure
from proposal_chat.schemas.chat import ChangeEvent, UnreadScope
from proposal_chat.schemas.user import Viewer
from proposal_chat.utils.realtime_bus import RealtimeEventBus, Subscription

logger = logging.getLogger(__name__)


def default_scope(viewer: Viewer) -> UnreadScope:
    return UnreadScope.ADMINISTERED if viewer.is_admin else UnreadScope.AUTHORED


class GlobalUnreadCounter:
    """
    Total unread messages across every conversation the viewer can see.

    Recomputed from the store on start, on any message change and after a
    handle marks messages read. Refreshes requested while one is running are
    folded into a single rerun.
    """

    def __init__(self, store, bus: RealtimeEventBus, viewer: Viewer, scope: Optional[UnreadScope] = None) -> None:
        self._store = store
        self._bus = bus
        self.viewer = viewer
        self.scope = scope or default_scope(viewer)
        self.count = 0
        self._listeners: List[Callable[[int], None]] = []
        self._subscription: Optional[Subscription] = None
        self._refreshing: Optional[asyncio.Task] = None
        self._dirty = False

    def add_listener(self, listener: Callable[[int], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[int], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> int:
        # subscribed before counting so nothing written in between is missed
        try:
            self._subscription = await self._bus.subscribe_changes(None, on_insert=self._on_change, on_update=self._on_change)
        except SubscriptionFailure as exc:
            logger.warning("Unread counter for %s is not live: %s", self.viewer.id, exc)
        return await self.refresh()

    async def _on_change(self, event: ChangeEvent) -> None:
        await self.refresh()

    async def refresh(self) -> int:
        if self._refreshing is not None and not self._refreshing.done():
            self._dirty = True
        else:
            self._refreshing = asyncio.create_task(self._run_refresh())
        return await asyncio.shield(self._refreshing)

    async def _run_refresh(self) -> int:
        while True:
            self._dirty = False
            try:
                count = await self._store.count_unread(self.viewer.id, self.scope)
            except PyMongoError as exc:
                logger.warning("Could not count unread messages for %s: %s", self.viewer.id, exc)
                return self.count
            if not self._dirty:
                break
        if count != self.count:
            self.count = count
            for listener in list(self._listeners):
                try:
                    listener(count)
                except Exception:
                    logger.exception("Unread listener failed")
        return self.count

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()
        if self._refreshing is not None and not self._refreshing.done():
            self._refreshing.cancel()
