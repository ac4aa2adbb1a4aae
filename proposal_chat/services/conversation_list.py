import logging
from typing import Callable, Dict, List, Optional

from proposal_chat.errors import SubscriptionFailure
from proposal_chat.schemas.chat import ChangeEvent, ConversationSummary, UnreadScope
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.message_store import sort_summaries
from proposal_chat.services.unread_counter import default_scope
from proposal_chat.utils.realtime_bus import RealtimeEventBus, Subscription

logger = logging.getLogger(__name__)


def _newer(current: ConversationSummary, fresh: ConversationSummary) -> bool:
    if current.last_message_at is None:
        return False
    return fresh.last_message_at is None or current.last_message_at > fresh.last_message_at


class ConversationListTracker:
    """Keeps a viewer's chat list (last message, per-conversation badge, order) current from the change feed."""

    def __init__(self, store, bus: RealtimeEventBus, viewer: Viewer, scope: Optional[UnreadScope] = None) -> None:
        self._store = store
        self._bus = bus
        self.viewer = viewer
        self.scope = scope or default_scope(viewer)
        self._summaries: Dict[str, ConversationSummary] = {}
        self._listeners: List[Callable[["ConversationListTracker"], None]] = []
        self._subscription: Optional[Subscription] = None

    @property
    def conversations(self) -> List[ConversationSummary]:
        return sort_summaries(list(self._summaries.values()))

    @property
    def total_unread(self) -> int:
        return sum(s.unread_count for s in self._summaries.values())

    def get(self, conversation_id: str) -> Optional[ConversationSummary]:
        return self._summaries.get(conversation_id)

    def add_listener(self, listener: Callable[["ConversationListTracker"], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["ConversationListTracker"], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Chat list listener failed")

    async def load(self) -> List[ConversationSummary]:
        summaries = {s.id: s for s in await self._store.list_summaries(self.viewer.id, self.scope)}
        # keep entries the change feed moved past this snapshot while it was loading
        for conversation_id, current in self._summaries.items():
            fresh = summaries.get(conversation_id)
            if fresh is None or _newer(current, fresh):
                summaries[conversation_id] = current
        self._summaries = summaries
        self._notify()
        return self.conversations

    async def start(self) -> List[ConversationSummary]:
        # subscribed before loading so nothing written in between is missed
        try:
            self._subscription = await self._bus.subscribe_changes(None, on_insert=self._on_insert, on_update=self._on_update)
        except SubscriptionFailure as exc:
            logger.warning("Chat list for %s is not live: %s", self.viewer.id, exc)
        return await self.load()

    async def _belongs_to_viewer(self, conversation_id: str) -> bool:
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            return False
        if self.scope == UnreadScope.ADMINISTERED:
            return await self._store.proposal_admin(conversation.proposal_id) == self.viewer.id
        return conversation.user_id == self.viewer.id

    async def _on_insert(self, event: ChangeEvent) -> None:
        message = event.message
        summary = self._summaries.get(message.conversation_id)
        if summary is None:
            if not await self._belongs_to_viewer(message.conversation_id):
                return
            # fetched after the insert, so its badge already counts this message
            summary = await self._store.get_summary(message.conversation_id, self.viewer.id)
            if summary is None:
                return
            self._summaries[summary.id] = summary
            self._notify()
            return
        if summary.last_message_at is not None and message.created_at <= summary.last_message_at:
            # already reflected in the loaded or fetched summary
            return

        unread = summary.unread_count + (1 if message.is_unread_for(self.viewer.id) else 0)
        self._summaries[summary.id] = summary.model_copy(
            update={"last_message": message.body, "last_message_at": message.created_at, "unread_count": unread}
        )
        self._notify()

    async def _on_update(self, event: ChangeEvent) -> None:
        message = event.message
        summary = self._summaries.get(message.conversation_id)
        if summary is None or message.author_id == self.viewer.id:
            return
        if event.old_read is False and message.read:
            self._summaries[summary.id] = summary.model_copy(update={"unread_count": max(0, summary.unread_count - 1)})
            self._notify()

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()
