import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple, Union
from uuid import uuid4

from pydantic import ValidationError

from proposal_chat.errors import AccessDenied, NotFound, PersistFailure, SubscriptionFailure, UploadFailure
from proposal_chat.schemas.chat import (
    Attachment,
    AttachmentUpload,
    AuthorInfo,
    ChangeEvent,
    ChatMessage,
    ConversationRef,
    TypingSignal,
)
from proposal_chat.schemas.user import Viewer
from proposal_chat.services.typing_indicator import TYPING_TIMEOUT_SECONDS, TypingIndicator
from proposal_chat.utils.realtime_bus import RealtimeEventBus, Subscription

logger = logging.getLogger(__name__)

MESSAGES = "messages"
UNREAD = "unread"
TYPING = "typing"

TYPING_THROTTLE_SECONDS = 1.0

ChangeListener = Callable[["ConversationHandle", str], None]


@dataclass(frozen=True)
class ConversationKey:
    """Either an existing conversation id, or the (proposal, participant) pair to find or create."""

    conversation_id: Optional[str] = None
    proposal_id: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.conversation_id is None and not (self.proposal_id and self.user_id):
            raise ValueError("ConversationKey needs a conversation_id or both proposal_id and user_id")

    @classmethod
    def by_id(cls, conversation_id: str) -> "ConversationKey":
        return cls(conversation_id=conversation_id)

    @classmethod
    def for_participant(cls, proposal_id: str, user_id: str) -> "ConversationKey":
        return cls(proposal_id=proposal_id, user_id=user_id)


class ConversationHandle:
    """
    Live, client-side view of one conversation.

    Owns the ordered message list, the set of persisted ids already in it, the
    temporary ids of sends still in flight, the unread count and the realtime
    subscription. None of these are touched across an ``await``: every mutation
    happens in one synchronous stretch so interleaved sends, bus events and timer
    callbacks see a consistent list.
    """

    def __init__(
        self,
        conversation: ConversationRef,
        viewer: Viewer,
        store,
        bus: RealtimeEventBus,
        uploader=None,
        unread_counter=None,
        temp_prefix: str = "temp",
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
        typing_throttle: float = TYPING_THROTTLE_SECONDS,
        auto_mark_read: bool = False,
        on_closed: Optional[Callable[["ConversationHandle"], None]] = None,
    ) -> None:
        self.conversation = conversation
        self._viewer = viewer
        self._store = store
        self._bus = bus
        self._uploader = uploader
        self._unread_counter = unread_counter
        self._temp_prefix = temp_prefix
        self._typing_throttle = typing_throttle
        self._on_closed = on_closed

        self._messages: List[ChatMessage] = []
        self._known_ids: Set[str] = set()
        # temporary id -> persisted id, filled in if the bus echo beats the create call
        self._pending: Dict[str, Optional[str]] = {}
        self._temp_ids = itertools.count(1)
        self._unread = 0
        self._authors: Dict[str, Optional[AuthorInfo]] = {}
        self._listeners: List[ChangeListener] = []
        self._typing = TypingIndicator(typing_timeout, on_change=lambda _typing: self._notify(TYPING))
        self._subscription: Optional[Subscription] = None
        self._mark_read_task: Optional[asyncio.Task] = None
        self._mark_read_again = False
        self._last_typing_sent: Optional[float] = None

        self.auto_mark_read = auto_mark_read
        self.draft: Optional[str] = None
        self.live = False
        self.closed = False

    @property
    def id(self) -> str:
        return self.conversation.id

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def unread_count(self) -> int:
        return self._unread

    @property
    def is_typing(self) -> bool:
        return self._typing.is_typing

    @property
    def typing_user(self) -> Optional[TypingSignal]:
        return self._typing.typing_user

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def _own_author(self) -> AuthorInfo:
        return AuthorInfo(full_name=self._viewer.full_name, email=self._viewer.email)

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, change: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, change)
            except Exception:
                logger.exception("Listener failed for conversation %s", self.id)

    # loading and subscription

    async def connect(self) -> bool:
        try:
            changes = await self._bus.subscribe_changes(self.id, on_insert=self._handle_insert, on_update=self._handle_update)
        except SubscriptionFailure as exc:
            logger.warning("No live updates for conversation %s: %s", self.id, exc)
            return False
        try:
            typing = await self._bus.subscribe_broadcast(self.id, "typing", self._handle_typing)
        except SubscriptionFailure as exc:
            await changes.unsubscribe()
            logger.warning("No live updates for conversation %s: %s", self.id, exc)
            return False
        self._subscription = Subscription.merge(changes, typing)
        self.live = True
        return True

    def load(self, history: List[ChatMessage]) -> None:
        loaded_ids = {m.id for m in history}
        # keep anything the bus delivered while the history was being fetched
        arrived = [m for m in self._messages if m.id not in loaded_ids]
        self._messages = list(history) + arrived
        self._known_ids = {m.id for m in self._messages if not m.pending}
        self._recount()
        self._notify(MESSAGES)
        self._notify(UNREAD)

    def _recount(self) -> None:
        self._unread = sum(1 for m in self._messages if m.is_unread_for(self._viewer.id))

    def _index_of(self, message_id: str) -> Optional[int]:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return None

    def _find(self, message_id: str) -> Optional[ChatMessage]:
        i = self._index_of(message_id)
        return self._messages[i] if i is not None else None

    # sending

    def _next_temp_id(self) -> str:
        return f"{self._temp_prefix}-{next(self._temp_ids)}"

    async def _upload(self, upload: AttachmentUpload) -> Attachment:
        if self._uploader is None:
            raise UploadFailure("No attachment storage configured")
        return await self._uploader.upload(upload.data, upload.file_name, self._viewer.id, content_type=upload.content_type)

    async def send(self, body: str = "", attachment: Union[Attachment, AttachmentUpload, None] = None) -> ChatMessage:
        if self.closed:
            raise NotFound(f"Conversation {self.id} is closed")
        body = body or ""
        if not body.strip() and attachment is None:
            raise ValueError("Message needs text or an attachment")

        # the file has to be durable before any message points at it
        if isinstance(attachment, AttachmentUpload):
            attachment = await self._upload(attachment)

        temp_id = self._next_temp_id()
        optimistic = ChatMessage(
            id=temp_id,
            conversation_id=self.id,
            author_id=self._viewer.id,
            body=body,
            created_at=datetime.now(timezone.utc),
            read=False,
            attachment=attachment,
            author=self._own_author,
            client_message_id=temp_id,
            pending=True,
        )
        self._pending[temp_id] = None
        self._messages.append(optimistic)
        self.draft = None
        self._notify(MESSAGES)

        try:
            saved = await self._store.create_message(
                self.id,
                self._viewer.id,
                body,
                attachment=attachment,
                client_message_id=temp_id,
            )
        except (Exception, asyncio.CancelledError) as exc:
            echoed_id = self._pending.pop(temp_id, None)
            if echoed_id is not None and not isinstance(exc, asyncio.CancelledError):
                # the row made it and the bus already told us so
                logger.warning("Create call for %s failed after the message was persisted: %s", temp_id, exc)
                return self._find(echoed_id) or optimistic
            i = self._index_of(temp_id)
            if i is not None:
                del self._messages[i]
            self.draft = body
            self._notify(MESSAGES)
            logger.warning("Send failed in conversation %s, rolled back %s: %s", self.id, temp_id, exc)
            if isinstance(exc, PersistFailure):
                exc.draft = body
            raise

        self._pending.pop(temp_id, None)
        return self._confirm(temp_id, saved)

    def _confirm(self, temp_id: str, saved: ChatMessage) -> ChatMessage:
        if saved.id in self._known_ids:
            return self._find(saved.id) or saved
        confirmed = saved.model_copy(update={"author": self._own_author, "pending": False})
        self._known_ids.add(saved.id)
        i = self._index_of(temp_id)
        if i is None:
            self._messages.append(confirmed)
        else:
            self._messages[i] = confirmed
        self._notify(MESSAGES)
        return confirmed

    # bus handlers

    async def _author_for(self, author_id: str) -> Optional[AuthorInfo]:
        if author_id not in self._authors:
            self._authors[author_id] = await self._store.get_author(author_id)
        return self._authors[author_id]

    def _append(self, message: ChatMessage) -> None:
        self._messages.append(message)
        self._known_ids.add(message.id)
        self._notify(MESSAGES)

    async def _handle_insert(self, event: ChangeEvent) -> None:
        message = event.message
        if self.closed or message.id in self._known_ids:
            return

        if message.author_id == self._viewer.id:
            temp_id = message.client_message_id
            if temp_id is not None and temp_id in self._pending:
                # echo of a send still waiting on its create call
                self._pending[temp_id] = message.id
                self._known_ids.add(message.id)
                confirmed = message.model_copy(update={"author": self._own_author, "pending": False})
                i = self._index_of(temp_id)
                if i is None:
                    self._messages.append(confirmed)
                else:
                    self._messages[i] = confirmed
                self._notify(MESSAGES)
                return
            # sent from another tab or device signed in as the same viewer
            self._append(message.model_copy(update={"author": self._own_author}))
            return

        author = await self._author_for(message.author_id)
        if self.closed or message.id in self._known_ids:
            return
        self._append(message.model_copy(update={"author": author}))
        if message.is_unread_for(self._viewer.id):
            self._unread += 1
            self._notify(UNREAD)
            if self.auto_mark_read:
                self._schedule_mark_read()

    async def _handle_update(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        i = self._index_of(event.message.id)
        if i is None:
            return
        current = self._messages[i]
        if current.read == event.message.read:
            return
        self._messages[i] = current.model_copy(update={"read": event.message.read})
        self._recount()
        self._notify(MESSAGES)
        self._notify(UNREAD)

    async def _handle_typing(self, payload: dict) -> None:
        if self.closed:
            return
        try:
            signal = TypingSignal.model_validate(payload)
        except ValidationError as exc:
            logger.debug("Ignoring malformed typing signal: %s", exc)
            return
        if signal.author_id == self._viewer.id:
            return
        self._typing.signal(signal)

    # read state

    async def mark_read(self) -> int:
        if self.closed:
            return 0
        unread_ids = {m.id for m in self._messages if m.is_unread_for(self._viewer.id)}
        try:
            modified = await self._store.mark_read(self.id, self._viewer.id)
        except PersistFailure as exc:
            logger.warning("Could not mark conversation %s as read: %s", self.id, exc)
            return 0

        changed = False
        for i, message in enumerate(self._messages):
            if message.id in unread_ids and not message.read:
                self._messages[i] = message.model_copy(update={"read": True})
                changed = True
        self._recount()
        if changed:
            self._notify(MESSAGES)
        self._notify(UNREAD)

        if self._unread_counter is not None:
            await self._unread_counter.refresh()
        return modified

    def _schedule_mark_read(self) -> None:
        if self._mark_read_task is not None and not self._mark_read_task.done():
            self._mark_read_again = True
            return
        self._mark_read_task = asyncio.create_task(self._auto_mark_read())

    async def _auto_mark_read(self) -> None:
        while True:
            self._mark_read_again = False
            await self.mark_read()
            if self.closed or not self._mark_read_again:
                return

    def set_visible(self, visible: bool) -> None:
        self.auto_mark_read = visible
        if visible and self._unread:
            self._schedule_mark_read()

    # typing

    async def notify_typing(self) -> bool:
        if self.closed or not self.live:
            return False
        now = time.monotonic()
        if self._last_typing_sent is not None and now - self._last_typing_sent < self._typing_throttle:
            return False
        self._last_typing_sent = now
        payload = {
            "author_id": self._viewer.id,
            "display_name": self._viewer.display_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return await self._bus.publish_broadcast(self.id, "typing", payload)

    # teardown

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.live = False
        self._typing.close()
        if self._mark_read_task is not None and not self._mark_read_task.done():
            self._mark_read_task.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()
        if self._on_closed is not None:
            self._on_closed(self)
        logger.debug("Closed conversation %s", self.id)


class ConversationSynchronizer:
    """
    Opens and tracks the conversations of one viewer (one tab, one socket).

    ``open`` is idempotent per key and per conversation id, so views can call
    it on every render.
    """

    def __init__(
        self,
        store,
        bus: RealtimeEventBus,
        viewer: Viewer,
        uploader=None,
        unread_counter=None,
        typing_timeout: float = TYPING_TIMEOUT_SECONDS,
        typing_throttle: float = TYPING_THROTTLE_SECONDS,
    ) -> None:
        self._store = store
        self._bus = bus
        self.viewer = viewer
        self._uploader = uploader
        self._unread_counter = unread_counter
        self._typing_timeout = typing_timeout
        self._typing_throttle = typing_throttle
        self._session = uuid4().hex[:12]
        self._handles: Dict[str, ConversationHandle] = {}
        self._keys: Dict[ConversationKey, str] = {}
        self._opening: Dict[Tuple[ConversationKey, bool], asyncio.Task] = {}

    @classmethod
    def from_settings(cls, store, bus: RealtimeEventBus, viewer: Viewer, settings, uploader=None, unread_counter=None) -> "ConversationSynchronizer":
        return cls(
            store,
            bus,
            viewer,
            uploader=uploader,
            unread_counter=unread_counter,
            typing_timeout=settings.typing_timeout_seconds,
            typing_throttle=settings.typing_throttle_seconds,
        )

    @property
    def handles(self) -> List[ConversationHandle]:
        return list(self._handles.values())

    def get(self, conversation_id: str) -> Optional[ConversationHandle]:
        return self._handles.get(conversation_id)

    def _lookup(self, key: ConversationKey) -> Optional[ConversationHandle]:
        conversation_id = key.conversation_id or self._keys.get(key)
        if conversation_id is None:
            return None
        handle = self._handles.get(conversation_id)
        if handle is None or handle.closed:
            return None
        return handle

    async def open(self, key: Union[ConversationKey, str], visible: bool = False, reload: bool = False) -> ConversationHandle:
        if isinstance(key, str):
            key = ConversationKey.by_id(key)
        if not reload:
            handle = self._lookup(key)
            if handle is not None:
                if visible:
                    handle.set_visible(True)
                return handle

        slot = (key, reload)
        task = self._opening.get(slot)
        if task is None:
            task = asyncio.create_task(self._open(key, visible, reload))
            self._opening[slot] = task

            def _forget(done: asyncio.Task, slot=slot) -> None:
                if self._opening.get(slot) is done:
                    del self._opening[slot]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def resolve(self, key: ConversationKey) -> ConversationRef:
        viewer_id = self.viewer.id
        if key.conversation_id is not None:
            conversation = await self._store.get_conversation(key.conversation_id)
            if conversation is None:
                raise NotFound(f"Conversation {key.conversation_id} not found")
            if not await self._store.can_access(conversation, viewer_id):
                raise AccessDenied(f"No access to conversation {key.conversation_id}")
            return conversation

        proposal = await self._store.get_proposal(key.proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {key.proposal_id} not found")
        if key.user_id != viewer_id and proposal.created_by != viewer_id:
            raise AccessDenied(f"No access to conversations of proposal {key.proposal_id}")
        conversation = await self._store.find_conversation(key.proposal_id, key.user_id)
        if conversation is None:
            conversation = await self._store.create_conversation(key.proposal_id, key.user_id)
        return conversation

    async def _open(self, key: ConversationKey, visible: bool, reload: bool) -> ConversationHandle:
        conversation = await self.resolve(key)
        self._keys[key] = conversation.id

        existing = self._handles.get(conversation.id)
        if existing is not None and not existing.closed:
            if not reload:
                if visible:
                    existing.set_visible(True)
                return existing
            # the old subscription must be gone before a new one is acquired
            await existing.close()

        handle = ConversationHandle(
            conversation,
            self.viewer,
            self._store,
            self._bus,
            uploader=self._uploader,
            unread_counter=self._unread_counter,
            temp_prefix=f"temp-{self._session}",
            typing_timeout=self._typing_timeout,
            typing_throttle=self._typing_throttle,
            auto_mark_read=visible,
            on_closed=self._forget_handle,
        )
        self._handles[conversation.id] = handle

        # subscribe before the bulk load so nothing inserted in between is lost
        await handle.connect()
        try:
            history = await self._store.list_messages(conversation.id)
        except Exception:
            await handle.close()
            raise
        handle.load(history)
        logger.info("Opened conversation %s for %s (%d messages, live=%s)", conversation.id, self.viewer.id, len(history), handle.live)

        if visible and handle.unread_count:
            handle.set_visible(True)
        return handle

    def _forget_handle(self, handle: ConversationHandle) -> None:
        if self._handles.get(handle.id) is handle:
            del self._handles[handle.id]

    async def close(self, conversation_id: str) -> None:
        handle = self._handles.get(conversation_id)
        if handle is not None:
            await handle.close()

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await handle.close()
