import asyncio
import logging
from typing import Any, Dict, Optional, Set, Union

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from proposal_chat.errors import AccessDenied, ChatError, NotFound, PersistFailure
from proposal_chat.schemas.chat import Attachment
from proposal_chat.services.conversation_sync import (
    MESSAGES,
    TYPING,
    UNREAD,
    ConversationHandle,
    ConversationSynchronizer,
)
from proposal_chat.services.conversation_list import ConversationListTracker
from proposal_chat.services.unread_counter import GlobalUnreadCounter

logger = logging.getLogger(__name__)

Outgoing = Union[str, Dict[str, Any]]


class ChatSession:
    """
    One websocket connection bound to one open conversation.

    Handle and counter listeners only enqueue; a single pump task owns every
    write to the socket.
    """

    def __init__(self, websocket: WebSocket, synchronizer: ConversationSynchronizer, counter: GlobalUnreadCounter) -> None:
        self.websocket = websocket
        self.synchronizer = synchronizer
        self.counter = counter
        self.handle: Optional[ConversationHandle] = None
        self._outbox: "asyncio.Queue[Outgoing]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()

    async def connect(self, conversation_id: str) -> bool:
        try:
            handle = await self.synchronizer.open(conversation_id, visible=True)
        except NotFound:
            await self.websocket.close(code=4404)
            return False
        except AccessDenied:
            await self.websocket.close(code=4403)
            return False

        await self.websocket.accept()
        self.handle = handle
        handle.add_listener(self._on_handle_change)
        self.counter.add_listener(self._on_unread_total)
        await self.counter.start()
        self._outbox.put_nowait(self._snapshot())
        self._spawn(self._pump())
        return True

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_handle_change(self, handle: ConversationHandle, change: str) -> None:
        self._outbox.put_nowait(change)

    def _on_unread_total(self, count: int) -> None:
        self._outbox.put_nowait({"type": "global_unread", "count": count})

    def _snapshot(self) -> Dict[str, Any]:
        handle = self.handle
        return {
            "type": "snapshot",
            "conversation": handle.conversation.model_dump(mode="json"),
            "messages": [m.model_dump(mode="json") for m in handle.messages],
            "unread_count": handle.unread_count,
            "global_unread": self.counter.count,
            "live": handle.live,
        }

    def _frame(self, item: Outgoing) -> Dict[str, Any]:
        if isinstance(item, dict):
            return item
        handle = self.handle
        if item == MESSAGES:
            return {"type": "messages", "items": [m.model_dump(mode="json") for m in handle.messages]}
        if item == UNREAD:
            return {"type": "unread", "count": handle.unread_count}
        if item == TYPING:
            user = handle.typing_user
            return {"type": "typing", "is_typing": handle.is_typing, "user": user.model_dump(mode="json") if user else None}
        return {"type": item}

    async def _pump(self) -> None:
        while True:
            item = await self._outbox.get()
            try:
                await self.websocket.send_json(self._frame(item))
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("Socket gone, stopping pump for %s", self.synchronizer.viewer.id)
                return

    def error(self, detail: str, **extra: Any) -> None:
        self._outbox.put_nowait({"type": "error", "detail": detail, **extra})

    async def handle_frame(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == "send":
            # sends run beside the receive loop so typing and reads are not held up by a slow write
            self._spawn(self._send(frame))
        elif kind == "typing":
            await self.handle.notify_typing()
        elif kind == "mark_read":
            await self.handle.mark_read()
        elif kind == "visible":
            self.handle.set_visible(bool(frame.get("visible", True)))
        else:
            self.error(f"Unknown frame type: {kind}")

    async def _send(self, frame: Dict[str, Any]) -> None:
        attachment = None
        if frame.get("attachment"):
            try:
                attachment = Attachment.model_validate(frame["attachment"])
            except ValidationError as exc:
                self.error(f"Invalid attachment: {exc}", client_ref=frame.get("client_ref"))
                return
        try:
            message = await self.handle.send(frame.get("body") or "", attachment)
        except PersistFailure as exc:
            self.error(str(exc), client_ref=frame.get("client_ref"), draft=exc.draft)
        except (ChatError, ValueError) as exc:
            self.error(str(exc), client_ref=frame.get("client_ref"))
        else:
            self._outbox.put_nowait({"type": "sent", "client_ref": frame.get("client_ref"), "message": message.model_dump(mode="json")})

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self.counter.remove_listener(self._on_unread_total)
        await self.counter.stop()
        await self.synchronizer.close_all()


class ChatListSession:
    """Websocket stream of the viewer's chat list: one full frame per change."""

    def __init__(self, websocket: WebSocket, tracker: ConversationListTracker) -> None:
        self.websocket = websocket
        self.tracker = tracker
        self._changed = asyncio.Event()
        self._pump_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        await self.websocket.accept()
        self.tracker.add_listener(self._on_change)
        await self.tracker.start()
        self._changed.set()
        self._pump_task = asyncio.create_task(self._pump())

    def _on_change(self, tracker: ConversationListTracker) -> None:
        self._changed.set()

    def _frame(self) -> Dict[str, Any]:
        return {
            "type": "conversations",
            "items": [s.model_dump(mode="json") for s in self.tracker.conversations],
            "total_unread": self.tracker.total_unread,
        }

    async def _pump(self) -> None:
        while True:
            await self._changed.wait()
            # bursts of changes collapse into one frame
            self._changed.clear()
            try:
                await self.websocket.send_json(self._frame())
            except (WebSocketDisconnect, RuntimeError):
                return

    async def close(self) -> None:
        if self._pump_task is not None:
            self._pump_task.cancel()
        self.tracker.remove_listener(self._on_change)
        await self.tracker.stop()
