import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from proposal_chat.config import get_settings
from proposal_chat.errors import SubscriptionFailure
from proposal_chat.schemas.chat import BroadcastFrame, ChangeEvent

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], Awaitable[None]]
ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]
SignalCallback = Callable[[Dict[str, Any]], Awaitable[None]]

CHANGES_CHANNEL = "chat:changes"


def changes_channel(conversation_id: Optional[str] = None) -> str:
    if conversation_id is None:
        return CHANGES_CHANNEL
    return f"chat:{conversation_id}:changes"


def broadcast_channel(conversation_id: str) -> str:
    return f"chat:{conversation_id}:broadcast"


class LocalBus:
    """In-process fan-out used when no REDIS_URL is configured (single worker only)."""

    enabled = False

    def __init__(self) -> None:
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, [])):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: MessageCallback):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, []).append(queue)
        queues = self._queues

        class _Sub:
            async def run(self_inner):
                while True:
                    data = await queue.get()
                    try:
                        await on_message(data)
                    except Exception:
                        logger.exception("Handler failed for message on %s", channel)

            async def cancel(self_inner):
                subscribers = queues.get(channel)
                if subscribers and queue in subscribers:
                    subscribers.remove(queue)
                    if not subscribers:
                        del queues[channel]

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, []))

    async def close(self) -> None:
        self._queues.clear()


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageCallback):
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except (RedisError, OSError) as exc:
            raise SubscriptionFailure(f"Could not subscribe to {channel}: {exc}") from exc

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if msg and msg.get("type") == "message":
                            data = msg.get("data")
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            await on_message(data)
                    except asyncio.CancelledError:
                        raise
                    except Exception:
                        logger.exception("Realtime subscription on %s failed, retrying", channel)
                        await asyncio.sleep(0.5)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except (RedisError, OSError) as exc:
                    logger.warning("Failed to unsubscribe from %s: %s", channel, exc)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


class Subscription:
    """Handle over one or more bus subscriptions; released together, at most once."""

    def __init__(self, entries: List[Tuple[Any, asyncio.Task]]) -> None:
        self._entries = entries

    @classmethod
    def merge(cls, *subscriptions: "Subscription") -> "Subscription":
        entries: List[Tuple[Any, asyncio.Task]] = []
        for subscription in subscriptions:
            entries.extend(subscription._entries)
            subscription._entries = []
        return cls(entries)

    @property
    def active(self) -> bool:
        return bool(self._entries)

    async def unsubscribe(self) -> None:
        entries, self._entries = self._entries, []
        for sub, task in entries:
            await sub.cancel()
            task.cancel()


class RealtimeEventBus:
    """
    Change feed and ephemeral broadcast over a raw pub/sub bus.

    Change events are published twice: on the conversation's own channel and on
    the global channel, so chat lists and unread counters can follow every
    conversation without subscribing to each one.
    """

    def __init__(self, bus) -> None:
        self._bus = bus

    @property
    def raw(self):
        return self._bus

    async def _subscribe(self, channel: str, on_message: MessageCallback) -> Subscription:
        sub = await self._bus.subscribe(channel, on_message)
        task = asyncio.create_task(sub.run())
        return Subscription([(sub, task)])

    async def subscribe_changes(
        self,
        conversation_id: Optional[str],
        on_insert: Optional[ChangeCallback] = None,
        on_update: Optional[ChangeCallback] = None,
    ) -> Subscription:
        channel = changes_channel(conversation_id)

        async def _dispatch(raw: str) -> None:
            try:
                event = ChangeEvent.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("Dropping malformed change event on %s: %s", channel, exc)
                return
            if event.type == "INSERT" and on_insert is not None:
                await on_insert(event)
            elif event.type == "UPDATE" and on_update is not None:
                await on_update(event)

        return await self._subscribe(channel, _dispatch)

    async def subscribe_broadcast(self, conversation_id: str, event: str, on_signal: SignalCallback) -> Subscription:
        channel = broadcast_channel(conversation_id)

        async def _dispatch(raw: str) -> None:
            try:
                frame = BroadcastFrame.model_validate_json(raw)
            except ValidationError as exc:
                logger.warning("Dropping malformed broadcast on %s: %s", channel, exc)
                return
            if frame.event == event:
                await on_signal(frame.payload)

        return await self._subscribe(channel, _dispatch)

    async def publish_change(self, event: ChangeEvent) -> bool:
        data = event.model_dump_json()
        try:
            await self._bus.publish(changes_channel(event.conversation_id), data)
            await self._bus.publish(CHANGES_CHANNEL, data)
        except (RedisError, OSError) as exc:
            logger.warning("Failed to publish %s change for conversation %s: %s", event.type, event.conversation_id, exc)
            return False
        return True

    async def publish_broadcast(self, conversation_id: str, event: str, payload: Dict[str, Any]) -> bool:
        data = json.dumps({"event": event, "payload": payload}, default=str)
        try:
            await self._bus.publish(broadcast_channel(conversation_id), data)
        except (RedisError, OSError) as exc:
            logger.warning("Failed to publish %s broadcast for conversation %s: %s", event, conversation_id, exc)
            return False
        return True

    async def close(self) -> None:
        await self._bus.close()


_bus: Optional[RealtimeEventBus] = None


async def get_bus() -> RealtimeEventBus:
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if url:
        _bus = RealtimeEventBus(RedisBus(url))
    else:
        logger.info("REDIS_URL not set, realtime events stay inside this process")
        _bus = RealtimeEventBus(LocalBus())
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
