"""Chat-platform boundary.

The response loop only talks to a ``ChatPlatform``. ``LocalChatPlatform`` is
the in-memory implementation used by the CLI and the tests.
"""

import asyncio
import copy
import inspect
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)

MESSAGE_NEW = "message.new"
AI_INDICATOR_UPDATE = "ai_indicator.update"
AI_INDICATOR_CLEAR = "ai_indicator.clear"
AI_INDICATOR_STOP = "ai_indicator.stop"

AI_STATE_THINKING = "AI_STATE_THINKING"
AI_STATE_GENERATING = "AI_STATE_GENERATING"
AI_STATE_EXTERNAL_SOURCES = "AI_STATE_EXTERNAL_SOURCES"
AI_STATE_ERROR = "AI_STATE_ERROR"

EventHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class ChatPlatform(Protocol):
    async def send_message(self, channel_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def partial_update_message(self, message_id: str, set: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def send_event(self, event: Dict[str, Any]) -> None:
        ...

    def on(self, event_type: str, handler: EventHandler) -> None:
        ...

    def off(self, event_type: str, handler: EventHandler) -> None:
        ...


def indicator_event(message: Dict[str, Any], state: Optional[str] = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "type": AI_INDICATOR_UPDATE if state else AI_INDICATOR_CLEAR,
        "cid": message.get("cid"),
        "message_id": message.get("id"),
    }
    if state:
        event["ai_state"] = state
    return event


class LocalChatPlatform:
    """In-memory message store with per-event-type fan-out."""

    def __init__(self) -> None:
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.updates: List[Dict[str, Any]] = []
        self.handlers: Dict[str, List[EventHandler]] = {}
        self.subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()

    async def send_message(self, channel_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(message)
        stored.setdefault("id", uuid.uuid4().hex)
        stored["cid"] = channel_id
        stored.setdefault("text", "")
        stored.setdefault("attachments", [])
        self.messages[stored["id"]] = stored
        await self.send_event({"type": MESSAGE_NEW, "cid": channel_id, "message": copy.deepcopy(stored)})
        return copy.deepcopy(stored)

    async def partial_update_message(self, message_id: str, set: Dict[str, Any]) -> Dict[str, Any]:
        message = self.messages.get(message_id)
        if message is None:
            raise KeyError(f"unknown message {message_id}")
        message.update(copy.deepcopy(set))
        self.updates.append({"message_id": message_id, "set": copy.deepcopy(set)})
        return copy.deepcopy(message)

    async def send_event(self, event: Dict[str, Any]) -> None:
        self.events.append(event)
        handlers = list(self.handlers.get(event.get("type", ""), []))
        async with self.lock:
            queues = list(self.subscribers)
        for queue in queues:
            await queue.put(event)
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event.get("type"))

    def on(self, event_type: str, handler: EventHandler) -> None:
        self.handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self.handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self.handlers.pop(event_type, None)

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.append(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.subscribers:
                self.subscribers.remove(queue)

    def events_for(self, message_id: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event.get("message_id") == message_id]
