"""The per-message response loop.

A ``ResponseRun`` drives one streamed, possibly multi-turn conversation with
the model for a single outbound placeholder message: it streams text into the
placeholder, dispatches tool calls, feeds their results back, and ends with a
final flush. Cancellation is cooperative. A stop signal marks the run done so
every later flush or status update becomes a no-op, but a request already in
flight is left to finish in the background.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import httpx

from .chat import (
    AI_INDICATOR_STOP,
    AI_STATE_ERROR,
    AI_STATE_EXTERNAL_SOURCES,
    AI_STATE_GENERATING,
    ChatPlatform,
    indicator_event,
)
from .config import AppSettings
from .errors import AssistantError, RateLimited, user_notice
from .llm import ChatSession, ModelStream, fetch_image_part
from .tools import ToolCall, ToolDispatcher, ToolResult, image_refs

logger = logging.getLogger(__name__)

THROTTLE_MESSAGE = "Please wait a few seconds before sending another message."


class RunPhase(str, Enum):
    AWAITING_TURN = "awaiting_turn"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class RunState:
    accumulated_text: str = ""
    last_flush_at: Optional[float] = None
    is_done: bool = False
    image_attachments: List[Dict[str, Any]] = field(default_factory=list)


class ThrottleLedger(Protocol):
    def get(self, key: str) -> Optional[float]:
        ...

    def set(self, key: str, value: float) -> None:
        ...


class InMemoryThrottleLedger:
    def __init__(self) -> None:
        self._entries: Dict[str, float] = {}

    def get(self, key: str) -> Optional[float]:
        return self._entries.get(key)

    def set(self, key: str, value: float) -> None:
        self._entries[key] = value


# Shared by every run in the process unless a ledger is injected.
PROCESS_THROTTLE_LEDGER = InMemoryThrottleLedger()


class ResponseRun:
    def __init__(
        self,
        session: ChatSession,
        dispatcher: ToolDispatcher,
        platform: ChatPlatform,
        message: Dict[str, Any],
        initial_text: str,
        image_url: Optional[str] = None,
        ledger: Optional[ThrottleLedger] = None,
        settings: Optional[AppSettings] = None,
        on_dispose: Optional[Callable[[], None]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.platform = platform
        self.message = message
        self.initial_text = initial_text or ""
        self.image_url = image_url
        self.ledger = ledger if ledger is not None else PROCESS_THROTTLE_LEDGER
        self.settings = settings or AppSettings()
        self.on_dispose = on_dispose
        self.http_client = http_client
        self.clock = clock
        self.sleep = sleep
        self.state = RunState()
        self.phase = RunPhase.AWAITING_TURN
        self.platform.on(AI_INDICATOR_STOP, self._handle_stop)

    @property
    def message_id(self) -> str:
        return self.message["id"]

    @property
    def conversation_id(self) -> str:
        return str(self.message.get("cid") or "")

    async def run(self) -> None:
        logger.info("Response run started for message %s", self.message_id)
        try:
            if not self._accept():
                await self._finish_throttled()
                return
            await self._converse()
        except Exception as exc:
            await self._fail(exc)
        finally:
            await self.dispose()
        logger.info("Response run for message %s ended in phase %s", self.message_id, self.phase.value)

    def _accept(self) -> bool:
        # No suspension point between the read and the write below.
        now = self.clock()
        last = self.ledger.get(self.conversation_id)
        if last is not None and now - last < self.settings.throttle_interval_s:
            logger.info("Throttled run for conversation %s", self.conversation_id)
            return False
        self.ledger.set(self.conversation_id, now)
        return True

    async def _finish_throttled(self) -> None:
        if self.state.is_done:
            return
        await self.platform.partial_update_message(self.message_id, {"text": THROTTLE_MESSAGE})
        await self.platform.send_event(indicator_event(self.message))
        self.phase = RunPhase.COMPLETE

    async def _converse(self) -> None:
        user_text = self.initial_text
        pending: List[ToolResult] = []
        first_turn = True
        while not self.state.is_done:
            self.phase = RunPhase.AWAITING_TURN
            parts: List[Dict[str, Any]] = []
            if first_turn and self.image_url:
                parts.append(await self._image_part())
            first_turn = False
            if user_text:
                parts.append({"text": user_text})
            parts.extend({"tool_result": result} for result in pending)
            pending = []
            if not parts:
                await self._complete()
                return

            stream = await self._open_stream(parts)
            if stream is None:
                return
            if self.state.is_done:
                await stream.aclose()
                return
            self.phase = RunPhase.STREAMING
            await self._indicate(AI_STATE_GENERATING)

            tool_calls: List[ToolCall] = []
            async for chunk in stream:
                if chunk.text:
                    self.state.accumulated_text += chunk.text
                    await self._flush(final=False)
                tool_calls.extend(chunk.tool_calls)
            if self.state.is_done:
                return

            if not tool_calls:
                await self._complete()
                return

            self.phase = RunPhase.TOOL_DISPATCH
            await self._indicate(AI_STATE_EXTERNAL_SOURCES)
            pending = await self.dispatcher.dispatch_all(tool_calls, cancelled=lambda: self.state.is_done)
            for result in pending:
                self.state.image_attachments.extend(image_refs(result))
            user_text = ""

    async def _image_part(self) -> Dict[str, Any]:
        if self.http_client is not None:
            return await fetch_image_part(self.http_client, self.image_url)
        async with httpx.AsyncClient(timeout=30) as client:
            return await fetch_image_part(client, self.image_url)

    async def _open_stream(self, parts: List[Dict[str, Any]]) -> Optional[ModelStream]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.session.send_message_stream(parts)
            except RateLimited:
                if attempt >= self.settings.retry_max_attempts:
                    raise
                delay = self.settings.retry_base_delay_s * 2 ** attempt
                logger.warning(
                    "Model rate limited on attempt %s/%s; retrying in %.1fs",
                    attempt,
                    self.settings.retry_max_attempts,
                    delay,
                )
                await self.sleep(delay)
                if self.state.is_done:
                    return None

    async def _flush(self, final: bool) -> None:
        if self.state.is_done:
            return
        now = self.clock()
        if not final and self.state.last_flush_at is not None:
            if now - self.state.last_flush_at < self.settings.flush_interval_s:
                return
        update: Dict[str, Any] = {"text": self.state.accumulated_text}
        if final and self.state.image_attachments:
            update["attachments"] = [
                {
                    "type": "image",
                    "image_url": ref["image_url"],
                    "thumb_url": ref.get("thumb_url"),
                    "title": ref.get("name"),
                }
                for ref in self.state.image_attachments[: self.settings.max_image_attachments]
            ]
        await self.platform.partial_update_message(self.message_id, update)
        self.state.last_flush_at = now

    async def _complete(self) -> None:
        if self.state.is_done:
            return
        await self._flush(final=True)
        await self.platform.send_event(indicator_event(self.message))
        self.phase = RunPhase.COMPLETE

    async def _indicate(self, ai_state: str) -> None:
        if self.state.is_done:
            return
        await self.platform.send_event(indicator_event(self.message, ai_state))

    async def _fail(self, exc: Exception) -> None:
        if isinstance(exc, AssistantError):
            logger.warning("Response run for message %s failed: %s", self.message_id, exc.message)
        else:
            logger.error("Response run for message %s failed", self.message_id, exc_info=exc)
        if self.state.is_done:
            return
        self.phase = RunPhase.FAILED
        await self.platform.send_event(indicator_event(self.message, AI_STATE_ERROR))
        await self.platform.partial_update_message(self.message_id, {"text": user_notice(exc)})

    async def _handle_stop(self, event: Dict[str, Any]) -> None:
        if self.state.is_done or event.get("message_id") != self.message_id:
            return
        logger.info("Stop requested for message %s", self.message_id)
        await self.dispose()

    async def dispose(self) -> None:
        if self.state.is_done:
            return
        self.state.is_done = True
        self.platform.off(AI_INDICATOR_STOP, self._handle_stop)
        await self.platform.send_event(indicator_event(self.message))
        if self.on_dispose is not None:
            self.on_dispose()
