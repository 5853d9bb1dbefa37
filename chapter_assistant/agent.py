import asyncio
import logging
import time
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from .chat import AI_STATE_THINKING, MESSAGE_NEW, ChatPlatform, indicator_event
from .config import AppSettings
from .llm import ChatSession, ModelClient
from .responder import ResponseRun, ThrottleLedger
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)

STATUS_CONNECTED = "connected"
STATUS_CONNECTING = "connecting"
STATUS_DISCONNECTED = "disconnected"


def build_system_prompt(settings: AppSettings, today: Optional[date] = None) -> str:
    today = today or date.today()
    sites = settings.web_search_sites
    site_list = ", ".join(sites)
    example_site = sites[0] if sites else ""
    phrase = settings.web_search_phrase
    stamp = f"{today.strftime('%B')} {today.day}, {today.year}"
    return f"""You are the {settings.assistant_name}, a helpful and friendly guide for students and community members of the GDGoC IET DAVV chapter (formerly GDSC IET DAVV).

Scope:
- Answer questions about the chapter's events, workshops, membership, tech domains and past activities.
- Your knowledge is limited to the chapter's local datasets, its Drive image folder and these official sources: {site_list}.

Tool use, in this order:
1. qa_search for a direct question and answer match.
2. json_search, then csv_search, for structured records.
3. web_search only when the local sources have nothing relevant. Scope every query with a site: prefix from the official sources and include the phrase "{phrase}", for example 'site:{example_site} "{phrase}" upcoming events'.
4. drive_image_search for photos or posters. Mention relevant images in your answer; they are attached automatically.

Answering:
- Base every answer only on tool results. Never invent details.
- If nothing relevant is found, say you could not find it on the official sources.
- Be friendly and direct, use lists or bold text where it helps, and keep answers to 4-6 lines unless asked for more.

Today's date is {stamp}. Assume questions are about this chapter unless told otherwise."""


def first_image_url(message: Dict[str, Any]) -> Optional[str]:
    for attachment in message.get("attachments") or []:
        if isinstance(attachment, dict) and attachment.get("type") == "image":
            url = attachment.get("image_url") or attachment.get("asset_url")
            if url:
                return url
    return None


class ChannelAgent:
    """Answers every user message posted to one channel."""

    def __init__(
        self,
        channel_id: str,
        platform: ChatPlatform,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        ledger: ThrottleLedger,
        settings: AppSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel_id = channel_id
        self.platform = platform
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.settings = settings
        self.http_client = http_client
        self.clock = clock
        self.session: Optional[ChatSession] = None
        self.runs: Dict[str, ResponseRun] = {}
        self.tasks: Set[asyncio.Task] = set()
        self.last_interaction = clock()

    async def init(self) -> None:
        self.session = self.model_client.create_session(
            build_system_prompt(self.settings), self.dispatcher.declarations
        )
        self.platform.on(MESSAGE_NEW, self.handle_message)

    async def handle_message(self, event: Dict[str, Any]) -> Optional[ResponseRun]:
        if self.session is None:
            logger.warning("Agent for %s received a message before init", self.channel_id)
            return None
        message = event.get("message") or {}
        if message.get("cid", event.get("cid")) != self.channel_id or message.get("ai_generated"):
            return None
        text = message.get("text") or ""
        image_url = first_image_url(message)
        if not text and not image_url:
            return None

        self.last_interaction = self.clock()
        placeholder = await self.platform.send_message(self.channel_id, {"text": "", "ai_generated": True})
        await self.platform.send_event(indicator_event(placeholder, AI_STATE_THINKING))

        message_id = placeholder["id"]
        run = ResponseRun(
            session=self.session,
            dispatcher=self.dispatcher,
            platform=self.platform,
            message=placeholder,
            initial_text=text,
            image_url=image_url,
            ledger=self.ledger,
            settings=self.settings,
            on_dispose=lambda: self.runs.pop(message_id, None),
            http_client=self.http_client,
        )
        self.runs[message_id] = run
        task = asyncio.create_task(run.run())
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return run

    async def wait_idle(self) -> None:
        while self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def dispose(self) -> None:
        self.platform.off(MESSAGE_NEW, self.handle_message)
        for run in list(self.runs.values()):
            await run.dispose()
        self.runs.clear()


class AgentRegistry:
    """Tracks one agent per channel and retires idle ones."""

    def __init__(
        self,
        platform: ChatPlatform,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        ledger: ThrottleLedger,
        settings: AppSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.platform = platform
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.settings = settings
        self.http_client = http_client
        self.clock = clock
        self.agents: Dict[str, ChannelAgent] = {}
        self.pending: Set[str] = set()
        self.sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def bot_user_id(channel_id: str) -> str:
        return f"ai-bot-{channel_id.replace('!', '')}"

    async def start(self, channel_id: str) -> Optional[ChannelAgent]:
        if channel_id in self.agents:
            return self.agents[channel_id]
        if channel_id in self.pending:
            return None
        self.pending.add(channel_id)
        try:
            agent = ChannelAgent(
                channel_id,
                self.platform,
                self.model_client,
                self.dispatcher,
                self.ledger,
                self.settings,
                http_client=self.http_client,
                clock=self.clock,
            )
            await agent.init()
            self.agents[channel_id] = agent
            logger.info("Agent %s started for channel %s", self.bot_user_id(channel_id), channel_id)
            return agent
        finally:
            self.pending.discard(channel_id)

    async def stop(self, channel_id: str) -> bool:
        agent = self.agents.pop(channel_id, None)
        if agent is None:
            return False
        await agent.dispose()
        logger.info("Agent %s stopped", self.bot_user_id(channel_id))
        return True

    def status(self, channel_id: str) -> str:
        if channel_id in self.agents:
            return STATUS_CONNECTED
        if channel_id in self.pending:
            return STATUS_CONNECTING
        return STATUS_DISCONNECTED

    async def dispose_inactive(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        idle = [
            channel_id
            for channel_id, agent in self.agents.items()
            if now - agent.last_interaction > self.settings.inactivity_threshold_s
        ]
        for channel_id in idle:
            logger.info("Disposing inactive agent for channel %s", channel_id)
            await self.stop(channel_id)
        return idle

    async def sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_s)
            await self.dispose_inactive()

    def start_sweeper(self) -> asyncio.Task:
        if self.sweeper is None or self.sweeper.done():
            self.sweeper = asyncio.create_task(self.sweep_forever())
        return self.sweeper

    async def close(self) -> None:
        if self.sweeper is not None:
            self.sweeper.cancel()
            try:
                await self.sweeper
            except asyncio.CancelledError:
                pass
            self.sweeper = None
        for channel_id in list(self.agents):
            await self.stop(channel_id)
