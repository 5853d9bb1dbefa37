import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from chapter_assistant.agent import STATUS_CONNECTED, AgentRegistry
from chapter_assistant.chat import LocalChatPlatform
from chapter_assistant.config import AppSettings, load_settings
from chapter_assistant.errors import AssistantError
from chapter_assistant.responder import InMemoryThrottleLedger
from chapter_assistant.services import INDEX_KINDS, Services, build_services

LOCAL_CHANNEL = "local-cli"


def _print_json(data: dict) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def _refresh(services: Services, kind: str) -> int:
    kinds = INDEX_KINDS if kind == "all" else (kind,)
    failures = 0
    for name in kinds:
        try:
            snapshot = await services.indices[name].refresh()
        except AssistantError as exc:
            print(f"{name}: refresh failed: {exc.message}")
            failures += 1
            continue
        count = len(snapshot.get(services.indices[name].items_key) or [])
        print(f"{name}: {count} entries indexed at {snapshot.get('refreshedAt')}")
    return 1 if failures else 0


async def _search(services: Services, kind: str, query: str, limit: Optional[int]) -> int:
    try:
        result = await services.indices[kind].search(query, limit)
    except AssistantError as exc:
        print(f"{kind}: search failed: {exc.message}")
        return 1
    _print_json(result)
    return 0


async def _status(services: Services) -> int:
    for name in INDEX_KINDS:
        status = await services.indices[name].status()
        if status.get("exists"):
            print(f"{name}: {status.get('count', 0)} entries, refreshed {status.get('refreshedAt')}")
        else:
            print(f"{name}: no snapshot at {status.get('path')}")
    return 0


def _local_registry(services: Services, platform: LocalChatPlatform) -> AgentRegistry:
    return AgentRegistry(
        platform,
        services.model_client,
        services.dispatcher,
        InMemoryThrottleLedger(),
        services.settings,
        http_client=services.http_client,
    )


def _print_reply(platform: LocalChatPlatform) -> int:
    replies = [m for m in platform.messages.values() if m.get("ai_generated")]
    if not replies:
        print("No reply was produced.")
        return 1
    reply = replies[-1]
    print(reply.get("text") or "")
    for attachment in reply.get("attachments") or []:
        print(f"[image] {attachment.get('title') or ''} {attachment.get('image_url')}")
    return 0


async def _ask(services: Services, text: str, image_url: Optional[str]) -> int:
    platform = LocalChatPlatform()
    registry = _local_registry(services, platform)
    agent = await registry.start(LOCAL_CHANNEL)
    message = {"text": text, "user_id": "local-user"}
    if image_url:
        message["attachments"] = [{"type": "image", "image_url": image_url}]
    try:
        await platform.send_message(LOCAL_CHANNEL, message)
        await agent.wait_idle()
    finally:
        await registry.close()
    return _print_reply(platform)


async def _chat(services: Services, read_line: Callable[[str], str] = input) -> int:
    platform = LocalChatPlatform()
    registry = _local_registry(services, platform)
    agent = await registry.start(LOCAL_CHANNEL)
    registry.start_sweeper()
    try:
        while True:
            try:
                line = await asyncio.to_thread(read_line, "> ")
            except EOFError:
                break
            text = line.strip()
            if text in ("exit", "quit"):
                break
            if not text:
                continue
            if registry.status(LOCAL_CHANNEL) != STATUS_CONNECTED:
                agent = await registry.start(LOCAL_CHANNEL)
            await platform.send_message(LOCAL_CHANNEL, {"text": text, "user_id": "local-user"})
            await agent.wait_idle()
            _print_reply(platform)
    finally:
        await registry.close()
    return 0


async def _dispatch(args: argparse.Namespace, settings: AppSettings) -> int:
    services = build_services(settings)
    try:
        if args.command == "index" and args.index_cmd == "refresh":
            return await _refresh(services, args.kind)
        if args.command == "index" and args.index_cmd == "search":
            return await _search(services, args.kind, args.query, args.limit)
        if args.command == "index" and args.index_cmd == "status":
            return await _status(services)
        if args.command == "ask":
            return await _ask(services, args.text, args.image_url)
        if args.command == "chat":
            return await _chat(services)
        return 1
    finally:
        await services.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GDGoC chapter assistant CLI")
    parser.add_argument("--config", default=None, help="Path to config.json")
    subparsers = parser.add_subparsers(dest="command")

    index = subparsers.add_parser("index", help="Knowledge index management")
    index_sub = index.add_subparsers(dest="index_cmd")

    refresh = index_sub.add_parser("refresh", help="Rebuild snapshot files from raw sources")
    refresh.add_argument("kind", choices=list(INDEX_KINDS) + ["all"])

    search = index_sub.add_parser("search", help="Query a snapshot")
    search.add_argument("kind", choices=list(INDEX_KINDS))
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=None, help="Max results")

    index_sub.add_parser("status", help="Show snapshot status")

    ask = subparsers.add_parser("ask", help="Ask the assistant one question")
    ask.add_argument("text")
    ask.add_argument("--image-url", default=None, help="Attach an image by URL")

    subparsers.add_parser("chat", help="Chat with the assistant interactively")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    known = args.command in ("ask", "chat") or (args.command == "index" and args.index_cmd)
    if not known:
        parser.print_help()
        return 1
    settings = load_settings(Path(args.config) if args.config else None)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(_dispatch(args, settings))


if __name__ == "__main__":
    sys.exit(main())
