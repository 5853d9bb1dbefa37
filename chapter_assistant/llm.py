import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from .errors import MediaFetchError, RateLimited, StreamInterrupted, UpstreamFailure
from .tools import ToolCall, ToolResult

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429


@dataclass
class StreamChunk:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


def data_url(mime: str, data: str) -> str:
    return f"data:{mime};base64,{data}"


async def fetch_image_part(client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    """Download an attachment and wrap it as an inline image part."""
    try:
        resp = await client.get(url, follow_redirects=True)
    except httpx.RequestError as exc:
        raise MediaFetchError(f"Failed to fetch image from URL: {url}") from exc
    if resp.status_code >= 400:
        raise MediaFetchError(f"Failed to fetch image from URL: {url} ({resp.status_code})")
    mime = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        raise MediaFetchError(f"URL did not point to a valid image. Mime type: {mime or None}")
    return {"image": {"mime_type": mime, "data": base64.b64encode(resp.content).decode("utf-8")}}


def _merge_tool_fragment(pending: Dict[int, Dict[str, Any]], fragment: Dict[str, Any], position: int) -> None:
    index = fragment.get("index")
    if not isinstance(index, int):
        index = position
    entry = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if fragment.get("id"):
        entry["id"] = fragment["id"]
    function = fragment.get("function") or {}
    if function.get("name"):
        entry["name"] = function["name"]
    arguments = function.get("arguments")
    if isinstance(arguments, str):
        entry["arguments"] += arguments
    elif isinstance(arguments, dict):
        entry["arguments"] = json.dumps(arguments)


def _finalize_tool_calls(pending: Dict[int, Dict[str, Any]]) -> List[ToolCall]:
    calls = []
    for index in sorted(pending):
        entry = pending[index]
        try:
            arguments = json.loads(entry["arguments"]) if entry["arguments"] else {}
        except ValueError:
            # Left to the dispatcher, which reports the missing arguments back to the model.
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(id=entry["id"] or f"call_{index}", name=entry["name"], arguments=arguments))
    return calls


class ModelStream:
    """One streamed model turn: a lazy, finite, non-restartable chunk sequence.

    Text deltas are yielded as they arrive. Tool calls are yielded once the
    model has finished the turn. A connection that ends before the model
    signals completion raises StreamInterrupted.
    """

    def __init__(
        self,
        response: httpx.Response,
        on_complete: Optional[Callable[[str, List[ToolCall]], None]] = None,
    ):
        self._response = response
        self._on_complete = on_complete
        self._started = False

    def __aiter__(self) -> AsyncIterator[StreamChunk]:
        if self._started:
            raise RuntimeError("model streams cannot be restarted")
        self._started = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamChunk]:
        text_parts: List[str] = []
        pending: Dict[int, Dict[str, Any]] = {}
        finished = False
        try:
            try:
                async for line in self._response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        finished = True
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        continue
                    if not isinstance(data, dict):
                        continue
                    if data.get("error"):
                        raise UpstreamFailure(f"model stream error: {data['error']}")
                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}
                    for position, fragment in enumerate(delta.get("tool_calls") or []):
                        if isinstance(fragment, dict):
                            _merge_tool_fragment(pending, fragment, position)
                    if choice.get("finish_reason"):
                        finished = True
                    text = delta.get("content")
                    if text:
                        text_parts.append(text)
                        yield StreamChunk(text=text)
            except httpx.HTTPError as exc:
                raise StreamInterrupted(f"model stream dropped: {exc}") from exc
            if not finished:
                raise StreamInterrupted("model stream ended before the turn finished")
            tool_calls = _finalize_tool_calls(pending)
            if tool_calls:
                yield StreamChunk(tool_calls=tool_calls)
            if self._on_complete is not None:
                self._on_complete("".join(text_parts), tool_calls)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._response.is_closed:
            await self._response.aclose()


class ChatSession:
    """A persistent conversation with a fixed system prompt and tool set.

    ``history`` only ever holds complete exchanges. A turn that asks for
    tools opens a round that stays in ``open_round`` until the model answers
    without further tool calls; only then is the whole round committed. A
    round left open by a failed or stopped run is dropped when the next user
    turn starts, so the history never ends in unanswered tool calls.
    """

    def __init__(self, client: "ModelClient", system_prompt: str, tools: List[dict]):
        self.client = client
        self.tools = tools
        self.history: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        self.open_round: List[Dict[str, Any]] = []

    def build_messages(self, parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = []
        tool_messages: List[Dict[str, Any]] = []
        for part in parts:
            if "image" in part:
                image = part["image"]
                content.append({"type": "image_url", "image_url": {"url": data_url(image["mime_type"], image["data"])}})
            elif "text" in part:
                content.append({"type": "text", "text": part["text"]})
            elif "tool_result" in part:
                result: ToolResult = part["tool_result"]
                tool_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "name": result.name,
                        "content": json.dumps(result.response, ensure_ascii=False, default=str),
                    }
                )
        # Tool responses must directly follow the assistant turn that requested them.
        messages = list(tool_messages)
        if content:
            if len(content) == 1 and content[0]["type"] == "text":
                messages.append({"role": "user", "content": content[0]["text"]})
            else:
                messages.append({"role": "user", "content": content})
        return messages

    def discard_open_round(self) -> None:
        if self.open_round:
            logger.warning("Dropping %d messages of an unfinished tool round", len(self.open_round))
            self.open_round = []

    async def send_message_stream(self, parts: List[Dict[str, Any]]) -> ModelStream:
        new_messages = self.build_messages(parts)
        if not new_messages:
            raise ValueError("a turn needs at least one text, image or tool result part")
        if not any(message["role"] == "tool" for message in new_messages):
            self.discard_open_round()
        payload = {
            "model": self.client.model,
            "messages": self.history + self.open_round + new_messages,
            "tools": self.tools,
            "temperature": self.client.temperature,
            "stream": True,
        }
        response = await self.client.open_stream(payload)

        def _commit(text: str, tool_calls: List[ToolCall]) -> None:
            assistant: Dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                assistant["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                    for call in tool_calls
                ]
                self.open_round.extend(new_messages)
                self.open_round.append(assistant)
                return
            self.history.extend(self.open_round)
            self.history.extend(new_messages)
            self.history.append(assistant)
            self.open_round = []

        return ModelStream(response, _commit)


class ModelClient:
    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.temperature = temperature
        self.client = client or httpx.AsyncClient(timeout=60)

    def create_session(self, system_prompt: str, tools: List[dict]) -> ChatSession:
        return ChatSession(self, system_prompt, tools)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, (dict, list)):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def open_stream(self, payload: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/chat/completions"
        request = self.client.build_request("POST", url, json=payload, headers=self._headers())
        try:
            response = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise UpstreamFailure(f"model request failed: {exc}") from exc
        if response.status_code < 400:
            return response
        try:
            await response.aread()
            detail = self._extract_error_detail(response)[:500]
        except httpx.HTTPError:
            detail = ""
        finally:
            await response.aclose()
        logger.warning("Model endpoint returned %s for %s", response.status_code, self.model)
        if response.status_code == RATE_LIMIT_STATUS:
            raise RateLimited(f"model endpoint rate limited: {detail}", status_code=response.status_code)
        raise UpstreamFailure(
            f"model endpoint returned {response.status_code}: {detail}", status_code=response.status_code
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
