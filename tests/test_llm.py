import json

import httpx
import pytest
import respx
from httpx import Response

from chapter_assistant.errors import MediaFetchError, RateLimited, StreamInterrupted, UpstreamFailure
from chapter_assistant.llm import ModelClient, fetch_image_part
from chapter_assistant.tools import TOOL_DECLARATIONS, ToolResult
from tests.fakes import delta, sse

BASE_URL = "http://model.test/v1"
COMPLETIONS_URL = f"{BASE_URL}/chat/completions"


async def collect(stream):
    text = ""
    calls = []
    async for chunk in stream:
        text += chunk.text
        calls.extend(chunk.tool_calls)
    return text, calls


@pytest.mark.asyncio
async def test_stream_yields_text_and_commits_history():
    client = ModelClient(BASE_URL, "test-model", api_key="model-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, content=sse(delta("Hello"), delta(" there"), delta(finish_reason="stop")))

            respx_mock.post(COMPLETIONS_URL).mock(side_effect=handler)
            session = client.create_session("system prompt", TOOL_DECLARATIONS)
            stream = await session.send_message_stream([{"text": "hi"}])
            text, calls = await collect(stream)
    finally:
        await client.close()

    assert text == "Hello there"
    assert calls == []
    assert captured["json"]["stream"] is True
    assert captured["json"]["model"] == "test-model"
    assert captured["json"]["messages"] == [
        {"role": "system", "content": "system prompt"},
        {"role": "user", "content": "hi"},
    ]
    assert captured["headers"]["Authorization"] == "Bearer model-key"
    assert session.history[-1] == {"role": "assistant", "content": "Hello there"}


@pytest.mark.asyncio
async def test_tool_call_fragments_are_merged_and_results_sent_back():
    client = ModelClient(BASE_URL, "test-model")
    bodies = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                bodies.append(json.loads(request.content.decode("utf-8")))
                if len(bodies) == 1:
                    return Response(
                        200,
                        content=sse(
                            delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "qa_search", "arguments": '{"que'}}]),
                            delta(tool_calls=[{"index": 0, "function": {"arguments": 'ry": "join"}'}}]),
                            delta(finish_reason="tool_calls"),
                        ),
                    )
                return Response(200, content=sse(delta("Register online."), delta(finish_reason="stop")))

            respx_mock.post(COMPLETIONS_URL).mock(side_effect=handler)
            session = client.create_session("sys", TOOL_DECLARATIONS)
            _, calls = await collect(await session.send_message_stream([{"text": "how to join"}]))
            assert len(calls) == 1
            assert calls[0].id == "call_1"
            assert calls[0].name == "qa_search"
            assert calls[0].arguments == {"query": "join"}

            result = ToolResult(name="qa_search", response={"records": []}, call_id="call_1")
            text, _ = await collect(await session.send_message_stream([{"tool_result": result}]))
    finally:
        await client.close()

    assert text == "Register online."
    second = bodies[1]["messages"]
    assert second[2]["role"] == "assistant"
    assert second[2]["tool_calls"][0]["function"]["name"] == "qa_search"
    assert second[3] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "qa_search",
        "content": '{"records": []}',
    }
    assert [m["role"] for m in session.history] == ["system", "user", "assistant", "tool", "assistant"]
    assert session.history[2]["tool_calls"][0]["id"] == "call_1"
    assert session.open_round == []


@pytest.mark.asyncio
async def test_unanswered_tool_round_is_dropped_on_next_user_turn():
    client = ModelClient(BASE_URL, "test-model")
    bodies = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                bodies.append(json.loads(request.content.decode("utf-8")))
                if len(bodies) == 1:
                    return Response(
                        200,
                        content=sse(
                            delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "qa_search", "arguments": '{"query": "join"}'}}]),
                            delta(finish_reason="tool_calls"),
                        ),
                    )
                return Response(200, content=sse(delta("Hi again."), delta(finish_reason="stop")))

            respx_mock.post(COMPLETIONS_URL).mock(side_effect=handler)
            session = client.create_session("sys", TOOL_DECLARATIONS)
            await collect(await session.send_message_stream([{"text": "how to join"}]))
            assert [m["role"] for m in session.history] == ["system"]
            assert [m["role"] for m in session.open_round] == ["user", "assistant"]

            # the tool results never arrive; the next user message starts clean
            text, _ = await collect(await session.send_message_stream([{"text": "hello"}]))
    finally:
        await client.close()

    assert text == "Hi again."
    assert bodies[1]["messages"] == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "hello"},
    ]
    assert [m["role"] for m in session.history] == ["system", "user", "assistant"]
    assert session.open_round == []


@pytest.mark.asyncio
async def test_image_part_becomes_data_url():
    client = ModelClient(BASE_URL, "test-model")
    session = client.create_session("sys", [])
    messages = session.build_messages([{"image": {"mime_type": "image/png", "data": "AAAA"}}, {"text": "what is this"}])
    await client.close()
    assert messages == [
        {
            "role": "user",
            "content": [
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                {"type": "text", "text": "what is this"},
            ],
        }
    ]


@pytest.mark.asyncio
async def test_rate_limit_status_raises_rate_limited():
    client = ModelClient(BASE_URL, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(COMPLETIONS_URL).mock(return_value=Response(429, json={"error": "quota"}))
            session = client.create_session("sys", [])
            with pytest.raises(RateLimited) as exc:
                await session.send_message_stream([{"text": "hi"}])
    finally:
        await client.close()
    assert exc.value.status_code == 429
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_server_error_raises_upstream_failure():
    client = ModelClient(BASE_URL, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(COMPLETIONS_URL).mock(return_value=Response(500, text="boom"))
            session = client.create_session("sys", [])
            with pytest.raises(UpstreamFailure) as exc:
                await session.send_message_stream([{"text": "hi"}])
    finally:
        await client.close()
    assert not isinstance(exc.value, RateLimited)
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_stream_without_finish_is_interrupted():
    client = ModelClient(BASE_URL, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(COMPLETIONS_URL).mock(return_value=Response(200, content=sse(delta("partial"), done=False)))
            session = client.create_session("sys", [])
            stream = await session.send_message_stream([{"text": "hi"}])
            with pytest.raises(StreamInterrupted):
                await collect(stream)
    finally:
        await client.close()
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_stream_cannot_be_restarted():
    client = ModelClient(BASE_URL, "test-model")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(COMPLETIONS_URL).mock(return_value=Response(200, content=sse(delta("ok", finish_reason="stop"))))
            session = client.create_session("sys", [])
            stream = await session.send_message_stream([{"text": "hi"}])
            await collect(stream)
            with pytest.raises(RuntimeError):
                stream.__aiter__()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_image_part_encodes_image():
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://cdn.test/a.png").mock(
                return_value=Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
            )
            part = await fetch_image_part(client, "https://cdn.test/a.png")
    assert part == {"image": {"mime_type": "image/png", "data": "iVBORw=="}}


@pytest.mark.asyncio
async def test_fetch_image_part_rejects_non_images():
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("https://cdn.test/page").mock(
                return_value=Response(200, text="<html>", headers={"content-type": "text/html"})
            )
            with pytest.raises(MediaFetchError):
                await fetch_image_part(client, "https://cdn.test/page")
