import json

import pytest
import respx
from httpx import Response

from chatrelay.adapters import TurnContext
from chatrelay.anthropic_client import AnthropicClient, WEB_SEARCH_TOOL
from chatrelay.errors import UpstreamTransient
from chatrelay.schemas import ConversationTurn, NormalizedRequest
from tests.fakes import EventCollector

BASE = "http://anthropic.test"
MESSAGES_URL = f"{BASE}/v1/messages"


def _request(**kwargs) -> NormalizedRequest:
    values = dict(
        model="claude-sonnet-4-5-20250929",
        temperature=0.7,
        top_p=1.0,
        max_tokens=512,
        system_instructions="簡潔に答えてください。",
        search_mode="auto",
        turns=[ConversationTurn(role="user", content="今日のニュースは？")],
    )
    values.update(kwargs)
    return NormalizedRequest(**values)


def _sse(*events) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode("utf-8")


def _text_stream(text: str) -> bytes:
    return _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 40, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 9}},
        {"type": "message_stop"},
    )


def _tool_stream(query: str) -> bytes:
    arguments = json.dumps({"query": query}, ensure_ascii=False)
    return _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 30, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "調べます。"}},
        {"type": "content_block_stop", "index": 0},
        {
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "standard_search", "input": {}},
        },
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": arguments[:5]}},
        {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": arguments[5:]}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 15}},
        {"type": "message_stop"},
    )


class ToolRecorder:
    def __init__(self, result: str = "検索結果: 晴れ") -> None:
        self.calls = []
        self.result = result

    async def __call__(self, tool_name: str, query: str) -> str:
        self.calls.append((tool_name, query))
        return self.result


class UsageRecorder:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, provider, model, input_tokens, output_tokens) -> None:
        self.calls.append((provider, model, input_tokens, output_tokens))


@pytest.mark.asyncio
async def test_streams_text_and_records_usage():
    client = AnthropicClient("test-key", BASE)
    emit = EventCollector()
    usage = UsageRecorder()
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, content=_text_stream("こんにちは"), headers={"content-type": "text/event-stream"})

            respx_mock.post(MESSAGES_URL).mock(side_effect=handler)
            ctx = TurnContext(emit=emit, run_tool=ToolRecorder(), record_usage=usage)
            outcome = await client.run_turn(_request(), ctx)
    finally:
        await client.close()

    assert outcome.text == "こんにちは"
    assert emit.content == "こんにちは"
    assert usage.calls == [("anthropic", "claude-sonnet-4-5-20250929", 40, 9)]
    payload = captured["json"]
    assert payload["stream"] is True
    assert payload["system"] == "簡潔に答えてください。"
    assert [t["name"] for t in payload["tools"]] == ["eco_search", "standard_search", "high_precision_search"]
    assert "tool_choice" not in payload
    assert "top_p" not in payload
    assert captured["headers"]["x-api-key"] == "test-key"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"


@pytest.mark.asyncio
async def test_tool_use_round_trip_sends_tool_result():
    client = AnthropicClient("test-key", BASE)
    emit = EventCollector()
    tools = ToolRecorder()
    payloads = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                payloads.append(json.loads(request.content.decode("utf-8")))
                body = _tool_stream("東京 天気") if len(payloads) == 1 else _text_stream("晴れです。")
                return Response(200, content=body, headers={"content-type": "text/event-stream"})

            respx_mock.post(MESSAGES_URL).mock(side_effect=handler)
            ctx = TurnContext(emit=emit, run_tool=tools, record_usage=UsageRecorder())
            outcome = await client.run_turn(_request(), ctx)
    finally:
        await client.close()

    assert tools.calls == [("standard_search", "東京 天気")]
    assert outcome.tools_used == ["standard_search"]
    assert emit.content == "調べます。晴れです。"
    follow_up = payloads[1]["messages"]
    assert follow_up[-2]["role"] == "assistant"
    assert follow_up[-2]["content"][-1] == {
        "type": "tool_use",
        "id": "toolu_1",
        "name": "standard_search",
        "input": {"query": "東京 天気"},
    }
    assert follow_up[-1]["content"] == [
        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "検索結果: 晴れ"}
    ]


@pytest.mark.asyncio
async def test_tool_budget_forces_tool_choice_none():
    client = AnthropicClient("test-key", BASE)
    tools = ToolRecorder()
    payloads = []
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                payloads.append(json.loads(request.content.decode("utf-8")))
                return Response(200, content=_tool_stream("また検索"), headers={"content-type": "text/event-stream"})

            respx_mock.post(MESSAGES_URL).mock(side_effect=handler)
            ctx = TurnContext(emit=EventCollector(), run_tool=tools, record_usage=UsageRecorder(), max_tool_rounds=1)
            outcome = await client.run_turn(_request(), ctx)
    finally:
        await client.close()

    assert len(tools.calls) == 1
    assert len(payloads) == 2
    assert payloads[1]["tool_choice"] == {"type": "none"}
    assert outcome.tools_used == ["standard_search"]


@pytest.mark.asyncio
async def test_forced_mode_offers_no_tools():
    client = AnthropicClient("test-key", BASE)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, content=_text_stream("回答"), headers={"content-type": "text/event-stream"})

            respx_mock.post(MESSAGES_URL).mock(side_effect=handler)
            ctx = TurnContext(emit=EventCollector(), run_tool=ToolRecorder(), record_usage=UsageRecorder())
            await client.run_turn(_request(search_mode="eco", top_p=0.8), ctx)
    finally:
        await client.close()

    assert "tools" not in captured["json"]
    assert captured["json"]["top_p"] == 0.8
    assert "temperature" not in captured["json"]


@pytest.mark.asyncio
async def test_overloaded_stream_error_is_transient():
    client = AnthropicClient("test-key", BASE)
    body = _sse(
        {"type": "message_start", "message": {"usage": {"input_tokens": 5}}},
        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
    )
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(MESSAGES_URL).mock(
                return_value=Response(200, content=body, headers={"content-type": "text/event-stream"})
            )
            ctx = TurnContext(emit=EventCollector(), run_tool=ToolRecorder(), record_usage=UsageRecorder())
            with pytest.raises(UpstreamTransient):
                await client.run_turn(_request(), ctx)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_web_search_uses_server_tool():
    client = AnthropicClient("test-key", BASE, search_model="claude-haiku-4-5-20251001")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(
                    200,
                    json={
                        "content": [
                            {"type": "server_tool_use", "id": "srv_1", "name": "web_search", "input": {}},
                            {"type": "text", "text": "要約: "},
                            {"type": "text", "text": "晴れ (https://example.com)"},
                        ],
                        "usage": {"input_tokens": 120, "output_tokens": 60},
                    },
                )

            respx_mock.post(MESSAGES_URL).mock(side_effect=handler)
            completion = await client.web_search("東京 天気")
    finally:
        await client.close()

    assert completion.text == "要約: 晴れ (https://example.com)"
    assert completion.model == "claude-haiku-4-5-20251001"
    assert completion.input_tokens == 120
    assert captured["json"]["tools"] == [WEB_SEARCH_TOOL]
    assert "東京 天気" in captured["json"]["messages"][0]["content"]
