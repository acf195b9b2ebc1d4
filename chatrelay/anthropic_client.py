import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from .adapters import (
    AdapterEvent,
    ChatAdapter,
    Completion,
    Finish,
    TextDelta,
    ToolCall,
    TOOL_STYLE_NATIVE,
    TurnContext,
    TurnOutcome,
    UsageMeter,
    UsageUpdate,
    extract_error_detail,
    iter_sse_data,
    merge_turns,
    raise_for_upstream,
    wrap_transport_error,
)
from .errors import QuotaExceeded, RateLimited, UpstreamFatal, UpstreamTransient, classify_status
from .scanner import TagScanner
from .schemas import ConversationTurn, NormalizedRequest

logger = logging.getLogger("uvicorn.error")

ANTHROPIC_VERSION = "2023-06-01"
SEARCH_TOOL_NAMES = ("eco_search", "standard_search", "high_precision_search")
_TOOL_DESCRIPTIONS = {
    "eco_search": "低コストのウェブ検索。一般的な事実確認や最新情報の確認に使います。",
    "standard_search": "標準的なウェブ検索。複数の情報源を比較したいときに使います。",
    "high_precision_search": "高精度のリサーチ検索。専門的・重要な調査が必要なときだけ使います。",
}
SEARCH_TOOLS: List[Dict[str, Any]] = [
    {
        "name": name,
        "description": _TOOL_DESCRIPTIONS[name],
        "input_schema": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "検索クエリ"}},
            "required": ["query"],
        },
    }
    for name in SEARCH_TOOL_NAMES
]
WEB_SEARCH_TOOL = {"type": "web_search_20250305", "name": "web_search", "max_uses": 3}
WEB_SEARCH_PROMPT = "次の内容についてウェブ検索を行い、要点を出典付きで簡潔にまとめてください。\n\n{query}"
WEB_SEARCH_MAX_TOKENS = 2048
BUDGET_SPENT_RESULT = "検索回数の上限に達しました。これまでの情報で回答を完成させてください。"

_STREAM_ERRORS = {
    "overloaded_error": UpstreamTransient,
    "api_error": UpstreamTransient,
    "rate_limit_error": RateLimited,
    "billing_error": QuotaExceeded,
}


def _text_blocks(content: Optional[List[Dict[str, Any]]]) -> str:
    return "".join(block.get("text") or "" for block in content or [] if block.get("type") == "text")


class AnthropicClient(ChatAdapter):
    """Messages API adapter with native search tools in auto mode."""

    provider = "anthropic"
    tool_style = TOOL_STYLE_NATIVE

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout: float = 120.0,
        search_model: str = "claude-sonnet-4-5-20250929",
    ):
        super().__init__(api_key, base_url, timeout=timeout)
        self.search_model = search_model

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _payload(
        self,
        request: NormalizedRequest,
        messages: List[Dict[str, Any]],
        stream: bool,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": stream,
        }
        # Newer Claude models reject temperature and top_p together.
        if request.top_p < 1.0:
            payload["top_p"] = request.top_p
            payload.pop("temperature")
        if request.system_instructions:
            payload["system"] = request.system_instructions
        if tools:
            payload["tools"] = tools
        if tool_choice:
            payload["tool_choice"] = tool_choice
        return payload

    async def _stream_payload(self, payload: Dict[str, Any]) -> AsyncIterator[AdapterEvent]:
        self.require_key()
        url = f"{self.base_url}/v1/messages"
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as response:
                await raise_for_upstream(self.provider, response)
                tool: Optional[Dict[str, str]] = None
                json_parts: List[str] = []
                async for data in iter_sse_data(response, self.provider):
                    kind = data.get("type")
                    if kind == "message_start":
                        usage = (data.get("message") or {}).get("usage") or {}
                        yield UsageUpdate(usage.get("input_tokens"), usage.get("output_tokens"))
                    elif kind == "content_block_start":
                        block = data.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            tool = {"id": str(block.get("id") or ""), "name": str(block.get("name") or "")}
                            json_parts = []
                    elif kind == "content_block_delta":
                        delta = data.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield TextDelta(delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            json_parts.append(delta.get("partial_json") or "")
                    elif kind == "content_block_stop":
                        if tool is not None:
                            try:
                                arguments = json.loads("".join(json_parts) or "{}")
                            except ValueError:
                                arguments = {}
                            yield ToolCall(tool["id"], tool["name"], arguments if isinstance(arguments, dict) else {})
                            tool = None
                    elif kind == "message_delta":
                        usage = data.get("usage") or {}
                        if usage:
                            yield UsageUpdate(usage.get("input_tokens"), usage.get("output_tokens"))
                        reason = (data.get("delta") or {}).get("stop_reason")
                        if reason:
                            yield Finish(str(reason))
                    elif kind == "message_stop":
                        break
                    elif kind == "error":
                        error = data.get("error") or {}
                        error_cls = _STREAM_ERRORS.get(error.get("type"), UpstreamFatal)
                        raise error_cls(str(error.get("message") or error.get("type")), provider=self.provider)
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc

    def stream_events(
        self, request: NormalizedRequest, turns: Sequence[ConversationTurn]
    ) -> AsyncIterator[AdapterEvent]:
        return self._stream_payload(self._payload(request, merge_turns(turns), stream=True))

    async def run_turn(self, request: NormalizedRequest, ctx: TurnContext) -> TurnOutcome:
        if request.search_mode != "auto":
            # The orchestrator already searched; no tools are offered.
            return await super().run_turn(request, ctx)
        messages: List[Dict[str, Any]] = merge_turns(request.turns)
        outcome = TurnOutcome()
        executed = 0
        while True:
            tools_allowed = executed < ctx.max_tool_rounds
            payload = self._payload(
                request,
                messages,
                stream=True,
                tools=SEARCH_TOOLS,
                tool_choice=None if tools_allowed else {"type": "none"},
            )
            scanner = TagScanner()
            meter = UsageMeter()
            raw: List[str] = []
            visible: List[str] = []
            calls: List[ToolCall] = []
            stop_reason = ""
            stream = self._stream_payload(payload)
            try:
                async for event in stream:
                    if isinstance(event, TextDelta):
                        raw.append(event.text)
                        text = scanner.feed(event.text)
                        if text:
                            visible.append(text)
                            await ctx.emit_content(text)
                    elif isinstance(event, ToolCall):
                        calls.append(event)
                    elif isinstance(event, UsageUpdate):
                        meter.update(event)
                    elif isinstance(event, Finish):
                        stop_reason = event.reason
            finally:
                await stream.aclose()
            tail = scanner.flush()
            if tail:
                visible.append(tail)
                await ctx.emit_content(tail)
            await ctx.record_usage(self.provider, request.model, meter.input_tokens, meter.output_tokens)
            outcome.text += "".join(visible)

            if stop_reason != "tool_use" or not calls or not tools_allowed or ctx.cancelled:
                return outcome
            assistant_content: List[Dict[str, Any]] = []
            if "".join(raw).strip():
                assistant_content.append({"type": "text", "text": "".join(raw)})
            results: List[Dict[str, Any]] = []
            for call in calls:
                assistant_content.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
                if executed >= ctx.max_tool_rounds:
                    results.append(
                        {"type": "tool_result", "tool_use_id": call.id, "content": BUDGET_SPENT_RESULT, "is_error": True}
                    )
                    continue
                executed += 1
                query = str(call.arguments.get("query") or "")
                logger.info("anthropic called %s (round %s): %s", call.name, executed, query)
                result_text = await ctx.run_tool(call.name, query)
                outcome.tools_used.append(call.name)
                results.append({"type": "tool_result", "tool_use_id": call.id, "content": result_text})
            messages = messages + [
                {"role": "assistant", "content": assistant_content},
                {"role": "user", "content": results},
            ]

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.require_key()
        try:
            resp = await self.client.post(f"{self.base_url}/v1/messages", json=payload, headers=self._headers())
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc
        if resp.status_code >= 400:
            raise classify_status(self.provider, resp.status_code, extract_error_detail(resp))
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamTransient("response was not JSON", provider=self.provider) from exc

    async def complete(self, request: NormalizedRequest) -> Completion:
        data = await self._post(self._payload(request, merge_turns(request.turns), stream=False))
        usage = data.get("usage") or {}
        return Completion(
            text=_text_blocks(data.get("content")),
            model=request.model,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

    async def web_search(self, query: str) -> Completion:
        """Standard search tier backed by the server-side web_search tool."""
        payload = {
            "model": self.search_model,
            "max_tokens": WEB_SEARCH_MAX_TOKENS,
            "messages": [{"role": "user", "content": WEB_SEARCH_PROMPT.format(query=query)}],
            "tools": [WEB_SEARCH_TOOL],
        }
        data = await self._post(payload)
        usage = data.get("usage") or {}
        return Completion(
            text=_text_blocks(data.get("content")),
            model=self.search_model,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )
