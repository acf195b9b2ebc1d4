import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .errors import (
    QUOTA_ERRORS,
    ConfigMissing,
    MalformedUpstreamChunk,
    RelayError,
    UpstreamTransient,
    classify_status,
    quota_warning,
    user_message,
)
from .scanner import TagScanner
from .schemas import ConversationTurn, NormalizedRequest, StreamEvent

logger = logging.getLogger("uvicorn.error")

MAX_TOOL_ROUNDS = 3

# How the model asks for a search.
TOOL_STYLE_NATIVE = "native"
TOOL_STYLE_INLINE = "inline"
TOOL_STYLE_BUILTIN = "builtin"

CONVERSATION_OPENER = "（会話の続きです）"


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageUpdate:
    """Cumulative token counts reported so far; either side may be missing."""

    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class Finish:
    reason: str = "end_turn"


AdapterEvent = Union[TextDelta, ToolCall, UsageUpdate, Finish]


@dataclass
class Completion:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TurnOutcome:
    text: str = ""
    tools_used: List[str] = field(default_factory=list)


class UsageMeter:
    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0

    def update(self, event: UsageUpdate) -> None:
        if event.input_tokens is not None:
            self.input_tokens = max(self.input_tokens, int(event.input_tokens))
        if event.output_tokens is not None:
            self.output_tokens = max(self.output_tokens, int(event.output_tokens))


Emit = Callable[[StreamEvent], Awaitable[None]]
RunTool = Callable[[str, str], Awaitable[str]]
RecordUsage = Callable[[str, str, int, int], Awaitable[Any]]


class TurnContext:
    """Request-scoped hooks an adapter uses while producing one answer."""

    def __init__(
        self,
        emit: Emit,
        run_tool: RunTool,
        record_usage: RecordUsage,
        stop_event: Optional[asyncio.Event] = None,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
    ):
        self.emit = emit
        self.run_tool = run_tool
        self.record_usage = record_usage
        self.stop_event = stop_event or asyncio.Event()
        self.max_tool_rounds = max_tool_rounds

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    async def emit_content(self, text: str) -> None:
        if text:
            await self.emit(StreamEvent(type="content", text=text))


async def emit_failure(emit: Emit, exc: Exception) -> None:
    """Exactly one error frame, preceded by the provider-named warning for quota errors."""
    if isinstance(exc, QUOTA_ERRORS):
        await emit(StreamEvent(type="warning", text=quota_warning(exc.provider)))
    await emit(StreamEvent(type="error", text=user_message(exc)))


def parse_sse_data(chunk: str) -> Dict[str, Any]:
    try:
        data = json.loads(chunk)
    except ValueError as exc:
        raise MalformedUpstreamChunk(f"invalid JSON chunk: {chunk[:120]}") from exc
    if not isinstance(data, dict):
        raise MalformedUpstreamChunk(f"unexpected chunk shape: {chunk[:120]}")
    return data


async def iter_sse_data(response: httpx.Response, provider: str) -> AsyncIterator[Dict[str, Any]]:
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:"):].strip()
        if not chunk:
            continue
        if chunk == "[DONE]":
            break
        try:
            data = parse_sse_data(chunk)
        except MalformedUpstreamChunk as exc:
            logger.debug("Skipping malformed %s chunk: %s", provider, exc)
            continue
        yield data


def extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=False)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


async def raise_for_upstream(provider: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    detail = extract_error_detail(response)
    raise classify_status(provider, response.status_code, detail)


def wrap_transport_error(provider: str, exc: httpx.RequestError) -> RelayError:
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTransient(f"timeout: {exc}", provider=provider)
    return UpstreamTransient(f"request failed: {exc}", provider=provider)


def merge_turns(turns: Sequence[ConversationTurn], assistant_role: str = "assistant") -> List[Dict[str, str]]:
    """Collapse same-role neighbours and make sure the first turn is from the user."""
    merged: List[Dict[str, str]] = []
    for turn in turns:
        if turn.role == "system" or not turn.content.strip():
            continue
        role = assistant_role if turn.role == "assistant" else "user"
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] += "\n\n" + turn.content
        else:
            merged.append({"role": role, "content": turn.content})
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": CONVERSATION_OPENER})
    return merged


def continuation_turns(partial: str, tool: str, query: str, result_text: str) -> List[ConversationTurn]:
    turns: List[ConversationTurn] = []
    if partial.strip():
        turns.append(ConversationTurn(role="assistant", content=partial))
    turns.append(
        ConversationTurn(
            role="user",
            content=(
                f"【{tool} の結果】\nクエリ: {query}\n{result_text}\n\n"
                "この結果を踏まえて、先ほどの回答を途中から自然に続けてください。"
                "検索タグや前置きは書かないでください。"
            ),
        )
    )
    return turns


class ChatAdapter:
    """Base class for provider adapters.

    Subclasses implement ``stream_events`` (one upstream streaming call mapped to
    adapter events) and ``complete`` (one non-streaming call). ``run_turn`` is the
    inline-tag loop shared by providers without native tool support.
    """

    provider = "base"
    tool_style = TOOL_STYLE_INLINE

    def __init__(self, api_key: Optional[str], base_url: str, timeout: float = 120.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def require_key(self) -> None:
        if not self.api_key:
            raise ConfigMissing("API key is not configured", provider=self.provider)

    def stream_events(self, request: NormalizedRequest, turns: Sequence[ConversationTurn]) -> AsyncIterator[AdapterEvent]:
        raise NotImplementedError

    async def complete(self, request: NormalizedRequest) -> Completion:
        raise NotImplementedError

    async def run_turn(self, request: NormalizedRequest, ctx: TurnContext) -> TurnOutcome:
        turns = list(request.turns)
        outcome = TurnOutcome()
        executed = 0
        while True:
            can_execute = (
                self.tool_style == TOOL_STYLE_INLINE
                and request.search_mode == "auto"
                and executed < ctx.max_tool_rounds
            )
            scanner = TagScanner(halt_on_tag=can_execute)
            meter = UsageMeter()
            pieces: List[str] = []
            stream = self.stream_events(request, turns)
            try:
                async for event in stream:
                    if isinstance(event, TextDelta):
                        visible = scanner.feed(event.text)
                        if visible:
                            pieces.append(visible)
                            await ctx.emit_content(visible)
                        if scanner.halted:
                            break
                    elif isinstance(event, UsageUpdate):
                        meter.update(event)
            finally:
                await stream.aclose()
            tail = scanner.flush()
            if tail:
                pieces.append(tail)
                await ctx.emit_content(tail)
            await ctx.record_usage(self.provider, request.model, meter.input_tokens, meter.output_tokens)
            partial = "".join(pieces)
            outcome.text += partial

            tag = scanner.detected
            if not scanner.halted or tag is None:
                return outcome
            if ctx.cancelled:
                return outcome
            executed += 1
            logger.info("%s requested %s (round %s): %s", self.provider, tag.tool, executed, tag.query)
            result_text = await ctx.run_tool(tag.tool, tag.query)
            outcome.tools_used.append(tag.tool)
            turns = turns + continuation_turns(partial, tag.tool, tag.query, result_text)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
