import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .adapters import ChatAdapter, Emit, RunTool, TurnContext, emit_failure
from .config import AppSettings
from .deep_research import run_deep_research
from .errors import QUOTA_ERRORS, RelayError, quota_warning
from .models import build_footer
from .router import Route, build_request, last_user_text, select_route
from .schemas import ChatRequest, SearchResult, StreamEvent
from .search import TIER_LABELS, TIER_NAMES, SearchCascade, tier_for_tool
from .usage import UsageLedger

logger = logging.getLogger("uvicorn.error")

SEARCH_FAILED_RESULT = "検索に失敗しました。検索結果なしで、手元の知識の範囲で回答を続けてください。"


@dataclass
class ChatDeps:
    settings: AppSettings
    adapters: Dict[str, ChatAdapter]
    cascade: SearchCascade
    ledger: UsageLedger


def make_tool_runner(deps: ChatDeps, emit: Emit, caller_key: Optional[str], fallback_query: str) -> RunTool:
    async def run_tool(tool_name: str, query: str) -> str:
        tier = tier_for_tool(tool_name)
        if tier is None:
            return f"不明なツールです: {tool_name}"
        query = query.strip() or fallback_query
        await emit(StreamEvent(type="status", text=f"{TIER_NAMES[tier]}を実行中: {query}"))
        try:
            result = await deps.cascade.search_with_fallback(tier, query, emit, caller_key)
        except RelayError as exc:
            logger.warning("Tool search %s failed: %s", tool_name, exc)
            await emit(StreamEvent(type="status", text="検索に失敗したため、検索結果なしで回答を続けます。"))
            return SEARCH_FAILED_RESULT
        return result.text

    return run_tool


async def presearch(route: Route, chat: ChatRequest, deps: ChatDeps, emit: Emit) -> Optional[SearchResult]:
    question = last_user_text(chat.messages)
    caller_key = chat.eco_search_key
    if route.search_mode == "auto":
        await emit(StreamEvent(type="status", text="節約検索で関連情報を確認しています…"))
        try:
            return await deps.cascade.search("eco", question, caller_key)
        except RelayError as exc:
            logger.info("Auto pre-search skipped: %s", exc)
            if isinstance(exc, QUOTA_ERRORS):
                await emit(StreamEvent(type="warning", text=quota_warning(exc.provider)))
            else:
                await emit(StreamEvent(type="status", text="節約検索を利用できないため、検索なしで続行します。"))
            return None
    await emit(StreamEvent(type="status", text=f"{TIER_NAMES[route.search_mode]}で検索しています…"))
    try:
        return await deps.cascade.search_with_fallback(route.search_mode, question, emit, caller_key)
    except RelayError as exc:
        logger.warning("Forced search %s failed: %s", route.search_mode, exc)
        await emit(StreamEvent(type="warning", text="検索に失敗したため、検索結果なしで回答します。"))
        return None


def footer_search_label(search_mode: str, context: Optional[SearchResult], tools_used: List[str]) -> Optional[str]:
    if search_mode != "auto":
        return TIER_LABELS[search_mode] if context is not None else None
    if tools_used:
        return tools_used[-1]
    if context is not None:
        return TIER_LABELS["eco"]
    return None


async def run_chat(chat: ChatRequest, deps: ChatDeps, emit: Emit, stop_event: asyncio.Event) -> None:
    if chat.is_deep_research:
        await run_deep_research(chat, deps, emit, stop_event)
        return
    try:
        route = select_route(chat, deps.settings, deps.adapters)
    except RelayError as exc:
        await emit_failure(emit, exc)
        return
    await emit(StreamEvent(type="model_selected", text=route.model))
    try:
        context = await presearch(route, chat, deps, emit)
        if stop_event.is_set():
            return
        request = build_request(chat, route, deps.settings, search_context=context)
        ctx = TurnContext(
            emit=emit,
            run_tool=make_tool_runner(deps, emit, chat.eco_search_key, request.last_user_text),
            record_usage=deps.ledger.record,
            stop_event=stop_event,
            max_tool_rounds=deps.settings.max_tool_rounds,
        )
        outcome = await route.adapter.run_turn(request, ctx)
    except RelayError as exc:
        logger.warning("Chat turn on %s failed: %s", route.model, exc)
        await emit_failure(emit, exc)
        return
    except Exception as exc:
        logger.exception("Chat turn on %s failed", route.model)
        await emit_failure(emit, exc)
        return
    if stop_event.is_set():
        return
    label = footer_search_label(route.search_mode, context, outcome.tools_used)
    await emit(StreamEvent(type="footer", text=build_footer(route.model, label)))
