"""Four-stage Deep Research pipeline: search, draft, critique, synthesize.

Only the synthesis is streamed to the caller; the draft and the critique are
intermediate material. A critique failure is tolerated, every other stage is
terminal.
"""

import asyncio
import logging

from .adapters import Emit, TurnContext, emit_failure
from .errors import RelayError
from .models import build_footer, canonical_model, provider_for_model
from .router import build_instruction_blocks, assemble_instructions, last_user_text, normalize_sampling
from .schemas import ChatRequest, ConversationTurn, NormalizedRequest, StreamEvent

logger = logging.getLogger("uvicorn.error")

DEEP_RESEARCH_LABEL = "high_precision_search"

DRAFT_INSTRUCTIONS = (
    "あなたはリサーチャーです。提供された検索結果を根拠に、質問への詳細な回答の下書きを作成してください。"
    "重要な事実には根拠となる情報源を示してください。"
)
CRITIQUE_INSTRUCTIONS = (
    "あなたは厳格なレビュアーです。下書きの事実誤り、根拠の弱い主張、抜けている観点、"
    "分かりにくい構成を箇条書きで具体的に指摘してください。"
)
SYNTHESIS_INSTRUCTIONS = (
    "検索結果・下書き・批評をもとに、質問への最終回答を作成してください。"
    "批評で指摘された問題を修正し、読みやすく構成してください。下書きや批評の存在には触れないでください。"
)
CRITIQUE_PLACEHOLDER = "（批評を取得できませんでした。下書きの内容を自分で慎重に見直してください。）"


async def _no_tools(tool_name: str, query: str) -> str:
    return ""


def _stage_request(base: NormalizedRequest, model: str, instructions: str, prompt: str) -> NormalizedRequest:
    return base.model_copy(
        update={
            "model": model,
            "system_instructions": instructions,
            "turns": [ConversationTurn(role="user", content=prompt)],
        }
    )


async def run_deep_research(chat: ChatRequest, deps, emit: Emit, stop_event: asyncio.Event) -> None:
    settings = deps.settings
    question = last_user_text(chat.messages)
    try:
        model = canonical_model(settings.default_model)
        adapter = deps.adapters[provider_for_model(model)]
    except (RelayError, KeyError) as exc:
        await emit_failure(emit, exc)
        return
    await emit(StreamEvent(type="model_selected", text=model))

    persona = "\n\n".join(
        part.strip()
        for part in [chat.system_instructions or ""] + [t.content for t in chat.messages if t.role == "system"]
        if part and part.strip()
    )
    base = NormalizedRequest(
        model=model,
        temperature=normalize_sampling(chat.temperature, settings.default_temperature),
        top_p=normalize_sampling(chat.top_p, settings.default_top_p),
        max_tokens=chat.max_tokens if chat.max_tokens and chat.max_tokens > 0 else settings.default_max_tokens,
        search_mode="high_precision",
    )

    await emit(StreamEvent(type="status", text="ステップ1/4: 高精度検索で情報を収集しています…"))
    try:
        search = await deps.cascade.search_with_fallback("high_precision", question, emit, chat.eco_search_key)
    except RelayError as exc:
        logger.warning("Deep research search failed: %s", exc)
        await emit_failure(emit, exc)
        return
    if stop_event.is_set():
        return

    await emit(StreamEvent(type="status", text="ステップ2/4: 下書きを作成しています…"))
    draft_prompt = f"質問:\n{question}\n\n検索結果:\n{search.text}"
    try:
        draft = await adapter.complete(_stage_request(base, model, DRAFT_INSTRUCTIONS, draft_prompt))
    except RelayError as exc:
        logger.warning("Deep research draft failed: %s", exc)
        await emit_failure(emit, exc)
        return
    await deps.ledger.record(adapter.provider, model, draft.input_tokens, draft.output_tokens)
    if stop_event.is_set():
        return

    await emit(StreamEvent(type="status", text="ステップ3/4: 下書きを批評しています…"))
    critique_text = CRITIQUE_PLACEHOLDER
    critique_prompt = f"質問:\n{question}\n\n下書き:\n{draft.text}"
    try:
        critique_model = canonical_model(settings.critique_model)
        critic = deps.adapters[provider_for_model(critique_model)]
        critique = await critic.complete(_stage_request(base, critique_model, CRITIQUE_INSTRUCTIONS, critique_prompt))
        await deps.ledger.record(critic.provider, critique_model, critique.input_tokens, critique.output_tokens)
        if critique.text.strip():
            critique_text = critique.text
    except (RelayError, KeyError) as exc:
        logger.warning("Deep research critique unavailable, continuing: %s", exc)
    if stop_event.is_set():
        return

    await emit(StreamEvent(type="status", text="ステップ4/4: 最終回答をまとめています…"))
    synthesis_instructions = assemble_instructions(
        build_instruction_blocks("high_precision", adapter.tool_style, "\n\n".join(p for p in (SYNTHESIS_INSTRUCTIONS, persona) if p))
    )
    synthesis_prompt = (
        f"質問:\n{question}\n\n検索結果:\n{search.text}\n\n下書き:\n{draft.text}\n\n批評:\n{critique_text}"
    )
    ctx = TurnContext(
        emit=emit,
        run_tool=_no_tools,
        record_usage=deps.ledger.record,
        stop_event=stop_event,
        max_tool_rounds=0,
    )
    try:
        await adapter.run_turn(_stage_request(base, model, synthesis_instructions, synthesis_prompt), ctx)
    except RelayError as exc:
        logger.warning("Deep research synthesis failed: %s", exc)
        await emit_failure(emit, exc)
        return
    if stop_event.is_set():
        return
    await emit(StreamEvent(type="footer", text=build_footer(model, DEEP_RESEARCH_LABEL, deep_research=True)))
