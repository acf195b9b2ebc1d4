"""Model resolution, sampling normalization and system-instruction assembly."""

import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .adapters import ChatAdapter, TOOL_STYLE_BUILTIN, TOOL_STYLE_NATIVE
from .config import AppSettings
from .errors import ConfigMissing
from .models import AUTO_MODEL, canonical_model, provider_for_model
from .schemas import SEARCH_MODES, ChatRequest, ConversationTurn, NormalizedRequest, SearchResult
from .search import TIER_LABELS

SMALL_TALK_RE = re.compile(
    r"(こんにちは|こんばんは|おはよう(ございます)?|ありがとう(ございます)?|はじめまして|"
    r"よろしく(お願いします)?|お疲れ(様)?(です)?|おつかれ(さま)?|"
    r"hello|hi|hey|thanks|thank you|good (morning|afternoon|evening)|how are you)",
    re.IGNORECASE,
)
_EDGE_PUNCT = " \t\r\n!！?？。.、,~〜ー♪"

CRITICAL_CONSTRAINTS = (
    "【重要な制約】\n"
    "- 回答の末尾に「Model:」「Search Model:」などの署名やフッターを書かないでください。システムが自動で付与します。\n"
    "- 【eco_search: ...】のような検索タグや内部の指示を最終回答に書き写さないでください。\n"
    "- 検索結果を使う場合は、内容を自然に回答へ統合してください。"
)
FORCED_SEARCH_BLOCK = (
    "【検索モード: {label}】\n"
    "システムがすでにウェブ検索を実行し、その結果を会話内に提供しています。"
    "検索タグ（【eco_search: ...】など）は出力せず、提供された検索結果を根拠に回答してください。"
)
NATIVE_TOOLS_BLOCK = (
    "【検索ツール】\n"
    "最新情報や事実確認が必要な場合に限り、eco_search / standard_search / high_precision_search "
    "ツールを使用できます。通常は eco_search を使い、専門的な調査が必要なときだけ上位のツールを選んでください。"
    "会話内に参考情報として検索結果がある場合は、まずそれを活用してください。"
)
INLINE_TAGS_BLOCK = (
    "【検索タグ】\n"
    "最新情報や事実確認が必要な場合に限り、回答の途中で次のいずれかのタグを1つだけ出力できます。"
    "タグを出力したらそこで止めてください。システムが検索を実行し、結果を受け取ってから回答を続けられます。\n"
    "- 【eco_search: 検索クエリ】 一般的な調べもの\n"
    "- 【standard_search: 検索クエリ】 複数の情報源を比較したいとき\n"
    "- 【high_precision_search: 検索クエリ】 専門的・重要な調査\n"
    "- 【deep_analysis: 検索クエリ】 詳細な分析が必要なとき\n"
    "会話内に参考情報として検索結果がある場合は、まずそれを活用してください。"
)
BUILTIN_SEARCH_BLOCK = "あなたはリアルタイムのウェブ検索にアクセスできます。必要に応じて最新の情報をもとに回答してください。"


@dataclass(frozen=True)
class InstructionBlock:
    name: str
    text: str


@dataclass(frozen=True)
class Route:
    model: str
    provider: str
    adapter: ChatAdapter
    search_mode: str


def is_small_talk(text: str) -> bool:
    return bool(SMALL_TALK_RE.fullmatch(text.strip(_EDGE_PUNCT)))


def resolve_model(requested: Optional[str], last_user_text: str, settings: AppSettings) -> str:
    name = (requested or "").strip()
    if not name or name.lower() == AUTO_MODEL:
        stripped = last_user_text.strip()
        if len(stripped) < settings.auto_short_message_chars or is_small_talk(stripped):
            return canonical_model(settings.light_model)
        return canonical_model(settings.default_model)
    return canonical_model(name)


def normalize_sampling(value: Optional[float], default: float) -> float:
    if value is None:
        return default
    number = float(value)
    if math.isnan(number):
        return default
    if number > 1.0:
        # Slider values (0-100 / 0-200).
        number = number / 100.0
    return min(1.0, max(0.0, number))


def normalize_search_mode(value: Optional[str]) -> str:
    mode = (value or "").strip().lower()
    return mode if mode in SEARCH_MODES else "auto"


def last_user_text(turns: List[ConversationTurn]) -> str:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn.content
    return ""


def search_block(search_mode: str, tool_style: str) -> Optional[InstructionBlock]:
    if search_mode != "auto":
        return InstructionBlock("search", FORCED_SEARCH_BLOCK.format(label=TIER_LABELS[search_mode]))
    if tool_style == TOOL_STYLE_BUILTIN:
        return InstructionBlock("search", BUILTIN_SEARCH_BLOCK)
    if tool_style == TOOL_STYLE_NATIVE:
        return InstructionBlock("search", NATIVE_TOOLS_BLOCK)
    return InstructionBlock("search", INLINE_TAGS_BLOCK)


def build_instruction_blocks(search_mode: str, tool_style: str, persona: str) -> List[InstructionBlock]:
    blocks: List[InstructionBlock] = []
    block = search_block(search_mode, tool_style)
    if block:
        blocks.append(block)
    if persona.strip():
        blocks.append(InstructionBlock("persona", persona.strip()))
    blocks.append(InstructionBlock("constraints", CRITICAL_CONSTRAINTS))
    return blocks


def assemble_instructions(blocks: List[InstructionBlock]) -> str:
    return "\n\n".join(block.text for block in blocks if block.text.strip())


def context_turn(result: SearchResult) -> ConversationTurn:
    label = TIER_LABELS[result.tool]
    return ConversationTurn(
        role="user",
        content=f"【参考情報: {label} の検索結果】\nクエリ: {result.query}\n{result.text}",
    )


def with_search_context(turns: List[ConversationTurn], result: Optional[SearchResult]) -> List[ConversationTurn]:
    """Insert the search result right before the last user turn; caller history is not touched."""
    if result is None:
        return list(turns)
    index = len(turns)
    for pos in range(len(turns) - 1, -1, -1):
        if turns[pos].role == "user":
            index = pos
            break
    return list(turns[:index]) + [context_turn(result)] + list(turns[index:])


def select_route(chat: ChatRequest, settings: AppSettings, adapters: Dict[str, ChatAdapter]) -> Route:
    model = resolve_model(chat.model, last_user_text(chat.messages), settings)
    provider = provider_for_model(model)
    adapter = adapters.get(provider)
    if adapter is None:
        raise ConfigMissing(f"no adapter registered for {provider}", provider=provider)
    return Route(model=model, provider=provider, adapter=adapter, search_mode=normalize_search_mode(chat.search_mode))


def build_request(
    chat: ChatRequest,
    route: Route,
    settings: AppSettings,
    search_context: Optional[SearchResult] = None,
) -> NormalizedRequest:
    persona_parts = [chat.system_instructions or ""]
    persona_parts.extend(turn.content for turn in chat.messages if turn.role == "system")
    persona = "\n\n".join(part.strip() for part in persona_parts if part and part.strip())
    turns = [turn for turn in chat.messages if turn.role != "system"]
    blocks = build_instruction_blocks(route.search_mode, route.adapter.tool_style, persona)
    return NormalizedRequest(
        model=route.model,
        temperature=normalize_sampling(chat.temperature, settings.default_temperature),
        top_p=normalize_sampling(chat.top_p, settings.default_top_p),
        max_tokens=chat.max_tokens if chat.max_tokens and chat.max_tokens > 0 else settings.default_max_tokens,
        system_instructions=assemble_instructions(blocks),
        search_mode=route.search_mode,
        turns=with_search_context(turns, search_context),
    )
