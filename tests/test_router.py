import pytest

from chatrelay.adapters import TOOL_STYLE_BUILTIN, TOOL_STYLE_INLINE, TOOL_STYLE_NATIVE
from chatrelay.errors import UnknownModelError
from chatrelay.models import build_footer, display_name, provider_for_model
from chatrelay.router import (
    CRITICAL_CONSTRAINTS,
    Route,
    build_request,
    is_small_talk,
    normalize_sampling,
    normalize_search_mode,
    resolve_model,
    select_route,
    with_search_context,
)
from chatrelay.schemas import ChatRequest, ConversationTurn, SearchResult
from tests.fakes import ScriptedChatAdapter, make_adapters, make_settings

LONG_QUESTION = "量子コンピュータの最新の研究動向と、実用化までに残っている技術的な課題について詳しく教えてください"


def test_auto_picks_light_model_for_short_or_small_talk(tmp_path):
    settings = make_settings(tmp_path)
    assert resolve_model("auto", "こんにちは", settings) == "gemini-2.5-flash"
    assert resolve_model("", "ok", settings) == "gemini-2.5-flash"
    assert resolve_model("auto", LONG_QUESTION, settings) == "claude-sonnet-4-5-20250929"
    assert resolve_model("auto", "x" * 600, settings) == "claude-sonnet-4-5-20250929"


def test_small_talk_patterns():
    assert is_small_talk("ありがとうございます！")
    assert is_small_talk("Thank you.")
    assert is_small_talk("  Hello!! ")
    assert not is_small_talk("ありがとうの語源を教えて")


def test_aliases_and_verbatim_names(tmp_path):
    settings = make_settings(tmp_path)
    assert resolve_model("claude", "", settings) == "claude-sonnet-4-5-20250929"
    assert resolve_model("sonar", "", settings) == "sonar-pro"
    assert resolve_model("gemini-2.5-pro", "", settings) == "gemini-2.5-pro"


def test_provider_mapping_is_total_or_raises():
    assert provider_for_model("sonar-pro") == "perplexity"
    assert provider_for_model("gemini-2.5-flash") == "gemini"
    assert provider_for_model("claude-sonnet-4-5-20250929") == "anthropic"
    with pytest.raises(UnknownModelError):
        provider_for_model("gpt-4o")


def test_select_route_unknown_model(tmp_path):
    settings = make_settings(tmp_path)
    chat = ChatRequest(model="gpt-4o", messages=[ConversationTurn(role="user", content="hi")])
    with pytest.raises(UnknownModelError):
        select_route(chat, settings, make_adapters())


@pytest.mark.parametrize(
    "value,expected",
    [(None, 0.7), (0.3, 0.3), (70, 0.7), (150, 1.0), (-0.5, 0.0), (1.0, 1.0)],
)
def test_normalize_sampling(value, expected):
    assert normalize_sampling(value, 0.7) == pytest.approx(expected)


def test_normalize_search_mode():
    assert normalize_search_mode("ECO") == "eco"
    assert normalize_search_mode("turbo") == "auto"
    assert normalize_search_mode(None) == "auto"


def test_display_name_and_footer():
    assert display_name("claude-sonnet-4-5-20250929") == "claude-sonnet-4-5"
    footer = build_footer("claude-sonnet-4-5-20250929", "eco_search")
    assert footer.splitlines()[-3:] == ["---", "Model: claude-sonnet-4-5", "Search Model: eco_search"]
    assert "Search Model" not in build_footer("gemini-2.5-flash")


def _route(tool_style: str, search_mode: str = "auto") -> Route:
    adapter = ScriptedChatAdapter("gemini", tool_style=tool_style)
    return Route(model="gemini-2.5-flash", provider="gemini", adapter=adapter, search_mode=search_mode)


def test_instruction_order_search_persona_constraints(tmp_path):
    settings = make_settings(tmp_path)
    chat = ChatRequest(
        messages=[ConversationTurn(role="user", content="占って")],
        systemInstructions="あなたはベテラン占い師です。",
        searchMode="eco",
    )
    request = build_request(chat, _route(TOOL_STYLE_INLINE, "eco"), settings)
    text = request.system_instructions
    assert text.index("【検索モード: eco_search】") < text.index("あなたはベテラン占い師です。")
    assert text.index("あなたはベテラン占い師です。") < text.index(CRITICAL_CONSTRAINTS)
    assert text.endswith(CRITICAL_CONSTRAINTS)


def test_search_block_depends_on_tool_style(tmp_path):
    settings = make_settings(tmp_path)
    chat = ChatRequest(messages=[ConversationTurn(role="user", content=LONG_QUESTION)])
    inline = build_request(chat, _route(TOOL_STYLE_INLINE), settings).system_instructions
    native = build_request(chat, _route(TOOL_STYLE_NATIVE), settings).system_instructions
    builtin = build_request(chat, _route(TOOL_STYLE_BUILTIN), settings).system_instructions
    assert "【eco_search: 検索クエリ】" in inline
    assert "【eco_search: 検索クエリ】" not in native
    assert "eco_search / standard_search / high_precision_search" in native
    assert "【eco_search: 検索クエリ】" not in builtin


def test_build_request_normalizes_and_folds_system_turns(tmp_path):
    settings = make_settings(tmp_path)
    chat = ChatRequest(
        messages=[
            ConversationTurn(role="system", content="丁寧語で話してください。"),
            ConversationTurn(role="user", content="質問です"),
        ],
        temperature=70,
        topP=90,
        maxTokens=0,
    )
    request = build_request(chat, _route(TOOL_STYLE_INLINE), settings)
    assert request.temperature == pytest.approx(0.7)
    assert request.top_p == pytest.approx(0.9)
    assert request.max_tokens == settings.default_max_tokens
    assert "丁寧語で話してください。" in request.system_instructions
    assert [t.role for t in request.turns] == ["user"]


def test_search_context_goes_before_last_user_turn():
    turns = [
        ConversationTurn(role="user", content="前の質問"),
        ConversationTurn(role="assistant", content="前の回答"),
        ConversationTurn(role="user", content="今の質問"),
    ]
    result = SearchResult(tool="eco", query="今の質問", text="検索で見つけた事実", tier_used="eco")
    merged = with_search_context(turns, result)
    assert len(merged) == 4
    assert "検索で見つけた事実" in merged[2].content
    assert merged[3].content == "今の質問"
    assert len(turns) == 3
