import asyncio

import pytest

from chatrelay.deep_research import CRITIQUE_PLACEHOLDER, run_deep_research
from chatrelay.errors import QuotaExceeded, UpstreamTransient
from chatrelay.schemas import ChatRequest, ConversationTurn
from tests.fakes import EventCollector, MemoryUsageStore, ScriptedChatAdapter, make_adapters, make_deps, make_settings


def _chat() -> ChatRequest:
    return ChatRequest(
        messages=[ConversationTurn(role="user", content="全固体電池の実用化の見通しは？")],
        isDeepResearch=True,
    )


@pytest.mark.asyncio
async def test_pipeline_runs_four_stages(tmp_path):
    anthropic = ScriptedChatAdapter("anthropic", rounds=[["最終回答【eco_search: 追加】です。"]], completion_text="下書きA")
    gemini = ScriptedChatAdapter("gemini", completion_text="批評B")
    store = MemoryUsageStore()
    deps = make_deps(make_settings(tmp_path), adapters=make_adapters(anthropic=anthropic, gemini=gemini), store=store)
    emit = EventCollector()
    await run_deep_research(_chat(), deps, emit, asyncio.Event())

    assert emit.events[0].type == "model_selected"
    assert emit.events[0].text == "claude-sonnet-4-5-20250929"
    statuses = [e.text for e in emit.of_type("status")]
    assert [s.split(":")[0] for s in statuses] == ["ステップ1/4", "ステップ2/4", "ステップ3/4", "ステップ4/4"]
    assert emit.content == "最終回答です。"
    assert len(anthropic.stream_calls) == 1

    synthesis_prompt = anthropic.stream_calls[0][0].content
    assert "下書きA" in synthesis_prompt
    assert "批評B" in synthesis_prompt
    assert "検索結果の本文" in synthesis_prompt
    assert gemini.complete_calls[0].model == "gemini-2.5-flash"

    footer = emit.of_type("footer")[0].text
    assert "Model: claude-sonnet-4-5" in footer
    assert "Search Model: high_precision_search" in footer
    assert "Mode: Deep Research" in footer
    providers = [r.provider for r in store.records]
    assert providers == ["perplexity", "anthropic", "gemini", "anthropic"]


@pytest.mark.asyncio
async def test_critique_failure_uses_placeholder(tmp_path):
    gemini = ScriptedChatAdapter("gemini", complete_error=UpstreamTransient("HTTP 503", provider="gemini"))
    anthropic = ScriptedChatAdapter("anthropic", rounds=[["統合した回答"]])
    deps = make_deps(make_settings(tmp_path), adapters=make_adapters(gemini=gemini, anthropic=anthropic))
    emit = EventCollector()
    await run_deep_research(_chat(), deps, emit, asyncio.Event())

    assert CRITIQUE_PLACEHOLDER in anthropic.stream_calls[0][0].content
    assert emit.content == "統合した回答"
    assert emit.of_type("error") == []
    assert "Mode: Deep Research" in emit.of_type("footer")[0].text


@pytest.mark.asyncio
async def test_search_failure_is_terminal(tmp_path):
    adapters = make_adapters()
    adapters["perplexity"].search_error = UpstreamTransient("HTTP 503", provider="perplexity")
    adapters["anthropic"].search_error = UpstreamTransient("HTTP 503", provider="anthropic")
    deps = make_deps(make_settings(tmp_path), adapters=adapters)
    emit = EventCollector()
    await run_deep_research(_chat(), deps, emit, asyncio.Event())

    assert emit.types[-1] == "error"
    assert len(emit.of_type("error")) == 1
    assert adapters["anthropic"].complete_calls == []
    assert emit.of_type("footer") == []


@pytest.mark.asyncio
async def test_draft_quota_failure_warns_then_errors(tmp_path):
    anthropic = ScriptedChatAdapter("anthropic", complete_error=QuotaExceeded("HTTP 402", provider="anthropic"))
    deps = make_deps(make_settings(tmp_path), adapters=make_adapters(anthropic=anthropic))
    emit = EventCollector()
    await run_deep_research(_chat(), deps, emit, asyncio.Event())
    assert emit.types[-2:] == ["warning", "error"]
    assert anthropic.stream_calls == []
