import asyncio
import logging
from typing import Any, Dict, List, Optional

from .adapters import Completion, Emit
from .config import AppSettings
from .errors import (
    ConfigMissing,
    QUOTA_ERRORS,
    RelayError,
    UpstreamFatal,
    UpstreamTransient,
    classify_status,
    quota_warning,
)
from .schemas import SearchResult, StreamEvent
from .tavily import TavilyClient, format_results

logger = logging.getLogger("uvicorn.error")

TOOL_TIERS: Dict[str, str] = {
    "eco_search": "eco",
    "standard_search": "standard",
    "high_precision_search": "high_precision",
    "deep_analysis": "high_precision",
}
TIER_LABELS: Dict[str, str] = {
    "eco": "eco_search",
    "standard": "standard_search",
    "high_precision": "high_precision_search",
}
TIER_NAMES: Dict[str, str] = {
    "eco": "節約検索",
    "standard": "標準検索",
    "high_precision": "高精度検索",
}
TIER_PROVIDERS: Dict[str, str] = {
    "eco": "tavily",
    "standard": "anthropic",
    "high_precision": "perplexity",
}
TAVILY_USAGE_MODEL = "tavily-search"


def tier_for_tool(name: str) -> Optional[str]:
    if name in TIER_LABELS:
        return name
    return TOOL_TIERS.get(name)


def _tavily_error(data: Dict[str, Any]) -> RelayError:
    kind = data.get("error")
    if kind == "missing_api_key":
        return ConfigMissing("API key is not configured", provider="tavily")
    if kind == "http_status":
        return classify_status("tavily", int(data.get("status_code") or 500), str(data.get("detail") or ""))
    if kind == "request_failed":
        return UpstreamTransient(str(data.get("detail") or "request failed"), provider="tavily")
    return UpstreamFatal(str(data.get("detail") or kind), provider="tavily")


def next_tier(tier: str, exc: RelayError, visited: List[str]) -> Optional[str]:
    """Degradation order: high_precision -> standard -> eco.

    An eco request whose credential is absent moves up to standard once.
    """
    if tier == "high_precision":
        return "standard"
    if tier == "standard":
        return None if "eco" in visited else "eco"
    if tier == "eco" and isinstance(exc, ConfigMissing) and "standard" not in visited:
        return "standard"
    return None


class SearchCascade:
    def __init__(self, settings: AppSettings, high_precision, standard, eco: TavilyClient, ledger=None):
        self.settings = settings
        self.high_precision = high_precision
        self.standard = standard
        self.eco = eco
        self.ledger = ledger

    async def _record(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> None:
        if self.ledger is not None:
            await self.ledger.record(provider, model, input_tokens, output_tokens)

    async def _run_tier(self, tier: str, query: str, caller_key: Optional[str]) -> str:
        if tier == "eco":
            data = await self.eco.search(
                query, max_results=self.settings.search_max_results, api_key=caller_key
            )
            if data.get("error"):
                raise _tavily_error(data)
            await self._record("tavily", TAVILY_USAGE_MODEL, 0, 0)
            return format_results(data)
        backend = self.high_precision if tier == "high_precision" else self.standard
        result: Completion = await backend.web_search(query)
        await self._record(TIER_PROVIDERS[tier], result.model, result.input_tokens, result.output_tokens)
        return result.text

    async def search(self, tier: str, query: str, caller_key: Optional[str] = None) -> SearchResult:
        """Run exactly one tier, bounded by the search timeout."""
        try:
            text = await asyncio.wait_for(
                self._run_tier(tier, query, caller_key), timeout=self.settings.search_timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamTransient(
                f"search timed out after {self.settings.search_timeout_s}s", provider=TIER_PROVIDERS[tier]
            ) from exc
        if not text.strip():
            raise UpstreamFatal("search returned no content", provider=TIER_PROVIDERS[tier])
        return SearchResult(tool=tier, query=query, text=text, tier_used=tier)

    async def search_with_fallback(
        self, tier: str, query: str, emit: Emit, caller_key: Optional[str] = None
    ) -> SearchResult:
        visited: List[str] = []
        current = tier
        while True:
            visited.append(current)
            try:
                result = await self.search(current, query, caller_key)
                return SearchResult(tool=tier, query=query, text=result.text, tier_used=current)
            except RelayError as exc:
                logger.warning("Search tier %s failed: %s", current, exc)
                if isinstance(exc, QUOTA_ERRORS):
                    await emit(StreamEvent(type="warning", text=quota_warning(exc.provider)))
                fallback = next_tier(current, exc, visited)
                if fallback is None:
                    raise
                await emit(
                    StreamEvent(
                        type="status",
                        text=f"{TIER_NAMES[current]}が利用できないため、{TIER_NAMES[fallback]}に切り替えます…",
                    )
                )
                current = fallback
