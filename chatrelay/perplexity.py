from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from .adapters import (
    AdapterEvent,
    ChatAdapter,
    Completion,
    Finish,
    TextDelta,
    TOOL_STYLE_BUILTIN,
    UsageUpdate,
    extract_error_detail,
    iter_sse_data,
    merge_turns,
    raise_for_upstream,
    wrap_transport_error,
)
from .errors import UpstreamTransient, classify_status
from .schemas import ConversationTurn, NormalizedRequest


SEARCH_SYSTEM_PROMPT = (
    "あなたはリサーチアシスタントです。ウェブ検索の結果をもとに、質問に関する事実を"
    "簡潔かつ正確にまとめてください。重要な数値や日付は省略せず、出典URLを併記してください。"
)
SEARCH_MAX_TOKENS = 1500


def _format_citations(citations: Optional[List[Any]]) -> str:
    urls = [str(url) for url in (citations or []) if url]
    if not urls:
        return ""
    lines = [f"[{idx}] {url}" for idx, url in enumerate(urls, start=1)]
    return "\n\n出典:\n" + "\n".join(lines)


class PerplexityClient(ChatAdapter):
    """OpenAI-compatible Sonar client; the model searches the web on its own."""

    provider = "perplexity"
    tool_style = TOOL_STYLE_BUILTIN

    def __init__(self, api_key: Optional[str], base_url: str, timeout: float = 120.0, search_model: str = "sonar-pro"):
        super().__init__(api_key, base_url, timeout=timeout)
        self.search_model = search_model

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key or ''}", "Content-Type": "application/json"}

    def _messages(self, system: str, turns: Sequence[ConversationTurn]) -> List[Dict[str, str]]:
        messages = merge_turns(turns)
        if system:
            messages.insert(0, {"role": "system", "content": system})
        return messages

    def _payload(self, request: NormalizedRequest, turns: Sequence[ConversationTurn], stream: bool) -> Dict[str, Any]:
        return {
            "model": request.model,
            "messages": self._messages(request.system_instructions, turns),
            "temperature": request.temperature,
            "top_p": request.top_p,
            "max_tokens": request.max_tokens,
            "stream": stream,
        }

    async def stream_events(
        self, request: NormalizedRequest, turns: Sequence[ConversationTurn]
    ) -> AsyncIterator[AdapterEvent]:
        self.require_key()
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(request, turns, stream=True)
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as response:
                await raise_for_upstream(self.provider, response)
                async for data in iter_sse_data(response, self.provider):
                    choices = data.get("choices") or [{}]
                    delta = choices[0].get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield TextDelta(content)
                    usage = data.get("usage")
                    if usage:
                        yield UsageUpdate(
                            input_tokens=usage.get("prompt_tokens"),
                            output_tokens=usage.get("completion_tokens"),
                        )
                    reason = choices[0].get("finish_reason")
                    if reason:
                        yield Finish(str(reason))
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.require_key()
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc
        if resp.status_code >= 400:
            raise classify_status(self.provider, resp.status_code, extract_error_detail(resp))
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamTransient("response was not JSON", provider=self.provider) from exc

    @staticmethod
    def _completion(data: Dict[str, Any], model: str) -> Completion:
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return Completion(
            text=str(message.get("content") or ""),
            model=model,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )

    async def complete(self, request: NormalizedRequest) -> Completion:
        data = await self._post(self._payload(request, request.turns, stream=False))
        return self._completion(data, request.model)

    async def web_search(self, query: str) -> Completion:
        """High-precision search tier: one non-streaming Sonar call."""
        payload = {
            "model": self.search_model,
            "messages": [
                {"role": "system", "content": SEARCH_SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "temperature": 0.2,
            "max_tokens": SEARCH_MAX_TOKENS,
            "stream": False,
        }
        data = await self._post(payload)
        result = self._completion(data, self.search_model)
        result.text += _format_citations(data.get("citations"))
        return result
