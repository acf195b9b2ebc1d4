from typing import Any, AsyncIterator, Dict, List, Sequence

import httpx

from .adapters import (
    AdapterEvent,
    ChatAdapter,
    Completion,
    Finish,
    TextDelta,
    TOOL_STYLE_INLINE,
    UsageUpdate,
    extract_error_detail,
    iter_sse_data,
    merge_turns,
    raise_for_upstream,
    wrap_transport_error,
)
from .errors import UpstreamFatal, UpstreamTransient, classify_status
from .schemas import ConversationTurn, NormalizedRequest


def _candidate_texts(data: Dict[str, Any]) -> List[str]:
    texts: List[str] = []
    for candidate in data.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            # Thought summaries are not part of the answer.
            if part.get("thought"):
                continue
            text = part.get("text")
            if text:
                texts.append(text)
    return texts


def _finish_reason(data: Dict[str, Any]) -> str:
    for candidate in data.get("candidates") or []:
        reason = candidate.get("finishReason")
        if reason:
            return str(reason)
    return ""


class GeminiClient(ChatAdapter):
    provider = "gemini"
    tool_style = TOOL_STYLE_INLINE

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"}

    def _payload(self, request: NormalizedRequest, turns: Sequence[ConversationTurn]) -> Dict[str, Any]:
        contents = [
            {"role": turn["role"], "parts": [{"text": turn["content"]}]}
            for turn in merge_turns(turns, assistant_role="model")
        ]
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "topP": request.top_p,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system_instructions:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instructions}]}
        return payload

    async def stream_events(
        self, request: NormalizedRequest, turns: Sequence[ConversationTurn]
    ) -> AsyncIterator[AdapterEvent]:
        self.require_key()
        url = f"{self.base_url}/models/{request.model}:streamGenerateContent"
        payload = self._payload(request, turns)
        try:
            async with self.client.stream(
                "POST", url, params={"alt": "sse"}, json=payload, headers=self._headers()
            ) as response:
                await raise_for_upstream(self.provider, response)
                async for data in iter_sse_data(response, self.provider):
                    error = data.get("error")
                    if isinstance(error, dict):
                        raise classify_status(self.provider, int(error.get("code") or 500), str(error.get("message") or ""))
                    for text in _candidate_texts(data):
                        yield TextDelta(text)
                    usage = data.get("usageMetadata")
                    if usage:
                        yield UsageUpdate(
                            input_tokens=usage.get("promptTokenCount"),
                            output_tokens=usage.get("candidatesTokenCount"),
                        )
                    reason = _finish_reason(data)
                    if reason:
                        yield Finish(reason)
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc

    async def complete(self, request: NormalizedRequest) -> Completion:
        self.require_key()
        url = f"{self.base_url}/models/{request.model}:generateContent"
        try:
            resp = await self.client.post(url, json=self._payload(request, request.turns), headers=self._headers())
        except httpx.RequestError as exc:
            raise wrap_transport_error(self.provider, exc) from exc
        if resp.status_code >= 400:
            raise classify_status(self.provider, resp.status_code, extract_error_detail(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamTransient("response was not JSON", provider=self.provider) from exc
        text = "".join(_candidate_texts(data))
        if not text and _finish_reason(data) == "SAFETY":
            raise UpstreamFatal("response blocked by safety filters", provider=self.provider)
        usage = data.get("usageMetadata") or {}
        return Completion(
            text=text,
            model=request.model,
            input_tokens=int(usage.get("promptTokenCount") or 0),
            output_tokens=int(usage.get("candidatesTokenCount") or 0),
        )
