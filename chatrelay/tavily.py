from typing import Any, Dict, Optional

import httpx


class TavilyClient:
    """Eco search tier. Returns error dicts instead of raising; the cascade maps them."""

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.tavily.com", timeout: float = 45.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        include_answer: bool = True,
        api_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = api_key or self.api_key
        if not key:
            return {"error": "missing_api_key"}
        allowed_topics = {"general", "news", "finance"}
        if topic:
            cleaned = str(topic).strip().lower()
            topic = cleaned if cleaned in allowed_topics else None
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
        }
        if topic:
            payload["topic"] = topic
        return await self._post(f"{self.base_url}/search", payload, key)

    async def _post(self, url: str, payload: Dict[str, Any], key: str) -> Dict[str, Any]:
        # Older keys expect the key in the JSON body; newer ones read the bearer header.
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {key}"}
        payload = {**payload, "api_key": key}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}
        except ValueError as e:
            return {"error": "invalid_response", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def format_results(data: Dict[str, Any], max_chars: int = 600) -> str:
    lines = []
    answer = str(data.get("answer") or "").strip()
    if answer:
        lines.append(f"概要: {answer}")
    for item in data.get("results") or []:
        title = str(item.get("title") or "").strip()
        content = str(item.get("content") or "").strip()
        if len(content) > max_chars:
            content = content[:max_chars] + "…"
        url = str(item.get("url") or "").strip()
        lines.append(f"- {title}: {content} ({url})")
    return "\n".join(lines)
