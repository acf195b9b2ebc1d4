"""Error taxonomy shared by adapters, the search cascade and the orchestrator."""

from typing import Optional


QUOTA_MESSAGES = {
    "anthropic": "Claude APIの利用上限に達しました。しばらく待ってから再度お試しください。",
    "gemini": "Gemini APIの利用上限に達しました。しばらく待ってから再度お試しください。",
    "perplexity": "Perplexity APIの利用上限に達しました（高精度検索の予算切れ）。",
    "tavily": "節約検索（Tavily）の利用上限に達しました。",
}
GENERIC_QUOTA_MESSAGE = "{provider} の利用上限に達しました。"


class RelayError(Exception):
    """Base error carrying a machine-readable code and the provider it came from."""

    code = "relay_error"

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    def __str__(self) -> str:
        if self.provider:
            return f"[{self.provider}] {self.message}"
        return self.message


class ConfigMissing(RelayError):
    code = "config_missing"


class QuotaExceeded(RelayError):
    code = "quota_exceeded"


class RateLimited(RelayError):
    code = "rate_limited"


class UpstreamTransient(RelayError):
    code = "upstream_transient"


class UpstreamFatal(RelayError):
    code = "upstream_fatal"


class MalformedUpstreamChunk(RelayError):
    code = "malformed_chunk"


class UnknownModelError(RelayError):
    code = "unknown_model"


QUOTA_ERRORS = (QuotaExceeded, RateLimited)
QUOTA_HINTS = ("quota", "credit", "billing", "insufficient_quota", "resource_exhausted", "usage limit")


def classify_status(provider: str, status: int, detail: str = "") -> RelayError:
    lowered = (detail or "").lower()
    message = f"HTTP {status}: {detail[:300]}" if detail else f"HTTP {status}"
    if status in (402, 432, 433) or (status in (400, 403, 429) and any(h in lowered for h in QUOTA_HINTS)):
        return QuotaExceeded(message, provider=provider, status_code=status)
    if status == 429:
        return RateLimited(message, provider=provider, status_code=status)
    if status in (408, 409, 425, 529) or status >= 500:
        return UpstreamTransient(message, provider=provider, status_code=status)
    return UpstreamFatal(message, provider=provider, status_code=status)


def quota_warning(provider: Optional[str]) -> str:
    if provider and provider in QUOTA_MESSAGES:
        return QUOTA_MESSAGES[provider]
    return GENERIC_QUOTA_MESSAGE.format(provider=provider or "API")


def user_message(exc: Exception) -> str:
    if isinstance(exc, QUOTA_ERRORS):
        return quota_warning(exc.provider)
    if isinstance(exc, ConfigMissing):
        return f"{exc.provider or 'API'} の認証情報が設定されていません。"
    if isinstance(exc, UnknownModelError):
        return exc.message
    if isinstance(exc, UpstreamTransient):
        return f"{exc.provider or 'API'} との通信に失敗しました。時間をおいて再度お試しください。"
    if isinstance(exc, RelayError):
        return f"{exc.provider or 'API'} がエラーを返しました: {exc.message}"
    return "応答の生成中にエラーが発生しました。"
