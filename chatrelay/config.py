import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATRELAY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("anthropic_api_key", "gemini_api_key", "perplexity_api_key", "tavily_api_key")


class ProviderEndpoints(BaseModel):
    anthropic: str = "https://api.anthropic.com"
    gemini: str = "https://generativelanguage.googleapis.com/v1beta"
    perplexity: str = "https://api.perplexity.ai"
    tavily: str = "https://api.tavily.com"


class AppSettings(BaseModel):
    anthropic_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    perplexity_api_key: Optional[str] = None
    tavily_api_key: Optional[str] = None
    endpoints: ProviderEndpoints = Field(default_factory=ProviderEndpoints)

    # Model routing
    default_model: str = "claude-sonnet-4-5-20250929"
    light_model: str = "gemini-2.5-flash"
    critique_model: str = "gemini-2.5-flash"
    high_precision_search_model: str = "sonar-pro"
    standard_search_model: str = "claude-sonnet-4-5-20250929"
    auto_short_message_chars: int = 30
    default_max_tokens: int = 4096
    default_temperature: float = 0.7
    default_top_p: float = 1.0

    # Upstream budgets
    request_timeout_s: float = 120.0
    search_timeout_s: float = 45.0
    search_max_results: int = 5
    max_tool_rounds: int = 3

    # Usage ledger
    monthly_budget_usd: float = 50.0
    usage_window_days: int = 30

    database_path: str = "chatrelay.db"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY") or os.getenv("AI_INTEGRATIONS_ANTHROPIC_API_KEY"),
        "gemini_api_key": os.getenv("GEMINI_API_KEY") or os.getenv("AI_INTEGRATIONS_GOOGLE_API_KEY"),
        "perplexity_api_key": os.getenv("PERPLEXITY_API_KEY"),
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "light_model": os.getenv("LIGHT_MODEL"),
        "critique_model": os.getenv("CRITIQUE_MODEL"),
        "default_max_tokens": os.getenv("DEFAULT_MAX_TOKENS"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "search_timeout_s": os.getenv("SEARCH_TIMEOUT_S"),
        "monthly_budget_usd": os.getenv("MONTHLY_BUDGET_USD"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "default_max_tokens" in cleaned:
        cleaned["default_max_tokens"] = int(cleaned["default_max_tokens"])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    for key in ("request_timeout_s", "search_timeout_s", "monthly_budget_usd"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    anthropic_base = os.getenv("ANTHROPIC_BASE_URL") or os.getenv("AI_INTEGRATIONS_ANTHROPIC_BASE_URL")
    if anthropic_base:
        cleaned["endpoints"] = {"anthropic": anthropic_base.rstrip("/")}
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge_endpoints(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base.get("endpoints") or {})
    merged.update(override.get("endpoints") or {})
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    allow_env_overrides = _env_overrides_config()
    # Config wins by default; allow env overrides only when explicitly enabled.
    if allow_env_overrides:
        merged = {**file_data, **env_data}
        merged["endpoints"] = _merge_endpoints(file_data, env_data)
    else:
        merged = {**env_data, **file_data}
        merged["endpoints"] = _merge_endpoints(env_data, file_data)
    # Credentials missing from config.json still come from the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)
