"""Central model catalog: aliases, provider families, display names and rates.

Every call site resolves models through this module so the alias table is
defined once. Rates are nano-USD per token (1 USD per 1M tokens == 1000).
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import UnknownModelError


AUTO_MODEL = "auto"

MODEL_ALIASES: Dict[str, str] = {
    "claude": "claude-sonnet-4-5-20250929",
    "sonnet": "claude-sonnet-4-5-20250929",
    "claude-sonnet-4-5": "claude-sonnet-4-5-20250929",
    "claude-sonnet-4.5": "claude-sonnet-4-5-20250929",
    "claude-haiku-4-5": "claude-haiku-4-5-20251001",
    "gemini": "gemini-2.5-flash",
    "gemini-flash": "gemini-2.5-flash",
    "gemini-pro": "gemini-2.5-pro",
    "perplexity": "sonar-pro",
    "sonar": "sonar-pro",
}

# Ordered: the first family whose marker occurs in the model id wins.
PROVIDER_FAMILIES: Tuple[Tuple[str, str], ...] = (
    ("sonar", "perplexity"),
    ("perplexity", "perplexity"),
    ("gemini", "gemini"),
    ("claude", "anthropic"),
)


@dataclass(frozen=True)
class Rate:
    input_nano: int
    output_nano: int


RATE_TABLE: Dict[str, Rate] = {
    "claude-sonnet-4-5-20250929": Rate(input_nano=3000, output_nano=15000),
    "claude-haiku-4-5-20251001": Rate(input_nano=1000, output_nano=5000),
    "gemini-2.5-flash": Rate(input_nano=300, output_nano=2500),
    "gemini-2.5-pro": Rate(input_nano=1250, output_nano=10000),
    "gemini-3-flash-preview": Rate(input_nano=500, output_nano=3000),
    "sonar-pro": Rate(input_nano=3000, output_nano=15000),
    "sonar": Rate(input_nano=1000, output_nano=1000),
    "tavily-search": Rate(input_nano=0, output_nano=0),
}
# Flat, deliberately high rate for anything not in the table.
DEFAULT_RATE = Rate(input_nano=15000, output_nano=75000)

_DATE_SUFFIX_RE = re.compile(r"-\d{8}$")


def canonical_model(name: str) -> str:
    cleaned = (name or "").strip()
    return MODEL_ALIASES.get(cleaned.lower(), cleaned)


def provider_for_model(model: str) -> str:
    lowered = (model or "").lower()
    for marker, provider in PROVIDER_FAMILIES:
        if marker in lowered:
            return provider
    raise UnknownModelError(f"モデル '{model}' に対応するプロバイダーが設定されていません。")


def display_name(model: str) -> str:
    return _DATE_SUFFIX_RE.sub("", model or "")


def rate_for(model: str) -> Rate:
    return RATE_TABLE.get(canonical_model(model), DEFAULT_RATE)


def build_footer(model: str, search_label: Optional[str] = None, deep_research: bool = False) -> str:
    lines = ["---", f"Model: {display_name(model)}"]
    if search_label:
        lines.append(f"Search Model: {search_label}")
    if deep_research:
        lines.append("Mode: Deep Research")
    return "\n\n" + "\n".join(lines)
