from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "assistant", "system"]
SearchMode = Literal["auto", "high_precision", "standard", "eco"]
SearchTier = Literal["high_precision", "standard", "eco"]
EventType = Literal["content", "status", "warning", "error", "footer", "model_selected"]

SEARCH_MODES = ("auto", "high_precision", "standard", "eco")


class ConversationTurn(BaseModel):
    role: Role
    content: str

    model_config = {"frozen": True}


class ChatRequest(BaseModel):
    """Inbound body of POST /api/chat (camelCase keys from the browser)."""

    messages: List[ConversationTurn] = Field(default_factory=list)
    model: str = "auto"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    top_p: Optional[float] = Field(default=None, alias="topP")
    system_instructions: Optional[str] = Field(default=None, alias="systemInstructions")
    search_mode: str = Field(default="auto", alias="searchMode")
    is_deep_research: bool = Field(default=False, alias="isDeepResearch")
    eco_search_key: Optional[str] = Field(default=None, alias="ecoSearchKey")

    model_config = {"populate_by_name": True, "protected_namespaces": ()}


class NormalizedRequest(BaseModel):
    model: str
    temperature: float = Field(ge=0.0, le=1.0)
    top_p: float = Field(ge=0.0, le=1.0)
    max_tokens: int = Field(gt=0)
    system_instructions: str = ""
    search_mode: SearchMode = "auto"
    turns: List[ConversationTurn] = Field(default_factory=list)

    model_config = {"frozen": True, "protected_namespaces": ()}

    @property
    def last_user_text(self) -> str:
        for turn in reversed(self.turns):
            if turn.role == "user":
                return turn.content
        return ""


class StreamEvent(BaseModel):
    type: EventType
    text: str = ""

    model_config = {"frozen": True}

    def to_frame(self) -> Dict[str, Any]:
        if self.type == "model_selected":
            return {"type": self.type, "model": self.text}
        if self.type in ("warning", "error"):
            return {"type": self.type, "message": self.text}
        return {"type": self.type, "text": self.text}


class SearchResult(BaseModel):
    tool: SearchTier
    query: str
    text: str
    tier_used: Optional[SearchTier] = None

    model_config = {"frozen": True}


class UsageRecord(BaseModel):
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_nano_usd: int = 0
    timestamp: str

    model_config = {"frozen": True, "protected_namespaces": ()}


class ProviderUsage(BaseModel):
    requests: int = 0
    cost: float = 0.0


class UsagePeriod(BaseModel):
    requests: int = 0
    cost: float = 0.0
    by_api: Dict[str, ProviderUsage] = Field(default_factory=dict)


class DailyCost(BaseModel):
    date: str
    cost: float


class BudgetStatus(BaseModel):
    limit: float
    remaining: float
    percentage: float
    warning: bool = False
    danger: bool = False


class UsageSummary(BaseModel):
    today: UsagePeriod = Field(default_factory=UsagePeriod)
    this_month: UsagePeriod = Field(default_factory=UsagePeriod)
    daily_breakdown: List[DailyCost] = Field(default_factory=list)
    budget: BudgetStatus
