import os
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import ExecutionMode, LogLevel, PersonaName, SafetySetting

# Load .env from current directory so API keys and overrides are set automatically.
load_dotenv()

ProviderName = Literal["google", "ollama", "stub"]


class BudgetConfig(BaseModel):
    max_calls_per_day: int = Field(default=100, ge=0)
    max_tokens_per_call: int = Field(default=8000, ge=1)
    cost_cap_daily: float = Field(default=1.0, ge=0)


class AgentConfig(BaseModel):
    """Configuration for one orchestrator. Every field has a default."""

    provider: ProviderName = "google"
    api_key: Optional[str] = None
    model: str = "gemini-2.5-flash-lite"
    ollama_host: str = "http://localhost:11434"
    persona: PersonaName = "general"
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    mode: ExecutionMode = "fire-and-forget"
    timeout: int = Field(default=10000, gt=0)
    anonymize: bool = True
    local_only: bool = False
    dry_run: bool = False
    log_level: LogLevel = "info"
    verbose: bool = False
    safety_settings: List[SafetySetting] = Field(default_factory=list)


@lru_cache(maxsize=1)
def _base_config() -> AgentConfig:
    """
    Built-in defaults.

    Only the defaults are cached; `load_config` re-reads the environment on
    every call so tests can change os.environ between calls.
    """

    return AgentConfig()


def default_config() -> AgentConfig:
    return _base_config().model_copy(deep=True)


def merge_config(current: AgentConfig, partial: Dict[str, Any]) -> AgentConfig:
    """
    Merge `partial` over `current`.

    The budget sub-object is merged key-wise over the budget defaults, so
    `{"budget": {"max_calls_per_day": 5}}` keeps the default token and cost caps.
    """
    merged = current.model_dump()
    for key, value in partial.items():
        if key not in AgentConfig.model_fields:
            raise ValueError(f"Unknown config field: {key}")
        if key == "budget":
            if isinstance(value, BudgetConfig):
                value = value.model_dump(exclude_unset=True)
            budget = _base_config().budget.model_dump()
            budget.update(value or {})
            value = budget
        elif key == "safety_settings" and value is not None:
            value = [s.model_dump() if isinstance(s, SafetySetting) else s for s in value]
        merged[key] = value
    return AgentConfig.model_validate(merged)


def load_config() -> AgentConfig:
    """
    Return the default config with environment overrides applied.

    Reads GEMINI_API_KEY (or GOOGLE_GENERATIVE_AI_API_KEY), CONSOLE_AGENT_PROVIDER,
    CONSOLE_AGENT_MODEL, CONSOLE_AGENT_LOG_LEVEL and OLLAMA_HOST.
    """

    base = default_config()
    overrides: Dict[str, Any] = {}

    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GENERATIVE_AI_API_KEY") or None
    if api_key:
        overrides["api_key"] = api_key
    provider = (os.getenv("CONSOLE_AGENT_PROVIDER") or "").strip().lower()
    if provider:
        overrides["provider"] = provider
    model = os.getenv("CONSOLE_AGENT_MODEL") or None
    if model:
        overrides["model"] = model
    log_level = (os.getenv("CONSOLE_AGENT_LOG_LEVEL") or "").strip().lower()
    if log_level:
        overrides["log_level"] = log_level
    ollama_host = os.getenv("OLLAMA_HOST") or None
    if ollama_host:
        overrides["ollama_host"] = ollama_host

    return merge_config(base, overrides)
