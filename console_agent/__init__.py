"""
console-agent: drop `agent(...)` anywhere in your code to run an LLM call
as easily as a log line.

    from console_agent import agent, init

    init(api_key=os.environ["GEMINI_API_KEY"])   # optional, sensible defaults

    agent("analyze this error", exc)              # fire-and-forget (default)
    result = agent("validate email format", email, mode="blocking")

    agent.security("audit SQL query", query)
    agent.debug("investigate slow query", {"duration": 3.2, "sql": sql})
    agent.architect("review API design", endpoint)
"""

from typing import Any

from .budget import BudgetStats, estimate_cost
from .config import AgentConfig, BudgetConfig, default_config
from .engine import Orchestrator
from .format import configure_logging
from .models import (
    AgentMetadata,
    AgentResult,
    CallOptions,
    FileAttachment,
    PersonaDefinition,
    ResponseFormat,
    SafetySetting,
    ThinkingConfig,
    ToolCall,
    ToolConfig,
)
from .persona_loader import detect_persona, get_persona
from .providers import BaseProvider, ProviderError
from .runtime import ConsoleAgent

agent = ConsoleAgent()
configure_logging(agent.orchestrator.get_config().log_level)


def init(**config: Any) -> ConsoleAgent:
    """
    Configure the default `agent`. Call once at startup; every field is optional.

    Reconfiguring resets the daily rate and budget counters.
    """
    agent.configure(**config)
    return agent


def get_config() -> AgentConfig:
    return agent.orchestrator.get_config()


__all__ = [
    "AgentConfig",
    "AgentMetadata",
    "AgentResult",
    "BaseProvider",
    "BudgetConfig",
    "BudgetStats",
    "CallOptions",
    "ConsoleAgent",
    "FileAttachment",
    "Orchestrator",
    "PersonaDefinition",
    "ProviderError",
    "ResponseFormat",
    "SafetySetting",
    "ThinkingConfig",
    "ToolCall",
    "ToolConfig",
    "agent",
    "default_config",
    "detect_persona",
    "estimate_cost",
    "get_config",
    "get_persona",
    "init",
]
