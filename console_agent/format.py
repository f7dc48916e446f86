"""
Console presentation for agent calls.

Everything goes through the `console-agent` logger so applications can route
or silence it like any other logger. Rendering must never fail a call, so
every public method swallows its own errors (logged at debug level).
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

from .models import AgentResult, LogLevel, PersonaDefinition

logger = logging.getLogger("console-agent")

PREFIX = "[AGENT]"

LOG_LEVELS: Dict[str, int] = {
    "silent": logging.CRITICAL + 10,
    "errors": logging.ERROR,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def configure_logging(level: LogLevel) -> None:
    """
    Set the console-agent log level.

    Records always propagate to the host application's handlers. A stderr
    handler is attached only when the root logger has none, so output is
    visible in scripts that never configured logging.
    """
    logger.setLevel(LOG_LEVELS[level])
    if logging.getLogger().handlers:
        return
    if not any(getattr(h, "_console_agent", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler._console_agent = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ConsolePresenter:
    """Renders call outcomes. Verbose mode prints the full trace; otherwise only the answer."""

    def render_result(self, result: AgentResult, persona: PersonaDefinition, verbose: bool) -> None:
        try:
            self._render_result(result, persona, verbose)
        except Exception as exc:  # pragma: no cover - rendering must not fail the call
            logger.debug("Failed to render result: %s", exc)

    def _render_result(self, result: AgentResult, persona: PersonaDefinition, verbose: bool) -> None:
        if not verbose:
            logger.info("%s", result.summary)
            return

        status = "✓" if result.success else "✗"
        logger.info("%s %s %s Complete", PREFIX, persona.icon, persona.label)
        logger.info("%s ├─ %s %s", PREFIX, status, result.summary)
        for action in result.actions:
            logger.info("%s ├─ Tool: %s", PREFIX, action)
        for key, value in result.data.items():
            logger.info("%s ├─ %s: %s", PREFIX, key, _stringify(value))
        if result.reasoning:
            logger.info("%s ├─ Reasoning:", PREFIX)
            for line in result.reasoning.splitlines()[:3]:
                logger.info("%s │  %s", PREFIX, line.strip())
        meta = result.metadata
        logger.info(
            "%s └─ confidence: %.2f | %sms | %s tokens%s",
            PREFIX,
            result.confidence,
            meta.latency_ms,
            meta.tokens_used,
            " (cached)" if meta.cached else "",
        )

    def render_error(self, message: str, persona: PersonaDefinition, verbose: bool) -> None:
        try:
            if verbose:
                logger.error("%s %s Error: %s", PREFIX, persona.icon, message)
            else:
                logger.error("%s Error: %s", PREFIX, message)
        except Exception as exc:  # pragma: no cover
            logger.debug("Failed to render error: %s", exc)

    def render_budget_warning(self, reason: str, verbose: bool) -> None:
        try:
            logger.error("%s ⚠ Budget limit: %s", PREFIX, reason)
        except Exception as exc:  # pragma: no cover
            logger.debug("Failed to render budget warning: %s", exc)

    def render_rate_limit_warning(self, verbose: bool) -> None:
        try:
            logger.error("%s ⚠ Rate limited: Too many calls. Try again later.", PREFIX)
        except Exception as exc:  # pragma: no cover
            logger.debug("Failed to render rate limit warning: %s", exc)

    def render_dry_run(
        self,
        prompt: str,
        persona: PersonaDefinition,
        context: Optional[str],
        verbose: bool,
    ) -> None:
        try:
            if not verbose:
                logger.info("%s DRY RUN %s %s: %s", PREFIX, persona.icon, persona.label, prompt)
                return
            logger.info("%s DRY RUN %s %s", PREFIX, persona.icon, persona.label)
            logger.info("%s ├─ Persona: %s", PREFIX, persona.name)
            logger.info("%s ├─ Prompt: %s", PREFIX, prompt)
            if context:
                logger.info("%s ├─ Context:", PREFIX)
                for line in context.splitlines()[:5]:
                    logger.info("%s │  %s", PREFIX, line)
            logger.info("%s └─ (No API call made)", PREFIX)
        except Exception as exc:  # pragma: no cover
            logger.debug("Failed to render dry run: %s", exc)
