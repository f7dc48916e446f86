from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import inspect
import json
import logging
import time
import traceback
from typing import Any, Dict, Mapping, Optional, Union

from .anonymize import anonymize, anonymize_value
from .budget import BudgetStats, BudgetTracker, estimate_cost
from .config import AgentConfig, load_config, merge_config
from .format import ConsolePresenter
from .models import (
    AgentMetadata,
    AgentResult,
    CallOptions,
    CallRequest,
    ContextKind,
    PersonaDefinition,
)
from .persona_loader import detect_persona, get_persona
from .providers import BaseProvider, ProviderError, build_provider
from .rate_limit import RateLimiter

logger = logging.getLogger("console-agent")

RATE_LIMITED_MESSAGE = "Rate limited: too many calls. Try again later."

OptionsLike = Union[CallOptions, Mapping[str, Any], None]

# Sync providers run here rather than on the loop's default executor, which
# asyncio.run joins on shutdown; a timed-out call must not wait for its worker.
_provider_executor = concurrent.futures.ThreadPoolExecutor(thread_name_prefix="console-agent-provider")


def build_error_result(message: str, *, model: str) -> AgentResult:
    """Failure envelope. Metadata is zeroed but always present."""
    return AgentResult(
        success=False,
        summary=message,
        data={},
        actions=[],
        confidence=0.0,
        metadata=AgentMetadata(model=model),
    )


def build_dry_run_result(persona_name: str, *, model: str) -> AgentResult:
    return AgentResult(
        success=True,
        summary=f"[DRY RUN] Would have executed with {persona_name} persona",
        data={"dryRun": True},
        actions=[],
        confidence=1.0,
        metadata=AgentMetadata(model=model),
    )


def _error_fields(exc: BaseException) -> Dict[str, Any]:
    """
    Explicit field extraction for exceptions.

    Plain JSON serialization would lose the type, message and traceback, so
    they are pulled out by name together with any public instance attributes.
    """
    fields: Dict[str, Any] = {
        "name": type(exc).__name__,
        "message": str(exc),
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip(),
    }
    for key, value in vars(exc).items():
        if not key.startswith("_"):
            fields[key] = value
    return fields


def _to_jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def serialize_context(request: CallRequest, anonymize_enabled: bool) -> str:
    """Render the call context as the string handed to the provider."""
    kind = request.context_kind
    if kind is ContextKind.ABSENT:
        return ""
    if kind is ContextKind.TEXT:
        return anonymize(request.context) if anonymize_enabled else request.context

    if kind is ContextKind.ERROR:
        value = _to_jsonable(_error_fields(request.context))
    else:
        value = _to_jsonable(request.context)
    if anonymize_enabled:
        value = anonymize_value(value)
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2)


def _coerce_options(options: OptionsLike) -> CallOptions:
    if options is None:
        return CallOptions()
    if isinstance(options, CallOptions):
        return options
    return CallOptions.model_validate(dict(options))


def _coerce_result(raw: Any, model: str) -> AgentResult:
    if isinstance(raw, AgentResult):
        return raw
    if isinstance(raw, dict):
        payload = dict(raw)
        payload["metadata"] = {"model": model, **(payload.get("metadata") or {})}
        return AgentResult.model_validate(payload)
    raise ProviderError("UNSUPPORTED_RESULT", "Provider returned unsupported result type")


async def _call_provider(
    provider: Any,
    prompt: str,
    context: str,
    persona: PersonaDefinition,
    config: AgentConfig,
    options: CallOptions,
) -> AgentResult:
    """
    Invoke the provider.

    Accepts a BaseProvider or any callable with the same signature. Sync
    callables run in a worker thread so the timeout race still applies.
    Dicts are accepted as results and validated into AgentResult.
    """
    fn = getattr(provider, "complete", None)
    if fn is None or not callable(fn):
        fn = provider

    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None)):
        raw = await fn(prompt, context, persona, config, options)
    else:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(
            _provider_executor, functools.partial(fn, prompt, context, persona, config, options)
        )
        if inspect.isawaitable(raw):
            raw = await raw
    return _coerce_result(raw, options.model or config.model)


class Orchestrator:
    """
    Runs one agent call end to end.

    Owns the configuration plus the rate limiter and budget tracker sized
    from it. `update_config` replaces both governors, so counters reset on
    every reconfigure.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        provider: Optional[BaseProvider] = None,
        presenter: Optional[ConsolePresenter] = None,
    ) -> None:
        self._config = config if config is not None else load_config()
        self._provider = provider
        self._presenter = presenter or ConsolePresenter()
        self._reset_governors()

    def _reset_governors(self) -> None:
        self.rate_limiter = RateLimiter(self._config.budget.max_calls_per_day)
        self.budget_tracker = BudgetTracker(self._config.budget)

    def update_config(self, **partial: Any) -> None:
        self._config = merge_config(self._config, partial)
        self._reset_governors()

    def get_config(self) -> AgentConfig:
        return self._config.model_copy(deep=True)

    def get_stats(self) -> BudgetStats:
        return self.budget_tracker.get_stats()

    def _resolve_provider(self, config: AgentConfig) -> BaseProvider:
        return self._provider if self._provider is not None else build_provider(config)

    async def execute(self, prompt: str, context: Any = None, options: OptionsLike = None) -> AgentResult:
        """Run one call. Never raises; every failure comes back as success=False."""
        config = self._config
        try:
            request = CallRequest(prompt=prompt, context=context, options=_coerce_options(options))
            return await self._execute(request, config)
        except Exception as exc:
            logger.debug("Agent call failed before dispatch: %s", exc, exc_info=True)
            return build_error_result(str(exc) or type(exc).__name__, model=config.model)

    async def _execute(self, request: CallRequest, config: AgentConfig) -> AgentResult:
        options = request.options
        rate_limiter, budget_tracker = self.rate_limiter, self.budget_tracker

        # 1) Persona: explicit override wins, otherwise keyword detection.
        if options.persona:
            persona = get_persona(options.persona)
        else:
            persona = detect_persona(request.prompt, config.persona)
        verbose = options.verbose if options.verbose is not None else config.verbose
        logger.debug("Selected persona: %s (%s)", persona.name, persona.icon)

        # 2) Dry run never touches the network or the governors.
        if config.dry_run:
            self._presenter.render_dry_run(
                request.prompt, persona, serialize_context(request, config.anonymize), verbose
            )
            return build_dry_run_result(persona.name, model=config.model)

        # 3-4) Admission gates.
        if not rate_limiter.try_consume():
            self._presenter.render_rate_limit_warning(verbose)
            return build_error_result(RATE_LIMITED_MESSAGE, model=config.model)

        check = budget_tracker.can_make_call()
        if not check.allowed:
            reason = check.reason or "Budget exceeded"
            self._presenter.render_budget_warning(reason, verbose)
            return build_error_result(reason, model=config.model)

        # 5) Content preparation.
        context_str = serialize_context(request, config.anonymize)
        prompt = anonymize(request.prompt) if config.anonymize else request.prompt

        # 6-7) Dispatch under a deadline, then record usage.
        timeout_ms = options.timeout_ms or config.timeout
        provider = self._resolve_provider(config)
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                _call_provider(provider, prompt, context_str, persona, config, options),
                timeout=timeout_ms / 1000.0,
            )
            # Only reached when the provider won the race, so an abandoned call is never recorded.
            budget_tracker.record_usage(
                result.metadata.tokens_used,
                estimate_cost(result.metadata.tokens_used, result.metadata.model),
            )
        except asyncio.TimeoutError:
            message = f"Agent timed out after {timeout_ms}ms"
            return self._fail(message, persona, config, verbose, start)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            return self._fail(message, persona, config, verbose, start)

        self._presenter.render_result(result, persona, verbose)
        _log_call(persona=persona, provider=config.provider, success=result.success, result=result)
        return result

    def _fail(
        self,
        message: str,
        persona: PersonaDefinition,
        config: AgentConfig,
        verbose: bool,
        start: float,
    ) -> AgentResult:
        self._presenter.render_error(message, persona, verbose)
        logger.debug(
            "agent call failed persona=%s provider=%s after_ms=%.2f error=%s",
            persona.name,
            config.provider,
            (time.monotonic() - start) * 1000.0,
            message,
        )
        return build_error_result(message, model=config.model)


def _log_call(*, persona: PersonaDefinition, provider: str, success: bool, result: AgentResult) -> None:
    logger.debug(
        "agent call persona=%s provider=%s model=%s success=%s tokens=%s latency_ms=%s",
        persona.name,
        provider,
        result.metadata.model,
        success,
        result.metadata.tokens_used,
        result.metadata.latency_ms,
    )
