"""
The `agent(...)` calling convention.

Both execution modes run the exact same `Orchestrator.execute` coroutine;
they differ only in whether this wrapper waits for it.

- blocking: the call returns the AgentResult.
- fire-and-forget: the call is scheduled (a task on the running event loop,
  or a worker thread when there is none) and the handle is returned. Errors
  are logged, never raised.

From async code prefer `await agent.run(...)`.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Optional, Set, Union

from .engine import OptionsLike, Orchestrator
from .format import configure_logging
from .models import AgentResult, CallOptions

logger = logging.getLogger("console-agent")

Handle = Union["asyncio.Task[AgentResult]", "concurrent.futures.Future[AgentResult]"]

_executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _background_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = concurrent.futures.ThreadPoolExecutor(thread_name_prefix="console-agent")
        return _executor


def _merge_options(options: OptionsLike, overrides: dict) -> OptionsLike:
    if not overrides:
        return options
    if options is None:
        return dict(overrides)
    if isinstance(options, CallOptions):
        return options.model_copy(update=overrides)
    return {**options, **overrides}


def _mode_of(options: OptionsLike) -> Optional[str]:
    if isinstance(options, CallOptions):
        return options.mode
    if isinstance(options, dict):
        return options.get("mode")
    return None


class ConsoleAgent:
    """Callable front end: `agent(prompt, context, options, **option_overrides)`."""

    def __init__(self, orchestrator: Optional[Orchestrator] = None) -> None:
        self.orchestrator = orchestrator or Orchestrator()
        self._pending: Set[asyncio.Task] = set()

    def configure(self, **config: Any) -> None:
        self.orchestrator.update_config(**config)
        configure_logging(self.orchestrator.get_config().log_level)

    def __call__(
        self,
        prompt: str,
        context: Any = None,
        options: OptionsLike = None,
        **overrides: Any,
    ) -> Union[AgentResult, Handle]:
        options = _merge_options(options, overrides)
        mode = _mode_of(options) or self.orchestrator.get_config().mode
        coro = self.orchestrator.execute(prompt, context, options)
        if mode == "blocking":
            return _run_blocking(coro)
        return self._spawn(coro)

    async def run(
        self,
        prompt: str,
        context: Any = None,
        options: OptionsLike = None,
        **overrides: Any,
    ) -> AgentResult:
        return await self.orchestrator.execute(prompt, context, _merge_options(options, overrides))

    def security(self, prompt: str, context: Any = None, options: OptionsLike = None, **overrides: Any):
        return self(prompt, context, options, **{**overrides, "persona": "security"})

    def debug(self, prompt: str, context: Any = None, options: OptionsLike = None, **overrides: Any):
        return self(prompt, context, options, **{**overrides, "persona": "debugger"})

    def architect(self, prompt: str, context: Any = None, options: OptionsLike = None, **overrides: Any):
        return self(prompt, context, options, **{**overrides, "persona": "architect"})

    def _spawn(self, coro: Coroutine[Any, Any, AgentResult]) -> Handle:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(coro)
            # Keep a strong reference until the task finishes.
            self._pending.add(task)
            task.add_done_callback(self._on_done)
            return task

        future = _background_executor().submit(asyncio.run, coro)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, handle: Handle) -> None:
        if isinstance(handle, asyncio.Task):
            self._pending.discard(handle)
        if handle.cancelled():
            return
        exc = handle.exception()
        if exc is not None:
            logger.error("Fire-and-forget agent call failed: %s", exc)


def _run_blocking(coro: Coroutine[Any, Any, AgentResult]) -> AgentResult:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Already inside an event loop: finish on a helper thread with its own loop.
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()
