"""
Background execution of after-hooks.

After-hooks run once their transaction has committed, as independent
asyncio tasks. They carry no delivery or ordering guarantee: a failure is
logged and dropped, never retried and never reported to the original
caller. Nothing a caller must observe synchronously belongs in an after-hook.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from domain_engine.runtime.hooks import AfterHook
from domain_engine.runtime.logging import log_with_context

logger = logging.getLogger(__name__)


class AfterHookDispatcher:
    """Schedules after-hooks as tracked tasks with a failure-logging boundary."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()
        self.failures = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, hook: AfterHook, result: Any, context: Any, label: str = "") -> None:
        """
        Schedule ``hook(result, context)`` on the running loop.

        Must be called from within the event loop thread (the pipeline calls it
        from the transaction's on-commit callback).
        """
        task = asyncio.get_running_loop().create_task(
            self._run(hook, result, context, label), name=f"after-hook:{label}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, hook: AfterHook, result: Any, context: Any, label: str) -> None:
        # yield once so the after-hook never runs before the caller resumes
        await asyncio.sleep(0)
        try:
            outcome = hook(result, context)
            if inspect.isawaitable(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            log_with_context(
                logger,
                logging.ERROR,
                f"After-hook failed: {e}",
                {"hook": label},
                exc_info=True,
            )

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for pending after-hooks.

        Returns:
            True if all finished, False if the timeout expired first
        """
        while self._tasks:
            _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                logger.warning("%d after-hook(s) still running after drain timeout", len(pending))
                return False
        return True
