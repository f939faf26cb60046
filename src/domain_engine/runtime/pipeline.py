"""
Hook pipeline executor.

Runs one logical operation as::

    pre -> operation -> post -> commit -> after

Pre, operation and post share the caller's transaction. When the caller
supplies none, the executor opens one and commits it itself. The after-hook
is attached to the transaction's commit and dispatched in the background;
a rollback discards it.

Nested pipelines (a hook calling another entity's domain operation) join the
outer transaction, whether the hook passes its ``tx`` or not: there are no
savepoints, a nested failure fails the whole outer operation, and nested
after-hooks wait for the outer commit.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from domain_engine.runtime.database import bind_transaction
from domain_engine.runtime.errors import InternalError
from domain_engine.runtime.hooks import HookResult

if TYPE_CHECKING:
    from domain_engine.runtime.after_hooks import AfterHookDispatcher
    from domain_engine.runtime.database import DatabaseManager, Transaction
    from domain_engine.runtime.hooks import HookStages

logger = logging.getLogger(__name__)

OperationFn = Callable[[Any, "Transaction", Any], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def merge_context(context: Any, update: Any) -> Any:
    """Mapping contexts are merged; anything else replaces the old context."""
    if update is None:
        return context
    if isinstance(context, dict) and isinstance(update, dict):
        return {**context, **update}
    return update


def _apply(outcome: Any, value: Any, context: Any) -> tuple[Any, Any]:
    if outcome is None:
        return value, context
    if isinstance(outcome, HookResult):
        return (value if outcome.data is None else outcome.data), merge_context(
            context, outcome.context
        )
    return outcome, context


class HookPipelineExecutor:
    """Orchestrates pre/operation/post inside a transaction and after-hooks post-commit."""

    def __init__(self, db: DatabaseManager, dispatcher: AfterHookDispatcher):
        self.db = db
        self.dispatcher = dispatcher

    async def execute(
        self,
        stages: HookStages,
        operation_input: Any,
        raw_input: Any,
        operation: OperationFn,
        *,
        tx: Transaction | None = None,
        context: Any = None,
        revalidate: Callable[[Any], Any] | None = None,
    ) -> Any:
        """
        Run a single logical operation through its hooks.

        Args:
            stages: Hooks for this entity/operation
            operation_input: Typed input (see ``hooks``)
            raw_input: Untouched caller payload, handed to the pre-hook
            operation: ``operation(input, tx, context)``, the only step touching storage
            tx: Caller transaction; when None the executor owns one
            context: Opaque caller value, passed through to every hook
            revalidate: Re-checks the input after the pre-hook transformed it

        Returns:
            The (possibly post-hook enriched) operation result
        """
        if tx is None:
            async with self.db.transaction() as own_tx:
                return await self._run(
                    stages, operation_input, raw_input, operation, own_tx, context, revalidate
                )
        if not tx.active:
            raise InternalError("Operation attempted on a finished transaction")
        with bind_transaction(tx):
            return await self._run(
                stages, operation_input, raw_input, operation, tx, context, revalidate
            )

    async def _run(
        self,
        stages: HookStages,
        inp: Any,
        raw_input: Any,
        operation: OperationFn,
        tx: Transaction,
        context: Any,
        revalidate: Callable[[Any], Any] | None,
    ) -> Any:
        label = stages.label
        try:
            if stages.pre is not None:
                logger.debug("pre-hook %s", label)
                outcome = await _maybe_await(stages.pre(inp, raw_input, tx, context))
                inp, context = _apply(outcome, inp, context)
                if revalidate is not None:
                    inp = revalidate(inp)

            logger.debug("operation %s", label)
            result = await _maybe_await(operation(inp, tx, context))

            if stages.post is not None:
                logger.debug("post-hook %s", label)
                outcome = await _maybe_await(stages.post(inp, result, tx, context))
                result, context = _apply(outcome, result, context)
        except BaseException:
            tx.mark_rollback_only()
            raise

        if stages.after is not None:
            after, final_context = stages.after, context
            tx.on_commit(lambda: self.dispatcher.dispatch(after, result, final_context, label))
        return result
