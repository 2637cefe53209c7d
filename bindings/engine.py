from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import (
    BindingError,
    CircularBindingError,
    EvaluationDepthError,
    ScriptCompileError,
)
from .models import ExpressionMeta, ScriptError
from .state import BindingState
from .strategies import EvaluationContext, StrategyResolver
from .transforms import TransformPipeline

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

DEFAULT_MAX_EVALUATION_DEPTH = 50
DEFAULT_MAX_CONCURRENT_EVALUATIONS = 16


class EvaluationEngine:
    """
    Evaluates expression keys of the binding graph and fans results out to
    their targets.

    ``on_values_changed`` receives ``{slot_key: value}`` after every commit;
    ``on_error`` receives each :class:`ScriptError` that gets recorded.
    """

    def __init__(self, state: BindingState, resolver: StrategyResolver, sandbox,
                 transforms: TransformPipeline, store, service, *,
                 max_depth: int = DEFAULT_MAX_EVALUATION_DEPTH,
                 max_concurrency: int = DEFAULT_MAX_CONCURRENT_EVALUATIONS,
                 on_values_changed: Optional[Callable[[Dict[str, Any]], None]] = None,
                 on_error: Optional[Callable[[ScriptError], None]] = None):
        self._state = state
        self._resolver = resolver
        self._sandbox = sandbox
        self._transforms = transforms
        self.store = store
        self.service = service
        self.max_depth = max_depth
        self.max_concurrency = max(1, max_concurrency)
        self.on_values_changed = on_values_changed
        self.on_error = on_error
        self._in_flight: Dict[str, asyncio.Future] = {}

    def reset(self) -> None:
        """Forget in-flight evaluations; they finish but no longer get shared."""
        self._in_flight.clear()

    # --- full pass -----------------------------------------------------
    async def evaluate_all(self, entity_id: Any, faceplate_id: Any = None) -> None:
        state = self._state
        if entity_id is None:
            self.clear_values()
            return

        generation = state.generation
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(key: str, meta: ExpressionMeta) -> None:
            async with semaphore:
                try:
                    value = await self.evaluate_one(key, meta, entity_id, faceplate_id)
                except Exception as exc:
                    self.record_failure(key, exc)
                    return
            await self.update_targets(key, value, entity_id, faceplate_id, generation=generation)

        items = list(state.expression_meta.items())
        logger.debug("Evaluating %d expressions for entity %r", len(items), entity_id)
        await asyncio.gather(*(run(key, meta) for key, meta in items))

    def clear_values(self) -> None:
        state = self._state
        for slot in state.binding_values:
            state.binding_values[slot] = None
        for key in state.expression_values:
            state.expression_values[key] = None
        if state.binding_values:
            self._emit_changes(dict(state.binding_values))

    # --- single expression ---------------------------------------------
    async def evaluate_one(self, key: str, meta: Optional[ExpressionMeta], entity_id: Any,
                           faceplate_id: Any = None, guard: Tuple[str, ...] = ()) -> Any:
        """
        Evaluate one expression key.

        ``guard`` is the chain of keys currently being evaluated above this
        call.  Re-entering one of them raises :class:`CircularBindingError`.
        Top-level calls for a key that is already being evaluated share the
        pending result.
        """
        if key in guard:
            raise CircularBindingError(guard[guard.index(key):] + (key,))
        if len(guard) >= self.max_depth:
            raise EvaluationDepthError(f"Maximum evaluation depth {self.max_depth} exceeded at '{key}'")

        if guard:
            return await self._evaluate(key, meta, entity_id, faceplate_id, guard)

        pending = self._in_flight.get(key)
        if pending is not None:
            return await pending

        task = asyncio.ensure_future(self._evaluate(key, meta, entity_id, faceplate_id, guard))
        self._in_flight[key] = task

        def _release(done: asyncio.Future) -> None:
            if self._in_flight.get(key) is done:
                del self._in_flight[key]

        task.add_done_callback(_release)
        return await task

    async def _evaluate(self, key: str, meta: Optional[ExpressionMeta], entity_id: Any,
                        faceplate_id: Any, guard: Tuple[str, ...]) -> Any:
        state = self._state
        if meta is None:
            meta = state.expression_meta.get(key)
            if meta is None:
                raise BindingError(f"Unknown expression key '{key}'")

        chain = guard + (key,)

        async def evaluate_nested(nested_key: str) -> Any:
            return await self.evaluate_one(nested_key, None, entity_id, faceplate_id, chain)

        context = EvaluationContext(
            entity_id=entity_id,
            faceplate_id=faceplate_id,
            store=self.store,
            service=self.service,
            state=state,
            sandbox=self._sandbox,
            expression_key=key,
            guard=chain,
            evaluate_key=evaluate_nested,
        )
        generation = state.generation
        value = await self._resolver.get(meta.mode).evaluate(meta.expression, context)
        if generation == state.generation:
            state.expression_values[key] = value
        return value

    # --- fan-out -------------------------------------------------------
    async def update_targets(self, key: str, raw_value: Any, entity_id: Any = None,
                             faceplate_id: Any = None, *, generation: Optional[int] = None) -> Dict[str, Any]:
        """Transform ``raw_value`` for every target of ``key`` and commit them together."""
        state = self._state
        if generation is None:
            generation = state.generation
        targets = list(state.expression_targets.get(key, ()))
        if not targets:
            return {}

        staged = []
        for target in targets:
            context = self._transforms.make_context(
                component=target.component,
                property_name=target.property,
                expression_key=key,
                entity_id=entity_id,
                faceplate_id=faceplate_id,
            )
            value = await self._transforms.apply(target.transform, raw_value, context)
            staged.append((target, value))

        if generation != state.generation:
            logger.debug("Dropping stale result for %r (graph was rebuilt)", key)
            return {}

        now = time.time()
        changes: Dict[str, Any] = {}
        for target, value in staged:
            state.binding_values[target.slot_key] = value
            state.component_last_updated.setdefault(target.component, {})[target.property] = now
            changes[target.slot_key] = value
        self._emit_changes(changes)
        return changes

    def _emit_changes(self, changes: Dict[str, Any]) -> None:
        if self.on_values_changed is not None:
            self.on_values_changed(changes)

    # --- errors --------------------------------------------------------
    def record_failure(self, key: str, exc: BaseException) -> ScriptError:
        if isinstance(exc, ScriptCompileError):
            entry, is_new = self._state.record_compile_error(key, exc)
            if not is_new:
                logger.debug("Evaluation of %r still fails to compile", key)
                return entry
        else:
            entry = self._state.record_runtime_error(key, exc)
        logger.warning("Evaluation of %r failed: %s", key, exc)
        if self.on_error is not None:
            self.on_error(entry)
        return entry
