from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import ScriptCompileError
from .safe_eval import (
    DEFAULT_ITERATION_LIMIT,
    SandboxExposed,
    SandboxFunction,
    SandboxNamespace,
    compile_script,
)
from .state import BindingState

logger = logging.getLogger(__name__)


class TransformContext(SandboxExposed):
    sandbox_attributes = frozenset({
        "component", "property", "expression_key", "entity_id",
        "faceplate_id", "helpers", "module", "modules",
    })

    def __init__(self, state: BindingState, helpers: SandboxNamespace, *, component: str,
                 property_name: str, expression_key: str, entity_id: Any = None,
                 faceplate_id: Any = None):
        self._state = state
        self.helpers = helpers
        self.component = component
        self.property = property_name
        self.expression_key = expression_key
        self.entity_id = entity_id
        self.faceplate_id = faceplate_id

    def module(self, name: str) -> Optional[SandboxNamespace]:
        return self._state.module_exports.get(name)

    def modules(self) -> Dict[str, SandboxNamespace]:
        return dict(self._state.module_exports)


class TransformPipeline:
    """
    Applies a binding target's transform to a raw value.

    A transform is a ``lambda value, context, helpers: ...``, a bare
    expression over ``value``, or a statement body that ``return``s.
    Compiled transforms are cached by their exact source text.  Any failure
    falls back to the untransformed value.
    """

    def __init__(self, state: BindingState, helpers: SandboxNamespace,
                 iteration_limit: int = DEFAULT_ITERATION_LIMIT):
        self._state = state
        self._helpers = helpers
        self._iteration_limit = iteration_limit

    def make_context(self, **kwargs) -> TransformContext:
        return TransformContext(self._state, self._helpers, **kwargs)

    def _compile(self, transform: str):
        cached = self._state.transform_cache.get(transform)
        if cached is None:
            try:
                cached = compile_script(transform.strip())
            except ScriptCompileError as exc:
                cached = exc
            self._state.transform_cache[transform] = cached
        if isinstance(cached, ScriptCompileError):
            raise cached.with_traceback(None)
        return cached

    async def apply(self, transform: Optional[str], value: Any, context: TransformContext) -> Any:
        if not transform or not transform.strip():
            return value
        try:
            program = self._compile(transform)
            args = (value, context, self._helpers)
            result = await program.run(
                {"value": value, "context": context, "helpers": self._helpers},
                iteration_limit=self._iteration_limit,
            )
            if program.single_lambda and isinstance(result, SandboxFunction):
                result = await result(*args[:result.param_count])
            return result
        except Exception as exc:
            logger.warning("Failed to apply transform %r: %s", transform, exc)
            return value
