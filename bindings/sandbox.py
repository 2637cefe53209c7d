"""Script sandbox: module compilation, script caching and execution contexts."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from .constants import ExpressionMode
from .errors import BindingError, ScriptCompileError
from .graph import make_expression_key
from .helpers import make_helpers
from .models import ScriptModuleSource, make_slot_key
from .safe_eval import (
    DEFAULT_ITERATION_LIMIT,
    SandboxExposed,
    SandboxNamespace,
    SandboxProgram,
    compile_script,
)
from .state import BindingState
from .strategies import EvaluationContext, StrategyResolver

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

HANDLER_STATE_KEY = "script-execution"


class ScriptContext(SandboxExposed):
    """The ``context`` object a binding script sees."""

    sandbox_attributes = frozenset({
        "entity_id", "faceplate_id", "expression_key", "get", "get_cached",
        "get_binding_value", "set_state", "get_state", "bindings_snapshot",
        "module", "modules", "evaluate",
    })

    def __init__(self, sandbox: "ScriptSandbox", evaluation: EvaluationContext):
        self._sandbox = sandbox
        self._evaluation = evaluation
        self._state = sandbox.state.state_bucket(evaluation.expression_key)
        self.entity_id = evaluation.entity_id
        self.faceplate_id = evaluation.faceplate_id
        self.expression_key = evaluation.expression_key

    async def get(self, path: str) -> Any:
        """Read a field; bound field expressions are served from the cache."""
        state = self._sandbox.state
        key = make_expression_key(path, ExpressionMode.FIELD)
        if key in state.expression_meta and state.expression_values.get(key) is not None:
            return state.expression_values[key]
        value = await self._sandbox.resolver.field.evaluate(path, self._evaluation)
        state.expression_values[key] = value
        return value

    def get_cached(self, expression_key: str) -> Any:
        return self._sandbox.state.expression_values.get(expression_key)

    def get_binding_value(self, component: str, property_name: str) -> Any:
        return self._sandbox.state.binding_values.get(make_slot_key(component, property_name))

    def set_state(self, key: str, value: Any) -> None:
        self._state[key] = value

    def get_state(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def bindings_snapshot(self) -> Dict[str, Any]:
        return dict(self._sandbox.state.binding_values)

    def module(self, name: str) -> Optional[SandboxNamespace]:
        return self._sandbox.state.module_exports.get(name)

    def modules(self) -> Dict[str, SandboxNamespace]:
        return dict(self._sandbox.state.module_exports)

    async def evaluate(self, expression_key: str) -> Any:
        """Evaluate another binding expression under the recursion guard."""
        if self._evaluation.evaluate_key is None:
            raise BindingError("Nested evaluation is not available here")
        return await self._evaluation.evaluate_key(expression_key)


class HandlerScriptContext(ScriptContext):
    """Context for event handler scripts; can also write fields."""

    sandbox_attributes = ScriptContext.sandbox_attributes | {"set"}

    async def get(self, path: str) -> Any:
        return await self._evaluation.service.read_value_indirect(self.entity_id, path)

    async def set(self, path: str, value: Any) -> None:
        await self._evaluation.service.write_value_indirect(self.entity_id, path, value)


class ScriptSandbox:
    """
    Compiles script modules and per-expression scripts and runs them in the
    restricted interpreter.  Compiled programs, module exports and state
    buckets live in the shared :class:`BindingState`.
    """

    def __init__(self, state: BindingState, resolver: StrategyResolver,
                 iteration_limit: int = DEFAULT_ITERATION_LIMIT):
        self.state = state
        self.resolver = resolver
        self.iteration_limit = iteration_limit
        self.helpers = make_helpers()

    # --- modules -------------------------------------------------------
    async def compile_modules(self, modules: Iterable[ScriptModuleSource]) -> None:
        self.state.module_exports.clear()
        self.state.compile_errors.clear()

        for index, module in enumerate(modules):
            name = (module.name or "").strip() or f"module-{index + 1}"
            if not (module.code or "").strip():
                continue
            try:
                program = compile_script(module.code)
                exports = await program.run_module(
                    {"helpers": self.helpers}, iteration_limit=self.iteration_limit
                )
            except Exception as exc:
                self.state.record_compile_error(None, exc, module=name)
                logger.error("Failed to compile faceplate script module %r: %s", name, exc)
                continue
            self.state.module_exports[name] = SandboxNamespace(name, exports)
            logger.debug("Compiled script module %r with exports %s", name, sorted(exports))

    # --- binding scripts -----------------------------------------------
    def get_or_compile(self, source: str) -> SandboxProgram:
        """Compile ``source`` once; a compile failure is cached and re-raised."""
        program = self.state.script_cache.get(source)
        if program is None:
            try:
                program = compile_script(source)
            except ScriptCompileError as exc:
                program = exc
            self.state.script_cache[source] = program
        if isinstance(program, ScriptCompileError):
            raise program.with_traceback(None)
        return program

    def create_context(self, evaluation: EvaluationContext) -> ScriptContext:
        return ScriptContext(self, evaluation)

    async def run_binding_script(self, source: str, evaluation: EvaluationContext) -> Any:
        program = self.get_or_compile(source)
        variables = {
            "context": self.create_context(evaluation),
            "helpers": self.helpers,
        }
        return await program.run(variables, iteration_limit=self.iteration_limit)

    # --- event handler scripts -----------------------------------------
    async def execute_handler_script(self, code: str, evaluation: EvaluationContext,
                                     event: Any = None, value: Any = None) -> Any:
        try:
            program = self.get_or_compile(code)
        except ScriptCompileError as exc:
            self.state.record_compile_error("Event handler script", exc)
            raise
        evaluation.expression_key = HANDLER_STATE_KEY
        variables = {
            "event": event,
            "value": value,
            "context": HandlerScriptContext(self, evaluation),
            "helpers": self.helpers,
        }
        return await program.run(variables, iteration_limit=self.iteration_limit)

    def clear(self) -> None:
        self.state.clear_scripts()
