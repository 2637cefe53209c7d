from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .constants import ExpressionMode
from .errors import FieldResolutionError, ScriptRuntimeError, UnknownModeError
from .expressions import is_computed_expression, rewrite_for_evaluation, split_path
from .helpers import HELPER_FUNCTIONS
from .safe_eval import safe_eval

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"^[-+]?\d+(\.\d+)?$")


@dataclass(frozen=True, slots=True)
class LiteralResult:
    found: bool
    value: Any = None


@dataclass(slots=True)
class EvaluationContext:
    """Everything one expression evaluation may touch."""

    entity_id: Any
    faceplate_id: Any
    store: Any
    service: Any
    state: Any
    sandbox: Any = None
    expression_key: str = ""
    guard: Tuple[str, ...] = ()
    evaluate_key: Optional[Callable[[str], Awaitable[Any]]] = field(default=None, repr=False)


class LiteralStrategy:
    """Quoted strings, numbers, booleans and null."""

    @staticmethod
    def try_evaluate_literal(expression: Optional[str]) -> LiteralResult:
        if not expression:
            return LiteralResult(False)
        trimmed = expression.strip()
        if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in ("'", '"'):
            return LiteralResult(True, trimmed[1:-1])
        if _NUMBER_RE.match(trimmed):
            return LiteralResult(True, float(trimmed) if "." in trimmed else int(trimmed))
        if trimmed in ("true", "True"):
            return LiteralResult(True, True)
        if trimmed in ("false", "False"):
            return LiteralResult(True, False)
        if trimmed in ("null", "None"):
            return LiteralResult(True, None)
        return LiteralResult(False)

    async def evaluate(self, expression: str, context: EvaluationContext) -> Any:
        literal = self.try_evaluate_literal(expression)
        return literal.value if literal.found else expression


class FieldStrategy:
    """Reads a (possibly indirect) field, or computes arithmetic over fields."""

    def __init__(self):
        self._paths: Dict[str, List[Any]] = {}

    def clear_caches(self) -> None:
        self._paths.clear()

    async def get_field_path(self, expression: str, service) -> List[Any]:
        if expression in self._paths:
            return self._paths[expression]

        field_types = []
        for segment in split_path(expression):
            try:
                field_types.append(await service.get_field_type(segment))
            except Exception as exc:
                logger.warning(
                    "Unable to resolve field type for segment %r in expression %r: %s",
                    segment, expression, exc,
                )
                self._paths[expression] = []
                return []

        self._paths[expression] = field_types
        return field_types

    async def read(self, expression: str, context: EvaluationContext) -> Any:
        path = await self.get_field_path(expression, context.service)
        if not path:
            raise FieldResolutionError(f"Unknown field '{expression}'")
        return await context.store.read(context.entity_id, path)

    async def evaluate(self, expression: str, context: EvaluationContext) -> Any:
        if context.entity_id is None:
            return None
        if is_computed_expression(expression):
            return await self._evaluate_computed(expression, context)
        return await self.read(expression, context)

    async def _evaluate_computed(self, expression: str, context: EvaluationContext) -> Any:
        source, placeholders = rewrite_for_evaluation(expression)
        variables: Dict[str, Any] = dict(HELPER_FUNCTIONS)
        for name, path in placeholders.items():
            variables[name] = _as_number(path, await self.read(path, context))

        value, error = await safe_eval(source, variables)
        if error:
            raise ScriptRuntimeError(f"Computed expression {expression!r} failed: {error}")
        return value


def _as_number(path: str, value: Any):
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise ScriptRuntimeError(f"Field value is not numeric in computed expression: {path} = {value!r}")


class ScriptStrategy:
    async def evaluate(self, expression: str, context: EvaluationContext) -> Any:
        if context.entity_id is None:
            return None
        return await context.sandbox.run_binding_script(expression, context)


class StrategyResolver:
    """One strategy instance per expression mode."""

    def __init__(self):
        self.literal = LiteralStrategy()
        self.field = FieldStrategy()
        self.script = ScriptStrategy()
        self._strategies = {
            ExpressionMode.LITERAL: self.literal,
            ExpressionMode.FIELD: self.field,
            ExpressionMode.SCRIPT: self.script,
        }

    def get(self, mode) -> Any:
        try:
            return self._strategies[ExpressionMode.parse(mode)]
        except (KeyError, ValueError) as exc:
            raise UnknownModeError(f"Unknown binding mode: {mode}") from exc

    def clear_caches(self) -> None:
        self.field.clear_caches()
