from __future__ import annotations

import logging
import re
import textwrap
from typing import Iterable, List, Union

from .constants import EXPRESSION_KEY_SEPARATOR, SCRIPT_PREFIX, ExpressionMode
from .expressions import extract_dependencies
from .models import BindingDefinition, BindingTarget, ExpressionMeta, make_slot_key
from .state import BindingState
from .strategies import LiteralStrategy

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_expression(expression: str) -> str:
    return _WHITESPACE_RE.sub(" ", expression.strip())


def make_expression_key(expression: str, mode: Union[ExpressionMode, str]) -> str:
    mode_value = mode.value if isinstance(mode, ExpressionMode) else str(mode)
    return f"{mode_value}{EXPRESSION_KEY_SEPARATOR}{normalize_expression(expression)}"


def determine_mode(definition: BindingDefinition) -> ExpressionMode:
    if definition.mode is not None:
        return definition.mode
    if LiteralStrategy.try_evaluate_literal(definition.expression.strip()).found:
        return ExpressionMode.LITERAL
    return ExpressionMode.FIELD


def sanitize_expression(expression: str, mode: ExpressionMode) -> str:
    if mode is ExpressionMode.SCRIPT and expression.strip().startswith(SCRIPT_PREFIX):
        return expression.strip()[len(SCRIPT_PREFIX):]
    return expression


def collect_dependencies(definition: BindingDefinition, mode: ExpressionMode, expression: str) -> List[str]:
    if mode is ExpressionMode.FIELD:
        return extract_dependencies(expression)
    if mode is ExpressionMode.SCRIPT:
        return [d.strip() for d in definition.dependencies if d and d.strip()]
    return []


class BindingGraphBuilder:
    """
    Compiles binding definitions into the shared graph: one meta entry per
    distinct expression key, its target fan-out, the dependency index and an
    empty value slot per target.
    """

    def __init__(self, state: BindingState):
        self._state = state

    def build(self, definitions: Iterable[BindingDefinition]) -> None:
        self._state.clear_graph()
        for definition in definitions:
            self._add(definition)
        logger.debug(
            "Built binding graph: %d expressions, %d dependencies, %d slots",
            len(self._state.expression_meta),
            len(self._state.dependency_index),
            len(self._state.binding_values),
        )

    def _add(self, definition: BindingDefinition) -> None:
        if not definition.component or not definition.property or not definition.expression:
            return

        mode = determine_mode(definition)
        expression = sanitize_expression(definition.expression, mode)
        # Script text keeps its line structure; only the key is normalized
        if mode is ExpressionMode.SCRIPT:
            expression = textwrap.dedent(expression).strip()
        else:
            expression = normalize_expression(expression)
        key = make_expression_key(expression, mode)
        dependencies = collect_dependencies(definition, mode, expression)

        meta = self._state.expression_meta.get(key)
        if meta is None:
            self._state.expression_meta[key] = ExpressionMeta(
                expression=expression,
                mode=mode,
                dependencies=list(dependencies),
                description=definition.description,
            )
        else:
            meta.merge_dependencies(dependencies)

        self._state.expression_targets.setdefault(key, []).append(
            BindingTarget(definition.component, definition.property, definition.transform)
        )
        self._state.binding_values.setdefault(make_slot_key(definition.component, definition.property), None)
        self._state.component_last_updated.setdefault(definition.component, {})

        for dep in dependencies:
            self._state.dependency_index.setdefault(dep, set()).add(key)
