from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from .models import BindingTarget, ExpressionMeta, ScriptError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RUNTIME_ERRORS = 100


class BindingState:
    """
    Owned store shared by the graph builder, engine, sandbox and
    notification manager of one faceplate runtime.

    ``generation`` is bumped on every graph rebuild; evaluations started
    against an older generation must not write their results.
    """

    def __init__(self, max_runtime_errors: int = DEFAULT_MAX_RUNTIME_ERRORS):
        self.generation = 0
        # Graph
        self.expression_targets: Dict[str, List[BindingTarget]] = {}
        self.expression_meta: Dict[str, ExpressionMeta] = {}
        self.dependency_index: Dict[str, Set[str]] = {}
        # Values
        self.binding_values: Dict[str, Any] = {}
        self.expression_values: Dict[str, Any] = {}
        self.component_last_updated: Dict[str, Dict[str, float]] = {}
        # Sandbox
        self.script_state: Dict[str, Dict[str, Any]] = {}
        self.script_cache: Dict[str, Any] = {}
        self.transform_cache: Dict[str, Any] = {}
        self.module_exports: Dict[str, Any] = {}
        self.compile_errors: List[ScriptError] = []
        self.runtime_errors: Deque[ScriptError] = deque(maxlen=max_runtime_errors)

    def invalidate(self) -> None:
        """Start a new generation; pending results of the old one are dropped."""
        self.generation += 1

    def clear_graph(self) -> None:
        """Reset everything derived from the binding definitions."""
        self.invalidate()
        self.expression_targets.clear()
        self.expression_meta.clear()
        self.dependency_index.clear()
        self.binding_values.clear()
        self.expression_values.clear()
        self.component_last_updated.clear()

    def clear_scripts(self) -> None:
        self.script_state.clear()
        self.script_cache.clear()
        self.transform_cache.clear()
        self.module_exports.clear()

    def teardown(self) -> None:
        self.clear_graph()
        self.clear_scripts()
        self.compile_errors.clear()
        self.runtime_errors.clear()

    def state_bucket(self, expression_key: str) -> Dict[str, Any]:
        return self.script_state.setdefault(expression_key, {})

    def record_compile_error(self, context: Optional[str], error: Any,
                             module: Optional[str] = None) -> Tuple[ScriptError, bool]:
        """Record a compile failure once; returns the entry and whether it is new."""
        entry = ScriptError(error=str(error), context=context, module=module)
        for existing in self.compile_errors:
            if (existing.context, existing.module, existing.error) == (context, module, entry.error):
                return existing, False
        self.compile_errors.append(entry)
        return entry, True

    def record_runtime_error(self, context: str, error: Any, module: Optional[str] = None) -> ScriptError:
        entry = ScriptError(error=str(error), context=context, module=module)
        self.runtime_errors.append(entry)
        return entry
