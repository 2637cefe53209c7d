from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple

from .constants import INDIRECTION_DELIMITER, ActionType, ValueSource
from .errors import BindingError, ScriptRuntimeError
from .models import EventAction, EventPayload, ScriptError
from .safe_eval import safe_eval
from .state import BindingState
from .strategies import EvaluationContext

logger = logging.getLogger(__name__)


class EventActionQueue:
    """
    Serializes UI-triggered actions against the store.

    Payloads are processed strictly one at a time in arrival order.  A
    failing action is logged and recorded; the payloads behind it still run.
    """

    def __init__(self, state: BindingState, sandbox, store, service,
                 binding: Callable[[], Tuple[Any, Any]],
                 navigator: Optional[Callable[[str, Any], Any]] = None,
                 on_error: Optional[Callable[[ScriptError], None]] = None):
        self._state = state
        self._sandbox = sandbox
        self._store = store
        self._service = service
        self._binding = binding
        self.navigator = navigator
        self.on_error = on_error
        self._queue: Deque[EventPayload] = deque()
        self._processing = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._processing

    async def enqueue(self, payload: EventPayload) -> None:
        self._queue.append(payload)
        if self._processing:
            return
        self._processing = True
        try:
            while self._queue:
                await self._process(self._queue.popleft())
        finally:
            self._processing = False

    def clear(self) -> None:
        self._queue.clear()

    async def _process(self, payload: EventPayload) -> None:
        handler = payload.handler
        if handler is None or not handler.enabled:
            logger.debug("Skipping disabled or missing handler for %r", payload.trigger)
            return
        try:
            await self._run_action(handler.action, payload)
        except Exception as exc:
            logger.error("Event handler %r failed: %s", payload.trigger, exc)
            entry = self._state.record_runtime_error(f"Event handler {payload.trigger}", exc)
            if self.on_error is not None:
                self.on_error(entry)

    async def _run_action(self, action: EventAction, payload: EventPayload) -> None:
        if action.type is ActionType.WRITE_FIELD:
            await self._write_field(action, payload)
        elif action.type is ActionType.SCRIPT:
            await self._run_script(action, payload)
        elif action.type is ActionType.NAVIGATE:
            await self._navigate(action)
        else:
            raise BindingError(f"Unknown action type: {action.type}")

    # --- actions -------------------------------------------------------
    async def _resolve_value(self, action: EventAction, payload: EventPayload) -> Any:
        if action.value_source is ValueSource.LITERAL:
            return action.value
        if action.value_source is ValueSource.EXPRESSION:
            value, error = await safe_eval(str(action.value or ""), {
                "value": payload.value,
                "helpers": self._sandbox.helpers,
            })
            if error:
                raise ScriptRuntimeError(f"Failed to evaluate value expression: {error}")
            return value
        return payload.value

    async def _write_field(self, action: EventAction, payload: EventPayload) -> None:
        entity_id, _ = self._binding()
        if entity_id is None:
            logger.warning("Cannot write field: no bound entity")
            return
        if not action.field_path:
            logger.warning("Cannot write field: no field path specified")
            return

        value = await self._resolve_value(action, payload)
        if INDIRECTION_DELIMITER in action.field_path:
            await self._service.write_value_indirect(entity_id, action.field_path, value)
        else:
            await self._service.write_value(entity_id, action.field_path, value)
        logger.debug("Wrote %r to %r", value, action.field_path)

    def _evaluation(self) -> EvaluationContext:
        entity_id, faceplate_id = self._binding()
        return EvaluationContext(
            entity_id=entity_id,
            faceplate_id=faceplate_id,
            store=self._store,
            service=self._service,
            state=self._state,
            sandbox=self._sandbox,
        )

    async def _run_script(self, action: EventAction, payload: EventPayload) -> None:
        if not (action.code or "").strip():
            logger.warning("Cannot execute script: no code specified")
            return
        await self._sandbox.execute_handler_script(
            action.code, self._evaluation(), event=payload.native_event, value=payload.value,
        )

    async def _navigate(self, action: EventAction) -> None:
        if not action.target_faceplate:
            logger.warning("Cannot navigate: no target faceplate specified")
            return

        entity_id, _ = self._binding()
        target_entity = entity_id
        if action.entity_context and entity_id is not None:
            try:
                resolved = await self._service.read_value_indirect(entity_id, action.entity_context)
            except Exception as exc:
                logger.error("Failed to evaluate entity context %r: %s", action.entity_context, exc)
            else:
                if resolved is not None:
                    target_entity = resolved

        logger.info("Navigate to faceplate %r with entity %r", action.target_faceplate, target_entity)
        if self.navigator is not None:
            result = self.navigator(action.target_faceplate, target_entity)
            if inspect.isawaitable(result):
                await result
