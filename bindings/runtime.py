from __future__ import annotations

import inspect
import logging
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from services.faceplate_data_service import FaceplateDataService, FaceplateRecord
from services.settings_service import settings_service
from utils.task_registry import TaskRegistry

from .constants import NotificationState
from .engine import EvaluationEngine
from .event_queue import EventActionQueue
from .graph import BindingGraphBuilder
from .models import (
    BindingDefinition,
    EventPayload,
    NotificationChannel,
    ScriptError,
    ScriptModuleSource,
    make_slot_key,
)
from .notifications import NotificationManager
from .sandbox import ScriptSandbox
from .state import BindingState
from .strategies import StrategyResolver
from .transforms import TransformPipeline

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class FaceplateRuntime(QObject):
    """
    Keeps the properties of one faceplate's components live against a data
    store.

    Owns one :class:`BindingState` and wires the graph builder, evaluation
    engine, script sandbox, notification manager and event action queue
    around it.  Renderers read :attr:`binding_values` and listen to
    ``binding_values_changed``.
    """

    binding_values_changed = pyqtSignal(dict)
    runtime_error = pyqtSignal(dict)
    navigation_requested = pyqtSignal(str, object)

    def __init__(self, store, service: Optional[FaceplateDataService] = None, settings=None,
                 navigator: Optional[Callable[[str, Any], Any]] = None, parent: Optional[QObject] = None):
        super().__init__(parent)
        settings = settings or settings_service
        iteration_limit = settings.get_int("script_iteration_limit")

        self.store = store
        self.service = service or FaceplateDataService(store)
        self.live = bool(settings.get_value("live"))
        self.entity_id: Any = None
        self.faceplate_id: Any = None
        self.record: Optional[FaceplateRecord] = None
        self._navigator = navigator

        self.state = BindingState(max_runtime_errors=settings.get_int("max_runtime_errors"))
        self.tasks = TaskRegistry("faceplate-runtime")
        self.resolver = StrategyResolver()
        self.sandbox = ScriptSandbox(self.state, self.resolver, iteration_limit)
        self.transforms = TransformPipeline(self.state, self.sandbox.helpers, iteration_limit)
        self.graph = BindingGraphBuilder(self.state)
        self.engine = EvaluationEngine(
            self.state, self.resolver, self.sandbox, self.transforms, store, self.service,
            max_depth=settings.get_int("max_evaluation_depth"),
            max_concurrency=settings.get_int("max_concurrent_evaluations"),
            on_values_changed=self._emit_values,
            on_error=self._emit_error,
        )
        self.notifications = NotificationManager(
            self.state, self.engine, self.resolver, store, self.service, self.tasks,
        )
        self.events = EventActionQueue(
            self.state, self.sandbox, store, self.service,
            binding=lambda: (self.entity_id, self.faceplate_id),
            navigator=self._navigate,
            on_error=self._emit_error,
        )

    # --- Read access ----------------------------------------------------
    @property
    def binding_values(self) -> Mapping[str, Any]:
        return MappingProxyType(self.state.binding_values)

    def binding_value(self, component: str, property_name: str) -> Any:
        return self.state.binding_values.get(make_slot_key(component, property_name))

    def component_bindings(self, component: str) -> Dict[str, Any]:
        """``{property: value}`` for every bound property of ``component``."""
        prefix = f"{component}:"
        return {
            slot[len(prefix):]: value
            for slot, value in self.state.binding_values.items()
            if slot.startswith(prefix)
        }

    @property
    def runtime_errors(self) -> List[ScriptError]:
        return list(self.state.runtime_errors)

    @property
    def compile_errors(self) -> List[ScriptError]:
        return list(self.state.compile_errors)

    @property
    def notification_state(self) -> NotificationState:
        return self.notifications.status

    @property
    def subscription_count(self) -> int:
        return self.notifications.subscription_count

    # --- Graph and evaluation -------------------------------------------
    def build_binding_maps(self, definitions: Iterable[BindingDefinition]) -> None:
        self.engine.reset()
        self.resolver.clear_caches()
        self.graph.build(definitions)

    async def compile_script_modules(self, modules: Iterable[ScriptModuleSource]) -> None:
        await self.sandbox.compile_modules(modules)
        for entry in self.state.compile_errors:
            self._emit_error(entry)

    async def evaluate_all_bindings(self, entity_id: Any, faceplate_id: Any = None) -> None:
        """
        Full pass for ``entity_id``; ``None`` clears every slot.

        The entity becomes the runtime's bound entity, so a following
        :meth:`register_notifications` subscribes for the same one.
        """
        if faceplate_id is None:
            faceplate_id = self.faceplate_id
        self.entity_id = entity_id
        self.faceplate_id = faceplate_id
        try:
            await self.engine.evaluate_all(entity_id, faceplate_id)
        except Exception as exc:
            logger.exception("Full evaluation pass failed")
            self._emit_error(self.state.record_runtime_error("evaluate_all_bindings", exc))

    # --- Notifications --------------------------------------------------
    def set_notification_channels(self, channels: Iterable[NotificationChannel]) -> None:
        self.notifications.set_channels(channels)

    async def register_notifications(self) -> None:
        try:
            await self.notifications.register(self.entity_id, self.faceplate_id, live=self.live)
        except Exception as exc:
            logger.exception("Registering notifications failed")
            self._emit_error(self.state.record_runtime_error("register_notifications", exc))

    async def cleanup_notifications(self) -> None:
        try:
            await self.notifications.cleanup()
        except Exception as exc:
            logger.exception("Cleaning up notifications failed")
            self._emit_error(self.state.record_runtime_error("cleanup_notifications", exc))

    # --- Events ---------------------------------------------------------
    async def handle_event_triggered(self, payload: EventPayload) -> None:
        await self.events.enqueue(payload)

    # --- Lifecycle ------------------------------------------------------
    async def load_faceplate(self, faceplate_id: Any, entity_id: Any = None) -> FaceplateRecord:
        """Read a faceplate record and bring its bindings live for ``entity_id``."""
        await self.cleanup_notifications()
        record = await self.service.read_faceplate(faceplate_id)
        self.record = record
        self.faceplate_id = faceplate_id
        self.entity_id = entity_id

        self.sandbox.clear()
        await self.compile_script_modules(record.script_modules)
        self.build_binding_maps(record.binding_definitions())
        self.set_notification_channels(record.notification_channels)
        await self.evaluate_all_bindings(entity_id, faceplate_id)
        await self.register_notifications()
        logger.info(
            "Loaded faceplate %r (%d expressions) for entity %r",
            faceplate_id, len(self.state.expression_meta), entity_id,
        )
        return record

    async def set_entity(self, entity_id: Any) -> None:
        """Rebind the loaded graph to another entity."""
        await self.cleanup_notifications()
        self.state.invalidate()
        self.state.expression_values.clear()
        self.engine.reset()
        self.entity_id = entity_id
        await self.evaluate_all_bindings(entity_id, self.faceplate_id)
        await self.register_notifications()

    async def wait_idle(self) -> None:
        await self.tasks.wait_idle()

    async def teardown(self) -> None:
        self.tasks.cancel_all()
        await self.cleanup_notifications()
        self.events.clear()
        self.engine.reset()
        self.resolver.clear_caches()
        self.state.teardown()
        self.record = None
        self.entity_id = None

    # --- Collaborator hooks ---------------------------------------------
    def _emit_values(self, changes: Dict[str, Any]) -> None:
        self.binding_values_changed.emit(dict(changes))

    def _emit_error(self, entry: ScriptError) -> None:
        self.runtime_error.emit(entry.to_dict())

    async def _navigate(self, target_faceplate: str, entity_id: Any) -> None:
        self.navigation_requested.emit(str(target_faceplate), entity_id)
        if self._navigator is not None:
            result = self._navigator(target_faceplate, entity_id)
            if inspect.isawaitable(result):
                await result
