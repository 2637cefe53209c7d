from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, List, Tuple

from .constants import ExpressionMode, NotificationState
from .errors import FieldResolutionError
from .indirect_notifier import IndirectFieldNotifier
from .models import Notification, NotificationChannel, NotifyConfig
from .state import BindingState
from .strategies import LiteralStrategy, StrategyResolver

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class NotificationManager:
    """
    Subscribes to every distinct dependency of the binding graph and turns
    store notifications into targeted re-evaluation.

    Single-segment dependencies get a direct subscription, reference chains
    an :class:`IndirectFieldNotifier`.  Work triggered by a notification runs
    as background tasks in ``tasks``.
    """

    def __init__(self, state: BindingState, engine, resolver: StrategyResolver, store, service, tasks):
        self._state = state
        self._engine = engine
        self._resolver = resolver
        self._store = store
        self._service = service
        self._tasks = tasks
        self.status = NotificationState.IDLE
        self.channels: List[NotificationChannel] = []
        self._direct: List[Tuple[str, NotifyConfig, Callable]] = []
        self._indirect: List[Tuple[str, IndirectFieldNotifier]] = []
        self._entity_id: Any = None
        self._faceplate_id: Any = None

    @property
    def subscription_count(self) -> int:
        return len(self._direct) + len(self._indirect)

    @property
    def direct_dependencies(self) -> List[str]:
        return [dep for dep, _, _ in self._direct]

    @property
    def indirect_dependencies(self) -> List[str]:
        return [dep for dep, _ in self._indirect]

    def set_channels(self, channels: Iterable[NotificationChannel]) -> None:
        self.channels = list(channels)

    def collect_dependencies(self) -> List[str]:
        """Ordered union of graph dependencies and notification channel fields."""
        seen = {}
        for meta in self._state.expression_meta.values():
            if meta.mode is ExpressionMode.LITERAL:
                continue
            for dep in meta.dependencies:
                seen.setdefault(dep, None)
        for channel in self.channels:
            for name in channel.fields:
                if name and name.strip():
                    seen.setdefault(name.strip(), None)
        return list(seen)

    # --- lifecycle -----------------------------------------------------
    async def register(self, entity_id: Any, faceplate_id: Any = None, live: bool = True) -> None:
        await self.cleanup()
        self._entity_id = entity_id
        self._faceplate_id = faceplate_id
        if not live or entity_id is None:
            self.status = NotificationState.IDLE
            return

        self.status = NotificationState.REGISTERING
        for dependency in self.collect_dependencies():
            if LiteralStrategy.try_evaluate_literal(dependency).found:
                continue
            try:
                await self._register_dependency(dependency, entity_id)
            except Exception as exc:
                logger.warning("Failed to register notification for %r: %s", dependency, exc)
        self.status = NotificationState.ACTIVE
        logger.debug(
            "Registered %d direct and %d indirect subscriptions for entity %r",
            len(self._direct), len(self._indirect), entity_id,
        )

    async def _register_dependency(self, dependency: str, entity_id: Any) -> None:
        path = await self._resolver.field.get_field_path(dependency, self._service)
        if not path:
            raise FieldResolutionError(f"Unknown field '{dependency}'")

        if len(path) == 1:
            config = NotifyConfig(entity_id=entity_id, field_type=path[0], trigger_on_change=True)
            callback = self._make_direct_callback(dependency)
            await self._store.register_notification(config, callback)
            self._direct.append((dependency, config, callback))
            return

        notifier = IndirectFieldNotifier(
            self._store, entity_id, path,
            lambda value, dep=dependency: self.dispatch(dep, value),
        )
        self._indirect.append((dependency, notifier))
        await notifier.start()

    async def cleanup(self) -> None:
        self.status = NotificationState.CLEANING_UP
        indirect, self._indirect = self._indirect, []
        direct, self._direct = self._direct, []

        results = await asyncio.gather(
            *(notifier.stop() for _, notifier in indirect),
            *(self._store.unregister_notification(config, callback) for _, config, callback in direct),
            return_exceptions=True,
        )
        names = [dep for dep, _ in indirect] + [dep for dep, _, _ in direct]
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning("Failed to clean up notification for %r: %s", name, result)
        self.status = NotificationState.IDLE

    # --- dispatch ------------------------------------------------------
    def _make_direct_callback(self, dependency: str):
        def on_notification(notification):
            notification = Notification.from_dict(notification)
            if not notification.has_data:
                logger.debug("Skipping notification without data for %r", dependency)
                return
            self.dispatch(dependency, notification.current.value)
        return on_notification

    def dispatch(self, dependency: str, value: Any) -> None:
        """Route a pushed value to the expressions that depend on ``dependency``."""
        if self.status not in (NotificationState.REGISTERING, NotificationState.ACTIVE):
            return
        state = self._state
        entity_id, faceplate_id = self._entity_id, self._faceplate_id
        generation = state.generation

        keys = state.dependency_index.get(dependency)
        if not keys:
            self._tasks.create(self._engine.evaluate_all(entity_id, faceplate_id))
            return

        for key in sorted(keys):
            meta = state.expression_meta.get(key)
            if meta is None:
                continue
            if meta.mode is ExpressionMode.FIELD and meta.expression == dependency:
                state.expression_values[key] = value
                self._tasks.create(self._engine.update_targets(
                    key, value, entity_id, faceplate_id, generation=generation,
                ))
            else:
                self._tasks.create(self._reevaluate(key, entity_id, faceplate_id, generation))

    async def _reevaluate(self, key: str, entity_id: Any, faceplate_id: Any, generation: int) -> None:
        try:
            value = await self._engine.evaluate_one(key, None, entity_id, faceplate_id)
        except Exception as exc:
            self._engine.record_failure(key, exc)
            return
        await self._engine.update_targets(key, value, entity_id, faceplate_id, generation=generation)
