from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Sequence

from .models import Notification, NotifyConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Hop:
    entity_id: Any
    field_type: Any
    config: NotifyConfig
    callback: Callable[[Any], Any]


class IndirectFieldNotifier:
    """
    Watches a field reached through a chain of entity references, e.g.
    ``Parent->Name``.

    Every hop of the path gets its own subscription.  When an intermediate
    reference changes, the hops below it are unregistered and registered
    again starting from the new entity; only the terminal value is passed
    to ``on_value_change``.  A reference that becomes ``None`` reports
    ``None``.
    """

    def __init__(self, store, start_entity_id: Any, path: Sequence[Any],
                 on_value_change: Callable[[Any], Any]):
        self._store = store
        self._start_entity_id = start_entity_id
        self._path = list(path)
        self._on_value_change = on_value_change
        self._hops: List[_Hop] = []
        self._active = False
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def subscription_count(self) -> int:
        return len(self._hops)

    @property
    def entity_chain(self) -> List[Any]:
        return [hop.entity_id for hop in self._hops]

    async def start(self) -> None:
        if self._active or not self._path:
            return
        self._active = True
        async with self._lock:
            await self._register_from(0, self._start_entity_id)

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        async with self._lock:
            await self._truncate(0)

    async def _register_from(self, index: int, entity_id: Any) -> None:
        last = len(self._path) - 1
        for position in range(index, len(self._path)):
            if not self._active:
                return
            if entity_id is None:
                await self._report(None)
                return

            field_type = self._path[position]
            config = NotifyConfig(entity_id=entity_id, field_type=field_type, trigger_on_change=True)
            callback = self._make_callback(position)
            await self._store.register_notification(config, callback)
            self._hops.append(_Hop(entity_id, field_type, config, callback))

            value = await self._store.read(entity_id, [field_type])
            if position == last:
                await self._report(value)
            else:
                entity_id = value

    async def _truncate(self, index: int) -> None:
        removed, self._hops[index:] = self._hops[index:], []
        results = await asyncio.gather(
            *(self._store.unregister_notification(hop.config, hop.callback) for hop in removed),
            return_exceptions=True,
        )
        for hop, result in zip(removed, results):
            if isinstance(result, Exception):
                logger.warning("Failed to unregister hop %r on entity %r: %s", hop.field_type, hop.entity_id, result)

    def _make_callback(self, position: int):
        async def on_notification(notification):
            await self._on_hop_changed(position, Notification.from_dict(notification))
        return on_notification

    async def _on_hop_changed(self, position: int, notification: Notification) -> None:
        if not self._active or notification.current is None:
            return
        value = notification.current.value

        if position == len(self._path) - 1:
            if notification.has_data:
                await self._report(value)
            return
        if notification.current.timestamp is None:
            logger.debug("Skipping reference notification without data at hop %d", position)
            return

        async with self._lock:
            # The hop may have been replaced while waiting for the lock
            if position >= len(self._hops):
                return
            following = self._hops[position + 1].entity_id if position + 1 < len(self._hops) else None
            if value == following and value is not None:
                return
            await self._truncate(position + 1)
            if value is None:
                await self._report(None)
                return
            logger.debug("Reference at hop %d changed to %r; re-subscribing", position, value)
            await self._register_from(position + 1, value)

    async def _report(self, value: Any) -> None:
        if not self._active:
            return
        result = self._on_value_change(value)
        if inspect.isawaitable(result):
            await result
