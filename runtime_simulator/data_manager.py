from __future__ import annotations

import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from PyQt6.QtCore import QObject, pyqtSignal

from bindings.models import FieldSnapshot, Notification, NotifyConfig

logger = logging.getLogger(__name__)

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_]\w*$")


@dataclass(slots=True)
class Entity:
    id: str
    type: str = "Object"
    parent_id: Optional[str] = None
    name: str = ""
    fields: Dict[str, FieldSnapshot] = field(default_factory=dict)


class InMemoryDataStore(QObject):
    """
    Data store kept in process memory.

    Implements the store interface the faceplate runtime consumes: reads and
    writes follow ``[field, field, ...]`` paths through entity references,
    and change notifications are delivered as :class:`Notification` objects.
    ``field_changed`` mirrors every write for Qt observers.

    With a ``schema``, only the listed field names (plus fields of entities
    added later) resolve through :meth:`get_field_type`; without one any
    identifier is accepted.
    """

    field_changed = pyqtSignal(str, str, object)

    def __init__(self, schema: Optional[Iterable[str]] = None, writer_id: str = "simulator"):
        super().__init__()
        self._entities: Dict[str, Entity] = {}
        self._schema = set(schema) if schema is not None else None
        self._subscriptions: Dict[Tuple[str, str], List[Tuple[NotifyConfig, Callable]]] = {}
        self.writer_id = writer_id

    # --- Entities -------------------------------------------------------
    def add_entity(self, entity_id: str, fields: Optional[Dict[str, Any]] = None,
                   entity_type: str = "Object", parent_id: Optional[str] = None, name: str = "") -> Entity:
        now = time.time()
        entity = Entity(
            id=entity_id,
            type=entity_type,
            parent_id=parent_id,
            name=name or entity_id,
            fields={key: FieldSnapshot(value, now, self.writer_id) for key, value in (fields or {}).items()},
        )
        self._entities[entity_id] = entity
        if self._schema is not None:
            self._schema.update(entity.fields)
        return entity

    def load(self, entities: Dict[str, Dict[str, Any]]) -> None:
        """Add entities from ``{id: {"type": ..., "fields": {...}}}``."""
        for entity_id, data in (entities or {}).items():
            self.add_entity(
                entity_id,
                data.get("fields") or {},
                entity_type=data.get("type", "Object"),
                parent_id=data.get("parent"),
                name=data.get("name", ""),
            )

    def get_entity(self, entity_id) -> Optional[Entity]:
        return self._entities.get(entity_id)

    async def entity_exists(self, entity_id) -> bool:
        return entity_id in self._entities

    async def create_entity(self, entity_type: str, parent_id, name: str) -> str:
        entity_id = str(uuid.uuid4())
        self.add_entity(entity_id, entity_type=entity_type, parent_id=parent_id, name=name)
        return entity_id

    async def delete_entity(self, entity_id) -> None:
        if self._entities.pop(entity_id, None) is None:
            raise KeyError(f"Unknown entity '{entity_id}'")
        for key in [key for key in self._subscriptions if key[0] == entity_id]:
            del self._subscriptions[key]

    async def get_field_type(self, name: str) -> str:
        if not name or not _FIELD_NAME_RE.match(name):
            raise KeyError(f"Invalid field name '{name}'")
        if self._schema is not None and name not in self._schema:
            raise KeyError(f"Unknown field '{name}'")
        return name

    # --- Values ---------------------------------------------------------
    def _entity(self, entity_id) -> Entity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise KeyError(f"Unknown entity '{entity_id}'")
        return entity

    def _walk(self, entity_id, path: Sequence[str]) -> Optional[Entity]:
        """Follow every reference field but the last; None on a broken chain."""
        entity = self._entity(entity_id)
        for field_type in path[:-1]:
            snapshot = entity.fields.get(field_type)
            if snapshot is None or snapshot.value is None:
                return None
            entity = self._entity(snapshot.value)
        return entity

    async def read(self, entity_id, path: Sequence[str]) -> Any:
        if not path:
            raise ValueError("Empty field path")
        entity = self._walk(entity_id, path)
        if entity is None:
            return None
        snapshot = entity.fields.get(path[-1])
        return snapshot.value if snapshot is not None else None

    def value(self, entity_id, field_type: str) -> Any:
        snapshot = self._entity(entity_id).fields.get(field_type)
        return snapshot.value if snapshot is not None else None

    async def write(self, entity_id, path: Sequence[str], value: Any, writer_id: Optional[str] = None) -> None:
        if not path:
            raise ValueError("Empty field path")
        entity = self._walk(entity_id, path)
        if entity is None:
            raise KeyError(f"Broken reference while writing {'->'.join(path)} on '{entity_id}'")

        field_type = path[-1]
        previous = entity.fields.get(field_type)
        current = FieldSnapshot(value, time.time(), writer_id or self.writer_id)
        entity.fields[field_type] = current
        if self._schema is not None:
            self._schema.add(field_type)

        self.field_changed.emit(str(entity.id), str(field_type), value)
        await self._notify(entity, field_type, current, previous)

    # --- Notifications --------------------------------------------------
    @property
    def notification_count(self) -> int:
        return sum(len(items) for items in self._subscriptions.values())

    def subscriptions_for(self, entity_id, field_type: str) -> int:
        return len(self._subscriptions.get((entity_id, field_type), ()))

    async def register_notification(self, config: NotifyConfig, callback: Callable) -> NotifyConfig:
        self._entity(config.entity_id)
        self._subscriptions.setdefault((config.entity_id, config.field_type), []).append((config, callback))
        return config

    async def unregister_notification(self, config: NotifyConfig, callback: Callable) -> bool:
        key = (config.entity_id, config.field_type)
        items = self._subscriptions.get(key, [])
        for index, (registered, registered_callback) in enumerate(items):
            if registered == config and registered_callback is callback:
                del items[index]
                if not items:
                    del self._subscriptions[key]
                return True
        return False

    async def _notify(self, entity: Entity, field_type: str, current: FieldSnapshot,
                      previous: Optional[FieldSnapshot]) -> None:
        unchanged = previous is not None and previous.value == current.value
        for config, callback in list(self._subscriptions.get((entity.id, field_type), ())):
            if config.trigger_on_change and unchanged:
                continue
            context = {name: entity.fields.get(name) for name in config.context}
            notification = Notification(current=current, previous=previous, context=context)
            try:
                result = callback(notification)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Notification callback for %s.%s failed", entity.id, field_type)
