# services/faceplate_data_service.py
# Reads and writes faceplate records stored as entities in the data store.

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from bindings.constants import INDIRECTION_DELIMITER
from bindings.expressions import split_path
from bindings.models import BindingDefinition, NotificationChannel, ScriptModuleSource
from .data_context import DataContext, data_context

logger = logging.getLogger(__name__)

FACEPLATE_ENTITY_TYPE = "Faceplate"
COMPONENT_ENTITY_TYPE = "FaceplateComponent"


def safe_parse_json(raw: Optional[str], fallback):
    """Parse ``raw`` as JSON, returning ``fallback`` when it is empty or malformed."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return fallback
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("Failed to parse JSON field, using default: %s", e)
        return fallback


def _ensure_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _binding_list(items) -> List[BindingDefinition]:
    return [BindingDefinition.from_dict(item) for item in _ensure_list(items) if isinstance(item, dict)]


@dataclass(slots=True)
class FaceplateRecord:
    id: Any
    name: str = ""
    target_entity_type: str = ""
    configuration: Dict[str, Any] = field(default_factory=lambda: {"layout": [], "bindings": [], "metadata": {}})
    bindings: List[BindingDefinition] = field(default_factory=list)
    components: List[Any] = field(default_factory=list)
    notification_channels: List[NotificationChannel] = field(default_factory=list)

    @property
    def script_modules(self) -> List[ScriptModuleSource]:
        return [
            ScriptModuleSource.from_dict(item)
            for item in _ensure_list(self.configuration.get("scripts"))
            if isinstance(item, dict)
        ]

    def binding_definitions(self) -> List[BindingDefinition]:
        """Bindings of the record, falling back to the ones kept in the configuration."""
        if self.bindings:
            return list(self.bindings)
        return _binding_list(self.configuration.get("bindings"))


@dataclass(slots=True)
class FaceplateComponentRecord:
    id: Any
    name: str = ""
    component_type: str = "Custom"
    configuration: Dict[str, Any] = field(default_factory=dict)
    bindings: List[BindingDefinition] = field(default_factory=list)
    animation_rules: List[Dict[str, Any]] = field(default_factory=list)


class FaceplateDataService(QObject):
    """
    Persistence collaborator of the faceplate runtime.

    Faceplates and their components are entities of the data store whose
    structured fields are stored as JSON strings.  Field-type lookups are
    cached for the lifetime of the service.
    """
    faceplate_saved = pyqtSignal(object)
    component_created = pyqtSignal(object)
    component_deleted = pyqtSignal(object)

    def __init__(self, store, bus: DataContext = data_context):
        super().__init__()
        self._store = store
        self._bus = bus
        self._field_types: Dict[str, Any] = {}

        # Bridge signals into the shared data context
        self.faceplate_saved.connect(
            lambda fid: self._bus.faceplates_changed.emit({"action": "saved", "id": fid})
        )
        self.component_created.connect(
            lambda cid: self._bus.components_changed.emit({"action": "created", "id": cid})
        )
        self.component_deleted.connect(
            lambda cid: self._bus.components_changed.emit({"action": "deleted", "id": cid})
        )

    @property
    def store(self):
        return self._store

    # --- Field access ---------------------------------------------------
    async def get_field_type(self, field_name: str):
        if field_name not in self._field_types:
            self._field_types[field_name] = await self._store.get_field_type(field_name)
        return self._field_types[field_name]

    async def _resolve_path(self, path: str) -> List[Any]:
        return [await self.get_field_type(segment) for segment in split_path(path)]

    async def read_value(self, entity_id, field_name: str):
        return await self._store.read(entity_id, [await self.get_field_type(field_name.strip())])

    async def write_value(self, entity_id, field_name: str, value) -> None:
        await self._store.write(entity_id, [await self.get_field_type(field_name.strip())], value)

    async def read_value_indirect(self, entity_id, path: str):
        """Read a field through a ``A->B`` reference chain; plain names work too."""
        if INDIRECTION_DELIMITER not in path:
            return await self.read_value(entity_id, path)
        return await self._store.read(entity_id, await self._resolve_path(path))

    async def write_value_indirect(self, entity_id, path: str, value) -> None:
        if INDIRECTION_DELIMITER not in path:
            await self.write_value(entity_id, path, value)
            return
        await self._store.write(entity_id, await self._resolve_path(path), value)

    async def read_string(self, entity_id, field_name: str, fallback: str = "") -> str:
        value = await self.read_value(entity_id, field_name)
        if value is None:
            return fallback
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    async def read_entity_list(self, entity_id, field_name: str) -> List[Any]:
        value = await self.read_value(entity_id, field_name)
        return list(value) if isinstance(value, (list, tuple)) else []

    # --- Faceplates -----------------------------------------------------
    async def read_faceplate(self, faceplate_id) -> FaceplateRecord:
        name = await self.read_string(faceplate_id, "Name", f"Faceplate {faceplate_id}")
        target_type = await self.read_string(faceplate_id, "TargetEntityType", "")
        configuration = safe_parse_json(await self.read_value(faceplate_id, "Configuration"), {})
        if not isinstance(configuration, dict):
            logger.warning("Faceplate %r has a non-object configuration; ignoring it", faceplate_id)
            configuration = {}
        configuration["layout"] = _ensure_list(configuration.get("layout"))
        configuration["bindings"] = _ensure_list(configuration.get("bindings"))
        configuration.setdefault("metadata", {})

        bindings = _binding_list(safe_parse_json(await self.read_value(faceplate_id, "Bindings"), []))
        channels = [
            NotificationChannel.from_dict(item)
            for item in _ensure_list(safe_parse_json(await self.read_value(faceplate_id, "NotificationChannels"), []))
            if isinstance(item, dict)
        ]
        return FaceplateRecord(
            id=faceplate_id,
            name=name,
            target_entity_type=target_type,
            configuration=configuration,
            bindings=bindings,
            components=await self.read_entity_list(faceplate_id, "Components"),
            notification_channels=channels,
        )

    async def write_faceplate(self, record: FaceplateRecord) -> None:
        await asyncio.gather(
            self.write_value(record.id, "Name", record.name),
            self.write_value(record.id, "TargetEntityType", record.target_entity_type),
            self.write_value(record.id, "Configuration", json.dumps(record.configuration)),
            self.write_value(record.id, "Bindings", json.dumps([b.to_dict() for b in record.bindings])),
            self.write_value(record.id, "Components", list(record.components)),
            self.write_value(record.id, "NotificationChannels",
                             json.dumps([c.to_dict() for c in record.notification_channels])),
        )
        self.faceplate_saved.emit(record.id)

    async def create_faceplate(self, parent_id, name: str, target_entity_type: str):
        faceplate_id = await self._store.create_entity(FACEPLATE_ENTITY_TYPE, parent_id, name)
        await self.write_faceplate(FaceplateRecord(id=faceplate_id, name=name, target_entity_type=target_entity_type))
        return faceplate_id

    async def delete_faceplate(self, faceplate_id) -> None:
        await self._store.delete_entity(faceplate_id)
        self._bus.faceplates_changed.emit({"action": "deleted", "id": faceplate_id})

    # --- Components -----------------------------------------------------
    async def read_component(self, component_id) -> FaceplateComponentRecord:
        configuration = safe_parse_json(await self.read_value(component_id, "Configuration"), {})
        return FaceplateComponentRecord(
            id=component_id,
            name=await self.read_string(component_id, "Name", f"Component {component_id}"),
            component_type=await self.read_string(component_id, "ComponentType", "Custom"),
            configuration=configuration if isinstance(configuration, dict) else {},
            bindings=_binding_list(safe_parse_json(await self.read_value(component_id, "Bindings"), [])),
            animation_rules=_ensure_list(safe_parse_json(await self.read_value(component_id, "AnimationRules"), [])),
        )

    async def read_components(self, component_ids) -> List[FaceplateComponentRecord]:
        return list(await asyncio.gather(*(self.read_component(cid) for cid in component_ids)))

    async def write_component(self, record: FaceplateComponentRecord) -> None:
        await asyncio.gather(
            self.write_value(record.id, "Name", record.name),
            self.write_value(record.id, "ComponentType", record.component_type),
            self.write_value(record.id, "Configuration", json.dumps(record.configuration)),
            self.write_value(record.id, "Bindings", json.dumps([b.to_dict() for b in record.bindings])),
            self.write_value(record.id, "AnimationRules", json.dumps(record.animation_rules)),
        )

    async def create_component(self, parent_id, name: str, component_type: str):
        component_id = await self._store.create_entity(COMPONENT_ENTITY_TYPE, parent_id, name)
        await self.write_component(FaceplateComponentRecord(id=component_id, name=name, component_type=component_type))
        self.component_created.emit(component_id)
        return component_id

    async def delete_component(self, component_id) -> None:
        await self._store.delete_entity(component_id)
        self.component_deleted.emit(component_id)
