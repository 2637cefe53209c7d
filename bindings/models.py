from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .constants import ActionType, ExpressionMode, ValueSource


def _ensure_list(value) -> list:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass(frozen=True, slots=True)
class BindingDefinition:
    """One binding as loaded from a faceplate record."""

    component: str = ""
    property: str = ""
    expression: str = ""
    mode: Optional[ExpressionMode] = None
    transform: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "component": self.component,
            "property": self.property,
            "expression": self.expression,
        }
        if self.mode is not None:
            data["mode"] = self.mode.value
        if self.transform is not None:
            data["transform"] = self.transform
        if self.dependencies:
            data["dependencies"] = list(self.dependencies)
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BindingDefinition":
        raw_mode = data.get("mode")
        mode = ExpressionMode.parse(raw_mode) if raw_mode else None
        deps = tuple(str(d) for d in _ensure_list(data.get("dependencies")))
        return cls(
            component=data.get("component") or data.get("componentName") or "",
            property=data.get("property") or "",
            expression=data.get("expression") or "",
            mode=mode,
            transform=data.get("transform"),
            dependencies=deps,
            description=data.get("description"),
        )


@dataclass(slots=True)
class ExpressionMeta:
    expression: str
    mode: ExpressionMode
    dependencies: List[str] = field(default_factory=list)
    description: Optional[str] = None

    def merge_dependencies(self, other: List[str]) -> None:
        for dep in other:
            if dep not in self.dependencies:
                self.dependencies.append(dep)


@dataclass(frozen=True, slots=True)
class BindingTarget:
    component: str
    property: str
    transform: Optional[str] = None

    @property
    def slot_key(self) -> str:
        return make_slot_key(self.component, self.property)


def make_slot_key(component: str, property_name: str) -> str:
    return f"{component}:{property_name}"


@dataclass(frozen=True, slots=True)
class NotifyConfig:
    """Direct subscription on one field of one entity."""

    entity_id: Any
    field_type: Any
    trigger_on_change: bool = True
    context: Tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True)
class FieldSnapshot:
    value: Any = None
    timestamp: Optional[float] = None
    writer_id: Any = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["FieldSnapshot"]:
        if data is None:
            return None
        if isinstance(data, FieldSnapshot):
            return data
        return cls(
            value=data.get("value"),
            timestamp=data.get("timestamp"),
            writer_id=data.get("writer_id", data.get("writerId")),
        )


@dataclass(frozen=True, slots=True)
class Notification:
    current: Optional[FieldSnapshot]
    previous: Optional[FieldSnapshot] = None
    context: Dict[str, FieldSnapshot] = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        """False when the current slot carries no new value."""
        return (
            self.current is not None
            and self.current.value is not None
            and self.current.timestamp is not None
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        if isinstance(data, Notification):
            return data
        ctx = {
            name: FieldSnapshot.from_dict(snap)
            for name, snap in (data.get("context") or {}).items()
        }
        return cls(
            current=FieldSnapshot.from_dict(data.get("current")),
            previous=FieldSnapshot.from_dict(data.get("previous")),
            context=ctx,
        )


@dataclass(frozen=True, slots=True)
class NotificationChannel:
    fields: Tuple[str, ...] = ()
    entity_type: Optional[str] = None
    trigger_on_change: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationChannel":
        return cls(
            fields=tuple(str(f) for f in _ensure_list((data or {}).get("fields"))),
            entity_type=(data or {}).get("entityType"),
            trigger_on_change=(data or {}).get("triggerOnChange", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"fields": list(self.fields), "triggerOnChange": self.trigger_on_change}
        if self.entity_type:
            data["entityType"] = self.entity_type
        return data


@dataclass(frozen=True, slots=True)
class ScriptModuleSource:
    name: str = ""
    code: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptModuleSource":
        return cls(name=(data or {}).get("name") or "", code=(data or {}).get("code") or "")


@dataclass(frozen=True, slots=True)
class ScriptError:
    error: str
    module: Optional[str] = None
    context: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.error, "timestamp": self.timestamp}
        if self.module is not None:
            data["module"] = self.module
        if self.context is not None:
            data["context"] = self.context
        return data


@dataclass(frozen=True, slots=True)
class EventAction:
    type: ActionType
    field_path: Optional[str] = None
    value_source: ValueSource = ValueSource.COMPONENT
    value: Any = None
    target_entity: Optional[str] = None
    code: Optional[str] = None
    target_faceplate: Optional[str] = None
    entity_context: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventAction":
        return cls(
            type=ActionType(data.get("type")),
            field_path=data.get("fieldPath"),
            value_source=ValueSource(data.get("valueSource") or ValueSource.COMPONENT.value),
            value=data.get("value"),
            target_entity=data.get("targetEntity"),
            code=data.get("code"),
            target_faceplate=data.get("targetFaceplate"),
            entity_context=data.get("entityContext"),
        )


@dataclass(frozen=True, slots=True)
class EventHandler:
    trigger: str
    action: EventAction
    component_id: Optional[str] = None
    id: Optional[str] = None
    description: Optional[str] = None
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventHandler":
        return cls(
            trigger=data.get("trigger", ""),
            action=EventAction.from_dict(data.get("action") or {}),
            component_id=data.get("componentId"),
            id=data.get("id"),
            description=data.get("description"),
            enabled=data.get("enabled", True) is not False,
        )


@dataclass(frozen=True, slots=True)
class EventPayload:
    handler: Optional[EventHandler]
    value: Any = None
    native_event: Any = None

    @property
    def trigger(self) -> str:
        return self.handler.trigger if self.handler else ""
