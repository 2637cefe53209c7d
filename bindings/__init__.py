from .constants import ActionType, EventTrigger, ExpressionMode, NotificationState, ValueSource
from .errors import (
    BindingError,
    CircularBindingError,
    EvaluationDepthError,
    FieldResolutionError,
    SandboxViolation,
    ScriptCompileError,
    ScriptRuntimeError,
    UnknownModeError,
)
from .models import (
    BindingDefinition,
    EventAction,
    EventHandler,
    EventPayload,
    Notification,
    NotificationChannel,
    ScriptError,
    ScriptModuleSource,
)

__all__ = [
    "ActionType",
    "EventTrigger",
    "ExpressionMode",
    "NotificationState",
    "ValueSource",
    "BindingError",
    "CircularBindingError",
    "EvaluationDepthError",
    "FieldResolutionError",
    "SandboxViolation",
    "ScriptCompileError",
    "ScriptRuntimeError",
    "UnknownModeError",
    "BindingDefinition",
    "EventAction",
    "EventHandler",
    "EventPayload",
    "Notification",
    "NotificationChannel",
    "ScriptError",
    "ScriptModuleSource",
]
