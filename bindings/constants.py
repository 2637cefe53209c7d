from enum import Enum

# Delimiter between hops of an indirection path, e.g. "Parent->Name"
INDIRECTION_DELIMITER = "->"

SCRIPT_PREFIX = "script:"
EXPRESSION_KEY_SEPARATOR = "::"


class ExpressionMode(str, Enum):
    LITERAL = "literal"
    FIELD = "field"
    SCRIPT = "script"

    @classmethod
    def values(cls):
        return [m.value for m in cls]

    @classmethod
    def parse(cls, value) -> "ExpressionMode":
        """Return the mode for ``value``; legacy ``twoWay`` reads as field."""
        if isinstance(value, ExpressionMode):
            return value
        if value == "twoWay":
            return cls.FIELD
        return cls(str(value))


class ActionType(str, Enum):
    WRITE_FIELD = "writeField"
    SCRIPT = "script"
    NAVIGATE = "navigate"

    @classmethod
    def values(cls):
        return [m.value for m in cls]


class ValueSource(str, Enum):
    COMPONENT = "component"
    LITERAL = "literal"
    EXPRESSION = "expression"

    @classmethod
    def values(cls):
        return [m.value for m in cls]


class EventTrigger(str, Enum):
    ON_CLICK = "onClick"
    ON_CHANGE = "onChange"
    ON_INPUT = "onInput"
    ON_SUBMIT = "onSubmit"
    ON_FOCUS = "onFocus"
    ON_BLUR = "onBlur"

    @classmethod
    def values(cls):
        return [m.value for m in cls]


class NotificationState(str, Enum):
    IDLE = "idle"
    CLEANING_UP = "cleaning_up"
    REGISTERING = "registering"
    ACTIVE = "active"
