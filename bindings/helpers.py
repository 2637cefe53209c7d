"""Helper library available to every script and transform as ``helpers``."""

from __future__ import annotations

import datetime
import math
from typing import Any, Dict, Iterable, List, Mapping, Union

from PyQt6.QtGui import QColor

from .safe_eval import SandboxNamespace

Stop = Mapping[str, Any]


def _number(value: Any) -> Union[int, float]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return float(value)


def clamp(value: Any, lower: float, upper: float) -> Union[int, float]:
    return min(max(_number(value), lower), upper)


def lerp(start: float, end: float, t: float) -> float:
    return start + (end - start) * t


def round_to(value: float, precision: int = 0) -> float:
    """Round halves up towards positive infinity: ``-2.5`` gives ``-2``."""
    factor = 10 ** precision
    return math.floor(_number(value) * factor + 0.5) / factor


def format_value(value: Any, digits: int = 2) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return str(value)
        return f"{value:.{digits}f}"
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    return str(value)


def format_date(value: Union[int, float, str, datetime.datetime, None], fmt: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Format a datetime, an epoch timestamp in seconds, or an ISO string."""
    if value is None or value == "":
        return ""
    if isinstance(value, (int, float)):
        value = datetime.datetime.fromtimestamp(value)
    elif isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    return value.strftime(fmt)


def _sorted_stops(stops: Iterable[Stop]) -> List[Stop]:
    return sorted(stops, key=lambda s: s["stop"])


def color_ramp(value: float, stops: Iterable[Stop]) -> str:
    """Pick the color of the nearest stop bracketing ``value``."""
    ordered = _sorted_stops(stops)
    if not ordered:
        return "#ffffff"
    if value <= ordered[0]["stop"]:
        return ordered[0]["color"]
    if value >= ordered[-1]["stop"]:
        return ordered[-1]["color"]
    for current, nxt in zip(ordered, ordered[1:]):
        if current["stop"] <= value <= nxt["stop"]:
            ratio = (value - current["stop"]) / (nxt["stop"] - current["stop"])
            return current["color"] if ratio < 0.5 else nxt["color"]
    return ordered[-1]["color"]


def interpolate_color(value: float, stops: Iterable[Stop]) -> str:
    """Blend linearly in RGB between the two stops bracketing ``value``."""
    ordered = _sorted_stops(stops)
    if not ordered:
        return "#ffffff"
    if value <= ordered[0]["stop"]:
        return QColor(ordered[0]["color"]).name()
    if value >= ordered[-1]["stop"]:
        return QColor(ordered[-1]["color"]).name()
    for current, nxt in zip(ordered, ordered[1:]):
        if current["stop"] <= value <= nxt["stop"]:
            span = nxt["stop"] - current["stop"]
            t = (value - current["stop"]) / span if span else 0.0
            a, b = QColor(current["color"]), QColor(nxt["color"])
            return QColor(
                round(lerp(a.red(), b.red(), t)),
                round(lerp(a.green(), b.green(), t)),
                round(lerp(a.blue(), b.blue(), t)),
            ).name()
    return QColor(ordered[-1]["color"]).name()


HELPER_FUNCTIONS: Dict[str, Any] = {
    "clamp": clamp,
    "lerp": lerp,
    "round": round_to,
    "format": format_value,
    "format_date": format_date,
    "color_ramp": color_ramp,
    "interpolate_color": interpolate_color,
}


def make_helpers() -> SandboxNamespace:
    return SandboxNamespace("helpers", HELPER_FUNCTIONS)
