"""Derive variable values from raw payloads."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, List, Optional, Tuple

from telemetry_dashboard.services.resolver import CompiledPath, is_number, resolve

if TYPE_CHECKING:
    from telemetry_dashboard.services.points import Point, Variable


def scale(value: Any, multiplier: float, offset: float) -> Any:
    if is_number(value):
        return value * multiplier + offset
    return value


def scan_extremum(raw: Any, candidates: Iterable[CompiledPath], mode: str) -> Any:
    best = None
    for path in candidates:
        value = resolve(raw, path)
        if not is_number(value):
            continue
        if best is None or (mode == "max" and value > best) or (mode == "min" and value < best):
            best = value
    return best


def derive(variable: "Variable", raw: Any) -> Any:
    cfg = variable.config
    if cfg.find_range:
        value = scan_extremum(raw, variable.candidates, cfg.find_range)
    else:
        value = resolve(raw, variable.path)
    return scale(value, cfg.multiplier, cfg.offset)


def track_range(variable: "Variable", value: Any) -> None:
    """Widen the observed bounds; they never narrow."""

    if not variable.config.calculate_range_percent or not is_number(value):
        return
    if variable.range_min is None or value < variable.range_min:
        variable.range_min = value
    if variable.range_max is None or value > variable.range_max:
        variable.range_max = value


def record(point: "Point", variable: "Variable", value: Any, *, now: Optional[datetime] = None) -> None:
    point.last_data[variable.key] = value
    point.history.append(variable.key, value, now=now)
    track_range(variable, value)


def apply_raw(point: "Point", raw: Any, *, now: Optional[datetime] = None) -> List[Tuple["Variable", Any]]:
    """Store the raw payload and derive every declared variable from it."""

    point.last_data["raw"] = raw
    derived: List[Tuple["Variable", Any]] = []
    for variable in point.variables.values():
        value = derive(variable, raw)
        record(point, variable, value, now=now)
        derived.append((variable, value))
    return derived
