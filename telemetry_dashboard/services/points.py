"""Runtime state for configured points and the registry that owns them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from telemetry_dashboard.config import RANGE_MARKER, MqttSourceConfig, NotificationConfig, PointConfig, VariableConfig
from telemetry_dashboard.errors import ConfigError
from telemetry_dashboard.services.history import HistoryLedger
from telemetry_dashboard.services.resolver import CompiledPath, compile_path, is_number

logger = logging.getLogger(__name__)


@dataclass
class NotificationState:
    config: NotificationConfig
    last_sent_at: Optional[float] = None
    dispatching: bool = False

    def crossed(self, value: Any) -> bool:
        if not is_number(value):
            return False
        low = self.config.low_threshold
        high = self.config.high_threshold
        return (low is not None and value <= low) or (high is not None and value >= high)


@dataclass
class Variable:
    key: str
    config: VariableConfig
    path: CompiledPath
    candidates: Tuple[CompiledPath, ...] = ()
    range_min: Any = None
    range_max: Any = None
    notification: Optional[NotificationState] = None

    @classmethod
    def from_config(cls, key: str, config: VariableConfig) -> "Variable":
        candidates: Tuple[CompiledPath, ...] = ()
        if config.find_range:
            candidates = tuple(
                compile_path(config.path.replace(RANGE_MARKER, str(index)))
                for index in range(config.path_range_min, config.path_range_max)
            )
        return cls(
            key=key,
            config=config,
            path=compile_path(config.path),
            candidates=candidates,
            notification=NotificationState(config.notification) if config.notification else None,
        )


class Point:
    def __init__(self, config: PointConfig, source: Any, *, history_limit: int) -> None:
        self.config = config
        self.source = source
        self.variables: Dict[str, Variable] = {
            key: Variable.from_config(key, variable) for key, variable in config.variables.items()
        }
        self.last_data: Dict[str, Any] = {}
        self.history = HistoryLedger(history_limit)
        self.ticks_in_flight = 0
        self.overlapping_ticks = 0
        self.skipped_ticks = 0
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[str] = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_push(self) -> bool:
        return isinstance(self.config.source, MqttSourceConfig)

    def notification_states(self) -> Iterator[NotificationState]:
        for variable in self.variables.values():
            if variable.notification is not None:
                yield variable.notification


class PointRegistry:
    """Every configured point, keyed by name, with validated ``update_after`` chains."""

    def __init__(self, points: Iterable[Point]) -> None:
        self._points: Dict[str, Point] = {}
        for point in points:
            if point.name in self._points:
                raise ConfigError(f"duplicate point name {point.name!r}")
            self._points[point.name] = point
        self._validate_chains()

    @classmethod
    def from_configs(
        cls,
        configs: Mapping[str, PointConfig],
        *,
        history_limit: int,
        source_factory: Callable[[PointConfig], Any],
    ) -> "PointRegistry":
        return cls(
            Point(config, source_factory(config), history_limit=history_limit)
            for config in configs.values()
        )

    def _validate_chains(self) -> None:
        for name, point in self._points.items():
            target = point.config.update_after
            if target is not None and target not in self._points:
                raise ConfigError(f"point {name!r} updates unknown point {target!r}")
        for start in self._points:
            seen = [start]
            current = self._points[start].config.update_after
            while current is not None:
                if current in seen:
                    chain = " -> ".join([*seen, current])
                    raise ConfigError(f"update_after cycle: {chain}")
                seen.append(current)
                current = self._points[current].config.update_after

    def __getitem__(self, name: str) -> Point:
        return self._points[name]

    def __contains__(self, name: object) -> bool:
        return name in self._points

    def __iter__(self) -> Iterator[Point]:
        return iter(list(self._points.values()))

    def __len__(self) -> int:
        return len(self._points)

    def get(self, name: str) -> Optional[Point]:
        return self._points.get(name)

    def notification_states(self) -> Iterator[NotificationState]:
        for point in self._points.values():
            yield from point.notification_states()

    async def aclose(self) -> None:
        for point in self._points.values():
            close = getattr(point.source, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.warning("Unable to close source", extra={"point": point.name}, exc_info=True)
