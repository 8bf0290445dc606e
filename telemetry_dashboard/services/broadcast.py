"""Push point snapshots to live viewers."""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Dict, Optional, Protocol, Set

from telemetry_dashboard.services.points import Point

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


def _json_safe(value: Any) -> Any:
    """NaN and infinities become ``None``; browsers reject them in JSON."""

    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def point_snapshot(point: Point) -> Dict[str, Any]:
    """Observable state of a point; transport handles and timers stay private."""

    return _json_safe({
        "name": point.name,
        "lastData": point.last_data,
        "dataHistory": point.history.snapshot(),
        "variableData": {
            key: {
                "multiplier": variable.config.multiplier,
                "offset": variable.config.offset,
                "calculateRangePercent": variable.config.calculate_range_percent,
                "rangeMin": variable.range_min,
                "rangeMax": variable.range_max,
            }
            for key, variable in point.variables.items()
        },
        "lastError": point.last_error,
        "lastTickAt": point.last_tick_at,
    })


class BroadcastDistributor:
    def __init__(self) -> None:
        self._subscribers: Set[Subscriber] = set()

    def add(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def discard(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    def __len__(self) -> int:
        return len(self._subscribers)

    async def publish(self, point: Point, subscriber: Optional[Subscriber] = None) -> int:
        """Send ``point`` to one subscriber, or to everyone connected right now."""

        frame = json.dumps(point_snapshot(point), default=str, allow_nan=False)
        targets = [subscriber] if subscriber is not None else list(self._subscribers)
        delivered = 0
        for target in targets:
            try:
                await target.send_text(frame)
            except Exception as exc:
                logger.warning(
                    "Live update send failed: %s",
                    exc,
                    extra={"point": point.name, "stage": "broadcast"},
                )
                continue
            delivered += 1
        return delivered
