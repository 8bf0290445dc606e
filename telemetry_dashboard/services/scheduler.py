"""Poll scheduler: per-point timers, the tick cycle and ``update_after`` chains."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, Optional, Set

from telemetry_dashboard.services.broadcast import BroadcastDistributor, Subscriber
from telemetry_dashboard.services.mqtt_source import MqttSource
from telemetry_dashboard.services.notifier import NotificationThrottler
from telemetry_dashboard.services.points import Point, PointRegistry
from telemetry_dashboard.services.resolver import coerce_number
from telemetry_dashboard.services.transform import apply_raw, record, scale

logger = logging.getLogger(__name__)


class PollScheduler:
    """Owns the registry and drives every point independently.

    Fired ticks run as their own tasks so a slow fetch never delays the timer.
    Two ticks of the same point may therefore overlap; ``Point.allow_overlap``
    turns that off per point and ``Point.overlapping_ticks`` counts it.
    """

    def __init__(
        self,
        registry: PointRegistry,
        distributor: BroadcastDistributor,
        throttler: NotificationThrottler,
    ) -> None:
        self.registry = registry
        self.distributor = distributor
        self.throttler = throttler
        self._timers: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._timers.values())

    def start(self) -> None:
        for point in self.registry:
            timer = self._timers.get(point.name)
            if timer and not timer.done():
                continue
            self._timers[point.name] = asyncio.create_task(self._run_timer(point), name=f"timer-{point.name}")

    async def stop(self) -> None:
        tasks = [*self._timers.values(), *self._inflight]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timers.clear()
        self._inflight.clear()
        await self.registry.aclose()
        await self.throttler.aclose()

    async def _run_timer(self, point: Point) -> None:
        while True:
            self._fire(point)
            await asyncio.sleep(point.config.refresh_seconds)

    def _fire(self, point: Point) -> None:
        if point.ticks_in_flight and not point.config.allow_overlap:
            point.skipped_ticks += 1
            logger.debug("Skipping tick; previous tick still running", extra={"point": point.name})
            return
        self._spawn(self.tick(point.name), name=f"tick-{point.name}")

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def tick(self, name: str, *, subscriber: Optional[Subscriber] = None) -> None:
        """Run one fetch/transform/notify/broadcast cycle, then the chained point.

        Failures end only this tick; they are logged with the stage reached and
        kept on the point as ``last_error``.
        """

        point = self.registry[name]
        if point.ticks_in_flight:
            point.overlapping_ticks += 1
        point.ticks_in_flight += 1
        stage = "fetch"
        try:
            source = point.source
            if isinstance(source, MqttSource):
                stage = "refresh"
                source.ensure_subscribed(lambda key, payload: self.handle_message(point, key, payload))
                await source.request_refresh()
            else:
                raw = await source.fetch(point.config.timeout_seconds)
                stage = "transform"
                derived = apply_raw(point, raw)
                stage = "notify"
                for variable, value in derived:
                    if variable.notification is not None:
                        await self.throttler.maybe_notify(
                            variable.notification, value, point=point.name, key=variable.key
                        )
                point.last_error = None
                point.last_tick_at = datetime.now(timezone.utc).isoformat()
                stage = "broadcast"
                await self.distributor.publish(point, subscriber)
        except Exception as exc:
            point.last_error = f"{stage}: {exc}"
            logger.warning(
                "Tick failed during %s: %s",
                stage,
                exc,
                extra={"point": point.name, "stage": stage},
            )
        finally:
            point.ticks_in_flight -= 1
        dependent = point.config.update_after
        if dependent is not None:
            await self.tick(dependent, subscriber=subscriber)

    async def handle_message(self, point: Point, key: str, payload: str) -> None:
        """Inbound MQTT reading: transform, record, notify, then broadcast the point."""

        try:
            variable = point.variables.get(key)
            if variable is not None:
                value = scale(coerce_number(payload), variable.config.multiplier, variable.config.offset)
                record(point, variable, value)
                point.last_tick_at = datetime.now(timezone.utc).isoformat()
                if variable.notification is not None:
                    await self.throttler.maybe_notify(variable.notification, value, point=point.name, key=key)
            await self.distributor.publish(point)
        except Exception as exc:
            point.last_error = f"message: {exc}"
            logger.warning(
                "MQTT message for %s failed: %s",
                key,
                exc,
                extra={"point": point.name, "stage": "message"},
            )

    async def refresh_all(self, subscriber: Optional[Subscriber] = None, *, send_existing_first: bool = False) -> None:
        """Poll every point on behalf of one viewer (or everyone)."""

        for point in self.registry:
            if send_existing_first and subscriber is not None:
                await self.distributor.publish(point, subscriber)
            self._spawn(self.tick(point.name, subscriber=subscriber), name=f"refresh-{point.name}")

    def reset_notifications(self) -> int:
        count = self.throttler.reset(self.registry.notification_states())
        logger.info("Notification cooldowns reset (%s descriptors)", count)
        return count
