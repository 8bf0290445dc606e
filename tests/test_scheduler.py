from __future__ import annotations

import asyncio
import json
from typing import Any

from telemetry_dashboard.config import (
    MqttSourceConfig,
    NotificationConfig,
    PointConfig,
    SocketSourceConfig,
    VariableConfig,
)
from telemetry_dashboard.errors import SourceConnectError
from telemetry_dashboard.services.broadcast import BroadcastDistributor
from telemetry_dashboard.services.mqtt_source import MqttSource
from telemetry_dashboard.services.notifier import NotificationThrottler
from telemetry_dashboard.services.points import Point, PointRegistry
from telemetry_dashboard.services.scheduler import PollScheduler


class _StaticSource:
    def __init__(self, payload: Any, gate: asyncio.Event | None = None) -> None:
        self.payload = payload
        self.gate = gate
        self.fetches = 0
        self.closed = False

    async def fetch(self, timeout: float | None) -> Any:
        self.fetches += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.payload

    async def aclose(self) -> None:
        self.closed = True


class _FailingSource:
    def __init__(self) -> None:
        self.fetches = 0

    async def fetch(self, timeout: float | None) -> Any:
        self.fetches += 1
        raise SourceConnectError("connection refused")


class _Viewer:
    def __init__(self) -> None:
        self.frames: list[dict] = []

    async def send_text(self, data: str) -> None:
        self.frames.append(json.loads(data))


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, message: str, subject: str) -> bool:
        self.sent.append((message, subject))
        return True


def _point(name: str, handle: Any, **overrides) -> Point:
    fields: dict[str, Any] = {
        "name": name,
        "source": SocketSourceConfig(),
        "refresh_seconds": 3600,
        "variables": {"temp": VariableConfig(path="temp")},
    }
    fields.update(overrides)
    return Point(PointConfig(**fields), handle, history_limit=5)


def _scheduler(*points: Point, dispatcher: _RecordingDispatcher | None = None) -> tuple[PollScheduler, _Viewer]:
    distributor = BroadcastDistributor()
    viewer = _Viewer()
    distributor.add(viewer)
    throttler = NotificationThrottler({"test": dispatcher or _RecordingDispatcher()})
    return PollScheduler(PointRegistry(points), distributor, throttler), viewer


def test_tick_fetches_transforms_and_broadcasts() -> None:
    async def runner() -> None:
        point = _point("rig", _StaticSource({"temp": 41}))
        scheduler, viewer = _scheduler(point)

        await scheduler.tick("rig")

        assert point.last_data == {"raw": {"temp": 41}, "temp": 41}
        assert point.last_error is None
        assert point.last_tick_at is not None
        assert viewer.frames[-1]["lastData"]["temp"] == 41

    asyncio.run(runner())


def test_chained_point_ticks_once_after_success() -> None:
    async def runner() -> None:
        downstream = _StaticSource({"temp": 1})
        upstream = _point("a", _StaticSource({"temp": 2}), update_after="b")
        scheduler, _ = _scheduler(upstream, _point("b", downstream))

        await scheduler.tick("a")

        assert downstream.fetches == 1

    asyncio.run(runner())


def test_chained_point_ticks_after_failure_too() -> None:
    async def runner() -> None:
        downstream = _StaticSource({"temp": 1})
        failing = _FailingSource()
        scheduler, viewer = _scheduler(_point("a", failing, update_after="b"), _point("b", downstream))

        await scheduler.tick("a")

        assert failing.fetches == 1
        assert downstream.fetches == 1
        assert [frame["name"] for frame in viewer.frames] == ["b"]

    asyncio.run(runner())


def test_failed_tick_keeps_previous_data() -> None:
    async def runner() -> None:
        point = _point("rig", _StaticSource({"temp": 30}))
        scheduler, _ = _scheduler(point)
        await scheduler.tick("rig")

        point.source = _FailingSource()
        await scheduler.tick("rig")

        assert point.last_data["temp"] == 30
        assert point.last_error == "fetch: connection refused"

    asyncio.run(runner())


def test_keys_missing_from_payload_become_none() -> None:
    async def runner() -> None:
        point = _point("rig", _StaticSource({"fan": 3}))
        point.last_data["temp"] = 25
        scheduler, _ = _scheduler(point)

        await scheduler.tick("rig")

        assert point.last_data["temp"] is None
        assert point.history.samples("temp")[-1]["data"] is None

    asyncio.run(runner())


def test_overlapping_ticks_are_counted() -> None:
    async def runner() -> None:
        gate = asyncio.Event()
        point = _point("slow", _StaticSource({"temp": 1}, gate=gate))
        scheduler, _ = _scheduler(point)

        first = asyncio.create_task(scheduler.tick("slow"))
        await asyncio.sleep(0)
        second = asyncio.create_task(scheduler.tick("slow"))
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        assert point.overlapping_ticks == 1
        assert point.ticks_in_flight == 0
        assert point.source.fetches == 2

    asyncio.run(runner())


def test_fire_skips_when_overlap_disallowed() -> None:
    async def runner() -> None:
        gate = asyncio.Event()
        point = _point("slow", _StaticSource({"temp": 1}, gate=gate), allow_overlap=False)
        scheduler, _ = _scheduler(point)

        scheduler._fire(point)
        await asyncio.sleep(0)
        scheduler._fire(point)

        assert point.skipped_ticks == 1
        gate.set()
        await asyncio.gather(*list(scheduler._inflight))
        assert point.source.fetches == 1

    asyncio.run(runner())


def test_threshold_crossing_dispatches_notification() -> None:
    async def runner() -> None:
        dispatcher = _RecordingDispatcher()
        notification = NotificationConfig(type="test", high_threshold=80, message="{key}={value}")
        point = _point(
            "rig",
            _StaticSource({"temp": 90}),
            variables={"temp": VariableConfig(path="temp", notification=notification)},
        )
        scheduler, _ = _scheduler(point, dispatcher=dispatcher)

        await scheduler.tick("rig")
        await scheduler.tick("rig")

        assert dispatcher.sent == [("temp=90", "Telemetry alert: rig")]
        assert scheduler.reset_notifications() == 1
        await scheduler.tick("rig")
        assert len(dispatcher.sent) == 2

    asyncio.run(runner())


def _mqtt_point() -> Point:
    config = MqttSourceConfig(
        subscription_topic="garden/",
        force_update_topic="garden/cmd",
        force_update_message="update",
    )
    source = MqttSource(config, point_name="garden")
    return _point(
        "garden",
        source,
        source=config,
        variables={"soil": VariableConfig(path="soil", multiplier=10, calculate_range_percent=True)},
    )


def test_mqtt_message_is_scaled_recorded_and_broadcast() -> None:
    async def runner() -> None:
        point = _mqtt_point()
        scheduler, viewer = _scheduler(point)

        await scheduler.handle_message(point, "soil", "0.5")
        await scheduler.handle_message(point, "unmapped", "ignored")

        assert point.last_data["soil"] == 5.0
        assert point.history.samples("soil")[0]["data"] == 5.0
        assert point.variables["soil"].range_max == 5.0
        assert len(viewer.frames) == 2

    asyncio.run(runner())


def test_mqtt_tick_subscribes_and_requests_refresh() -> None:
    async def runner() -> None:
        point = _mqtt_point()
        source: MqttSource = point.source
        runs = 0

        async def fake_run() -> None:
            nonlocal runs
            runs += 1
            await asyncio.Event().wait()

        source._run = fake_run  # type: ignore[method-assign]
        scheduler, _ = _scheduler(point)

        await scheduler.tick("garden")
        await scheduler.tick("garden")
        await asyncio.sleep(0)

        assert runs == 1
        assert source._refresh_pending is True
        assert point.last_error is None
        await scheduler.stop()

    asyncio.run(runner())


def test_refresh_all_sends_existing_state_first() -> None:
    async def runner() -> None:
        point = _point("rig", _StaticSource({"temp": 7}))
        point.last_data["temp"] = 3
        scheduler, _ = _scheduler(point)
        requester = _Viewer()

        await scheduler.refresh_all(requester, send_existing_first=True)
        assert requester.frames[0]["lastData"]["temp"] == 3
        await asyncio.gather(*list(scheduler._inflight))

        assert requester.frames[-1]["lastData"]["temp"] == 7
        assert len(requester.frames) == 2

    asyncio.run(runner())


def test_start_and_stop_manage_timers() -> None:
    async def runner() -> None:
        source = _StaticSource({"temp": 1})
        scheduler, _ = _scheduler(_point("rig", source))

        scheduler.start()
        assert scheduler.running
        for _ in range(5):
            await asyncio.sleep(0)
        assert source.fetches == 1

        await scheduler.stop()
        assert not scheduler.running
        assert source.closed is True

    asyncio.run(runner())


def test_overlapping_ticks_share_one_cooldown_window() -> None:
    async def runner() -> None:
        class _SlowDispatcher(_RecordingDispatcher):
            async def send(self, message: str, subject: str) -> bool:
                self.sent.append((message, subject))
                await asyncio.sleep(0.05)
                return True

        dispatcher = _SlowDispatcher()
        notification = NotificationConfig(type="test", high_threshold=80, cooldown_seconds=60)
        point = _point(
            "rig",
            _StaticSource({"temp": 90}),
            variables={"temp": VariableConfig(path="temp", notification=notification)},
        )
        scheduler, _ = _scheduler(point, dispatcher=dispatcher)

        await asyncio.gather(scheduler.tick("rig"), scheduler.tick("rig"))

        assert len(dispatcher.sent) == 1
        assert point.overlapping_ticks == 1

    asyncio.run(runner())
