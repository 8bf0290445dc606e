"""Push source backed by a persistent MQTT subscription."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from aiomqtt import Client, MqttError

from telemetry_dashboard.config import MqttSourceConfig

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], Awaitable[None]]


def _payload_text(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        return payload.decode("utf-8", errors="ignore")
    if payload is None:
        return ""
    return str(payload)


class MqttSource:
    """Subscribe once per point and hand every inbound reading to a handler.

    A scheduled tick does not fetch anything: it publishes the configured
    force-update message so the remote republishes fresh values.
    """

    def __init__(self, config: MqttSourceConfig, *, point_name: str, retry_delay: float = 2.0) -> None:
        self.config = config
        self.point_name = point_name
        self.retry_delay = retry_delay
        self._handler: Optional[MessageHandler] = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._client: Client | None = None
        self._refresh_pending = False

    @property
    def subscription(self) -> str:
        return f"{self.config.subscription_topic}#"

    @property
    def connected(self) -> bool:
        return self._client is not None

    def key_for_topic(self, topic: str) -> str:
        prefix = self.config.subscription_topic
        if topic.startswith(prefix):
            return topic[len(prefix):]
        return topic.replace(prefix, "", 1)

    def ensure_subscribed(self, handler: MessageHandler) -> None:
        self._handler = handler
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name=f"mqtt-{self.point_name}")

    async def request_refresh(self) -> None:
        if not self.config.force_update_topic:
            return
        client = self._client
        if client is None:
            self._refresh_pending = True
            return
        await self._publish_refresh(client)

    async def _publish_refresh(self, client: Client) -> None:
        self._refresh_pending = False
        await client.publish(self.config.force_update_topic, self.config.force_update_message.encode("utf-8"))

    async def aclose(self) -> None:
        self._stop.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _run(self) -> None:
        options = self.config.options
        while not self._stop.is_set():
            try:
                async with Client(
                    self.config.host,
                    port=self.config.port,
                    username=options.username,
                    password=options.password,
                    identifier=options.client_id,
                    keepalive=options.keepalive,
                ) as client:
                    self._client = client
                    await self._listen(client)
            except asyncio.CancelledError:
                break
            except MqttError as exc:
                logger.warning(
                    "MQTT subscription error: %s",
                    exc,
                    extra={"point": self.point_name, "stage": "subscribe"},
                )
                await asyncio.sleep(self.retry_delay)
            except Exception:
                logger.exception(
                    "Unhandled error in MQTT subscription",
                    extra={"point": self.point_name, "stage": "subscribe"},
                )
                await asyncio.sleep(self.retry_delay)
            finally:
                self._client = None

    async def _listen(self, client: Client) -> None:
        await client.subscribe(self.subscription)
        if self._refresh_pending:
            await self._publish_refresh(client)
        async for message in client.messages:
            if self._stop.is_set():
                break
            topic = getattr(message.topic, "value", None)
            if topic is None:
                topic = str(message.topic)
            await self.dispatch(topic, message.payload)

    async def dispatch(self, topic: str, payload: Any) -> None:
        if self._handler is None:
            return
        await self._handler(self.key_for_topic(topic), _payload_text(payload))
