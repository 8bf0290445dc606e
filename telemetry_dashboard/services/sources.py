"""Polled source adapters: raw TCP sockets and HTTP(S) endpoints."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Optional, Tuple, TypeVar, assert_never

import httpx

from telemetry_dashboard.config import MqttSourceConfig, PointConfig, SocketSourceConfig, WebSourceConfig
from telemetry_dashboard.errors import SourceConnectError, SourceTimeoutError, SourceTransportError
from telemetry_dashboard.services.mqtt_source import MqttSource

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_payload(text: str) -> Any:
    """Parsed JSON when possible, otherwise the text itself."""

    try:
        return json.loads(text)
    except ValueError:
        return text


def repair_socket_payload(text: str) -> str:
    """Drop NUL padding and separate back-to-back JSON objects."""

    return text.replace("\x00", "").replace("}{", "},{")


async def _race_timeout(operation: Awaitable[T], timeout: Optional[float], label: str) -> T:
    if not timeout:
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout)
    except asyncio.TimeoutError as exc:
        raise SourceTimeoutError(f"timeout after {timeout:g}s fetching {label}") from exc


@asynccontextmanager
async def open_stream(host: str, port: int) -> AsyncIterator[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
    """Connection scoped to the block; closed once however the block exits."""

    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        raise SourceConnectError(f"connect to {host}:{port} failed: {exc}") from exc
    try:
        yield reader, writer
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except Exception as exc:
            logger.debug("Socket %s:%s closed uncleanly: %s", host, port, exc)


class SocketSource:
    """One connection per fetch: write the command, read until the peer closes."""

    def __init__(self, config: SocketSourceConfig) -> None:
        self.config = config

    @property
    def label(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    async def fetch(self, timeout: Optional[float]) -> Any:
        return await _race_timeout(self._exchange(), timeout, self.label)

    async def _exchange(self) -> Any:
        async with open_stream(self.config.host, self.config.port) as (reader, writer):
            try:
                if self.config.command:
                    writer.write(self.config.command.encode("utf-8"))
                    await writer.drain()
                data = await reader.read()
            except OSError as exc:
                raise SourceTransportError(f"socket {self.label} failed mid-transfer: {exc}") from exc
        return parse_payload(repair_socket_payload(data.decode("utf-8", errors="replace")))

    async def aclose(self) -> None:
        return None


class WebSource:
    """Single GET per fetch; the response body is JSON or plain text."""

    def __init__(self, config: WebSourceConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(None),
            headers=config.headers,
            transport=transport,
            follow_redirects=True,
        )

    async def fetch(self, timeout: Optional[float]) -> Any:
        return await _race_timeout(self._get(), timeout, self.config.url)

    async def _get(self) -> Any:
        try:
            resp = await self._client.get(self.config.url)
        except httpx.ConnectError as exc:
            raise SourceConnectError(f"connect to {self.config.url} failed: {exc}") from exc
        except httpx.TransportError as exc:
            raise SourceTransportError(f"request to {self.config.url} failed: {exc}") from exc
        if resp.is_error:
            logger.debug("%s answered HTTP %s", self.config.url, resp.status_code)
        return parse_payload(resp.text)

    async def aclose(self) -> None:
        await self._client.aclose()


def build_source(config: PointConfig) -> SocketSource | WebSource | MqttSource:
    source = config.source
    if isinstance(source, SocketSourceConfig):
        return SocketSource(source)
    if isinstance(source, WebSourceConfig):
        return WebSource(source)
    if isinstance(source, MqttSourceConfig):
        return MqttSource(source, point_name=config.name)
    assert_never(source)
