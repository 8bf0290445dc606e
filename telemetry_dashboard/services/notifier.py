"""Threshold alerts with a per-descriptor cooldown."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

import httpx

from telemetry_dashboard.config import Settings
from telemetry_dashboard.errors import NotificationDispatchError
from telemetry_dashboard.services.points import NotificationState

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    async def send(self, message: str, subject: str) -> bool: ...


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(template: str, **values: Any) -> str:
    try:
        return template.format_map(_TemplateValues(values))
    except (ValueError, TypeError, IndexError, AttributeError):
        return template


class LogDispatcher:
    """Writes alerts to the service log; always succeeds."""

    async def send(self, message: str, subject: str) -> bool:
        logger.warning("%s: %s", subject, message)
        return True


class SendGridDispatcher:
    """E-mail alerts through the SendGrid v3 mail API."""

    def __init__(
        self,
        settings: Settings,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not settings.sendgrid_enabled:
            raise ValueError("SendGrid requires an API key and both e-mail addresses")
        self.url = settings.sendgrid_url
        self.email_to = settings.notify_email_to
        self.email_from = settings.notify_email_from
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {settings.sendgrid_api_key.get_secret_value()}"},
            transport=transport,
        )

    async def send(self, message: str, subject: str) -> bool:
        payload = {
            "personalizations": [{"to": [{"email": self.email_to}]}],
            "from": {"email": self.email_from},
            "subject": subject,
            "content": [{"type": "text/plain", "value": message}],
        }
        try:
            resp = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise NotificationDispatchError(f"sendgrid request failed: {exc}") from exc
        if not resp.is_success:
            raise NotificationDispatchError(f"sendgrid returned HTTP {resp.status_code}")
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


class NotificationThrottler:
    def __init__(self, dispatchers: Mapping[str, NotificationDispatcher]) -> None:
        self.dispatchers: Dict[str, NotificationDispatcher] = dict(dispatchers)

    def due(self, state: NotificationState, now: float) -> bool:
        if state.last_sent_at is None:
            return True
        return now - state.last_sent_at >= state.config.cooldown_seconds

    async def maybe_notify(
        self,
        state: NotificationState,
        value: Any,
        *,
        point: str,
        key: str,
        now: Optional[float] = None,
    ) -> bool:
        """Dispatch when ``value`` crosses a threshold and the cooldown has elapsed.

        Returns True only when a dispatch was confirmed. ``last_sent_at`` is left
        untouched on failure so the next qualifying reading retries. Crossings
        that arrive while a dispatch for the same descriptor is pending are dropped.
        """

        if not state.crossed(value):
            return False
        now = time.time() if now is None else now
        if state.dispatching or not self.due(state, now):
            return False
        cfg = state.config
        dispatcher = self.dispatchers.get(cfg.type)
        if dispatcher is None:
            logger.warning(
                "No dispatcher registered for notification type %s",
                cfg.type,
                extra={"point": point, "stage": "notify"},
            )
            return False
        values = {
            "point": point,
            "key": key,
            "value": value,
            "low": cfg.low_threshold,
            "high": cfg.high_threshold,
        }
        state.dispatching = True
        try:
            sent = await dispatcher.send(render(cfg.message, **values), render(cfg.subject, **values))
        except Exception as exc:
            logger.warning(
                "Notification dispatch failed: %s",
                exc,
                extra={"point": point, "stage": "notify"},
            )
            return False
        finally:
            state.dispatching = False
        if not sent:
            logger.warning(
                "Notification dispatcher %s reported failure",
                cfg.type,
                extra={"point": point, "stage": "notify"},
            )
            return False
        state.last_sent_at = now
        return True

    def reset(self, states: Iterable[NotificationState]) -> int:
        count = 0
        for state in states:
            state.last_sent_at = None
            count += 1
        return count

    async def aclose(self) -> None:
        for dispatcher in self.dispatchers.values():
            close = getattr(dispatcher, "aclose", None)
            if close is not None:
                await close()
