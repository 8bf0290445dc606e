"""FastAPI application hosting the poll scheduler and the live update channel."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI

from telemetry_dashboard.config import Settings, get_settings
from telemetry_dashboard.observability import configure_observability
from telemetry_dashboard.routers import live as live_router
from telemetry_dashboard.routers import points as points_router
from telemetry_dashboard.routers import status as status_router
from telemetry_dashboard.services.broadcast import BroadcastDistributor
from telemetry_dashboard.services.config_store import PointsFileStore
from telemetry_dashboard.services.notifier import LogDispatcher, NotificationDispatcher, NotificationThrottler, SendGridDispatcher
from telemetry_dashboard.services.points import PointRegistry
from telemetry_dashboard.services.scheduler import PollScheduler
from telemetry_dashboard.services.sources import build_source

logger = logging.getLogger(__name__)


def build_dispatchers(settings: Settings) -> Dict[str, NotificationDispatcher]:
    dispatchers: Dict[str, NotificationDispatcher] = {"log": LogDispatcher()}
    if settings.sendgrid_enabled:
        dispatchers["sendgrid"] = SendGridDispatcher(settings)
    return dispatchers


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configs = PointsFileStore(settings.points_file).load()
    registry = PointRegistry.from_configs(
        configs,
        history_limit=settings.keep_history,
        source_factory=build_source,
    )
    scheduler = PollScheduler(
        registry,
        BroadcastDistributor(),
        NotificationThrottler(build_dispatchers(settings)),
    )
    scheduler.start()
    app.state.scheduler = scheduler
    app.state.started_at = time.monotonic()
    logger.info("Telemetry dashboard started with %s points", len(registry))

    try:
        yield
    finally:
        running: PollScheduler | None = getattr(app.state, "scheduler", None)
        if running:
            await running.stop()
        app.state.scheduler = None
        logger.info("Telemetry dashboard stopped")


settings = get_settings()
app = FastAPI(title="Telemetry Dashboard", version=settings.service_version, lifespan=lifespan)
configure_observability(app, service_name=settings.service_name, log_level=settings.log_level)

app.include_router(status_router.router)
app.include_router(points_router.router)
app.include_router(live_router.router)
