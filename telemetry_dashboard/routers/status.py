from __future__ import annotations

import os
import time
from typing import Dict

import psutil
from fastapi import APIRouter, Depends, Request

from telemetry_dashboard.config import Settings, get_settings
from telemetry_dashboard.http_utils import scheduler

router = APIRouter()


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}


@router.get("/v1/status")
async def status_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> Dict[str, object]:
    uptime = int(time.monotonic() - getattr(request.app.state, "started_at", time.monotonic()))
    process = psutil.Process(os.getpid())
    running = scheduler(request.app)
    points = list(running.registry) if running else []
    return {
        "service": settings.service_name,
        "service_version": settings.service_version,
        "uptime_seconds": uptime,
        "cpu_percent": process.cpu_percent(interval=0.0),
        "memory_rss_bytes": process.memory_info().rss,
        "scheduler_running": bool(running and running.running),
        "point_count": len(points),
        "subscriber_count": len(running.distributor) if running else 0,
        "keep_history": settings.keep_history,
        "points": {
            point.name: {
                "last_tick_at": point.last_tick_at,
                "last_error": point.last_error,
                "ticks_in_flight": point.ticks_in_flight,
                "overlapping_ticks": point.overlapping_ticks,
                "skipped_ticks": point.skipped_ticks,
                "subscribed": point.source.connected if point.is_push else None,
            }
            for point in points
        },
    }
