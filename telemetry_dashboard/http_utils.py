from __future__ import annotations

from fastapi import HTTPException, Request, status
from fastapi.applications import FastAPI

from telemetry_dashboard.services.scheduler import PollScheduler


def scheduler(app: FastAPI) -> PollScheduler | None:
    return getattr(app.state, "scheduler", None)


def scheduler_or_error(request: Request) -> PollScheduler:
    running = scheduler(request.app)
    if running is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Poll scheduler unavailable",
        )
    return running
