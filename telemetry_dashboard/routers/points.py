from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from telemetry_dashboard.http_utils import scheduler_or_error
from telemetry_dashboard.services.broadcast import point_snapshot
from telemetry_dashboard.services.points import Point
from telemetry_dashboard.services.scheduler import PollScheduler

router = APIRouter(prefix="/v1")


def _point_or_404(running: PollScheduler, name: str) -> Point:
    point = running.registry.get(name)
    if point is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown point {name}")
    return point


@router.get("/points")
async def list_points(running: PollScheduler = Depends(scheduler_or_error)) -> List[Dict[str, Any]]:
    return [point_snapshot(point) for point in running.registry]


@router.get("/points/{name}")
async def get_point(name: str, running: PollScheduler = Depends(scheduler_or_error)) -> Dict[str, Any]:
    return point_snapshot(_point_or_404(running, name))


@router.post("/points/{name}/refresh")
async def refresh_point(name: str, running: PollScheduler = Depends(scheduler_or_error)) -> Dict[str, Any]:
    point = _point_or_404(running, name)
    await running.tick(point.name)
    return point_snapshot(point)


@router.post("/notifications/reset")
async def reset_notifications(running: PollScheduler = Depends(scheduler_or_error)) -> Dict[str, int]:
    return {"reset": running.reset_notifications()}
