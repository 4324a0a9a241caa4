from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cyclesafe.core.contracts import LocationSnapshot, PermissionState
from cyclesafe.services.location_tracker import LocationTracker
from cyclesafe.services.position import PushedPositionSource

router = APIRouter(prefix="/location")


def get_location_tracker() -> LocationTracker:
    raise RuntimeError("LocationTracker must be provided by app dependency override")


def get_position_source() -> PushedPositionSource:
    raise RuntimeError("position source must be provided by app dependency override")


class FixRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)


class PermissionRequest(BaseModel):
    state: PermissionState


@router.get("", response_model=LocationSnapshot)
def location_snapshot(tracker: LocationTracker = Depends(get_location_tracker)) -> LocationSnapshot:
    return tracker.get_snapshot()


@router.post("/fix")
async def location_fix(
    req: FixRequest,
    source: PushedPositionSource = Depends(get_position_source),
):
    fix = source.push(req.lat, req.lon, req.accuracy)
    return {"ok": True, "coords": fix.model_dump()}


@router.post("/permission")
async def location_permission(
    req: PermissionRequest,
    source: PushedPositionSource = Depends(get_position_source),
):
    source.set_permission(req.state)
    return {"ok": True, "permission": req.state}
