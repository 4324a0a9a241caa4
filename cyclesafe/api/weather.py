from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cyclesafe.core.contracts import RiskText, WeatherReading
from cyclesafe.services.weather_advisories import WeatherAdvisories

router = APIRouter(prefix="/weather")


def get_weather_advisories() -> WeatherAdvisories:
    raise RuntimeError("WeatherAdvisories must be provided by app dependency override")


class RiskRequest(BaseModel):
    risk_text: RiskText
    address: str = ""
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    weather: Optional[WeatherReading] = None


@router.post("/risk")
async def weather_risk(
    req: RiskRequest,
    advisories: WeatherAdvisories = Depends(get_weather_advisories),
):
    record = advisories.publish_from_risk(req.risk_text, req.address, req.lat, req.lon, req.weather)
    if record is None:
        return {"ok": True, "alert": None}
    return {"ok": True, "alert": record.to_wire()}
