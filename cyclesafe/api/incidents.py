from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from cyclesafe.core.contracts import ClassifiedIncidents
from cyclesafe.core.errors import bad_request
from cyclesafe.services.classifier import GeospatialClassifier
from cyclesafe.services.location_tracker import LocationTracker

router = APIRouter(prefix="/incidents")


def get_classifier() -> GeospatialClassifier:
    raise RuntimeError("GeospatialClassifier must be provided by app dependency override")


def get_location_tracker() -> LocationTracker:
    raise RuntimeError("LocationTracker must be provided by app dependency override")


@router.get("", response_model=ClassifiedIncidents)
async def incidents(
    lat: Optional[float] = Query(default=None, ge=-90, le=90),
    lon: Optional[float] = Query(default=None, ge=-180, le=180),
    classifier: GeospatialClassifier = Depends(get_classifier),
    tracker: LocationTracker = Depends(get_location_tracker),
) -> ClassifiedIncidents:
    if lat is None or lon is None:
        if lat is not None or lon is not None:
            bad_request("bad_coords", "lat and lon must be given together")
        coords = tracker.get_coords()
        if coords is None:
            bad_request("no_location", "no lat/lon given and no device fix yet")
        lat, lon = coords.lat, coords.lon

    return await classifier.fetch_classified_incidents(lat, lon)
