# cyclesafe/services/classifier.py
"""
Geospatial classification of hazard features around a coordinate.

Pipeline per call:
  1. raw feeds (global TTL cache, see feeds.py)
  2. centroid per feature (features without one are dropped)
  3. haversine distance → nearby (≤ R1) / extended (R1 < d ≤ R2) / discarded
  4. property normalization (normalize.py)
  5. dedup by stable id across both feeds, first occurrence wins
  6. each bucket sorted by priority desc, then recency desc

A malformed feature is skipped on its own; it never sinks the batch.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Set

from cyclesafe.core.contracts import (
    PRIORITY_WEIGHT,
    Category,
    ClassifiedIncident,
    ClassifiedIncidents,
)
from cyclesafe.core.geo import centroid, haversine_km
from cyclesafe.core.settings import settings
from cyclesafe.core.time import now_epoch_ms
from cyclesafe.services.feeds import VicFeeds, features_of
from cyclesafe.services.normalize import normalize_feature

logger = logging.getLogger(__name__)


def _sort_key(inc: ClassifiedIncident):
    return (-PRIORITY_WEIGHT[inc.priority], -inc.timestamp_ms)


class GeospatialClassifier:
    def __init__(
        self,
        *,
        feeds: VicFeeds,
        nearby_radius_km: float | None = None,
        extended_radius_km: float | None = None,
        clock_ms: Callable[[], int] = now_epoch_ms,
    ) -> None:
        self.feeds = feeds
        self.nearby_radius_km = float(nearby_radius_km or settings.nearby_radius_km)
        self.extended_radius_km = float(extended_radius_km or settings.extended_radius_km)
        if self.extended_radius_km < self.nearby_radius_km:
            raise ValueError("extended radius must not be smaller than the nearby radius")
        self._clock_ms = clock_ms

    async def fetch_classified_incidents(self, lat: float, lon: float) -> ClassifiedIncidents:
        events, impacts = await self.feeds.load()
        return self.classify([events, impacts], lat, lon)

    def classify(self, docs: List[object], lat: float, lon: float) -> ClassifiedIncidents:
        now_ms = self._clock_ms()
        seen: Set[str] = set()
        nearby: List[ClassifiedIncident] = []
        extended: Dict[Category, List[ClassifiedIncident]] = {}
        skipped = 0

        for doc in docs:
            for feat in features_of(doc):  # type: ignore[arg-type]
                try:
                    centre = centroid(feat.get("geometry"))
                    if centre is None:
                        skipped += 1
                        continue

                    d = haversine_km(lat, lon, centre[0], centre[1])
                    if d > self.extended_radius_km:
                        continue

                    inc = normalize_feature(feat, centre, now_ms=now_ms, distance_km=round(d, 3))
                except Exception as e:
                    skipped += 1
                    logger.debug("[classifier] skipping malformed feature: %s", e)
                    continue

                if inc.id in seen:
                    continue
                seen.add(inc.id)

                if d <= self.nearby_radius_km:
                    nearby.append(inc)
                else:
                    extended.setdefault(inc.category, []).append(inc)

        nearby.sort(key=_sort_key)
        for bucket in extended.values():
            bucket.sort(key=_sort_key)

        if skipped:
            logger.debug("[classifier] %d feature(s) skipped", skipped)
        logger.info(
            "[classifier] %.4f,%.4f → nearby=%d extended=%d",
            lat, lon, len(nearby), sum(len(v) for v in extended.values()),
        )
        return ClassifiedIncidents(nearby=nearby, extended=extended)
