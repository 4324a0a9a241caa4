"""
Local weather advisories, one per ~110 m cell.

These are the "local ephemeral records" the alert aggregator merges with the
backend clusters. They live under cs.weather.alerts as a plain JSON list and
every rewrite fires `signals.local_records_changed` so the aggregator picks
the change up without waiting for its next poll.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, List, Optional

from cyclesafe.core.contracts import AlertRecord, RiskText, WeatherReading
from cyclesafe.core.keying import geocode_cell
from cyclesafe.core.settings import settings
from cyclesafe.core.storage import WEATHER_ALERTS_KEY, KeyValueStore
from cyclesafe.services.aggregator import AlertSignals, parse_records

logger = logging.getLogger(__name__)


def weather_cluster_id(lat: float, lon: float) -> str:
    return f"weather#{geocode_cell(lat, lon, 3)}"


def _half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def describe_conditions(weather: Optional[WeatherReading]) -> str:
    if weather is None:
        return ""
    parts: List[str] = []
    if weather.wind_speed is not None:
        parts.append(f"winds (~{_half_up(weather.wind_speed)} m/s)")
    if weather.precipitation is not None:
        parts.append(f"rain ({weather.precipitation:.1f} mm/h)")
    return " or ".join(parts)


class WeatherAdvisories:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        signals: AlertSignals,
        high_ttl_min: int | None = None,
        medium_ttl_min: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.signals = signals
        self.high_ttl_min = int(high_ttl_min or settings.weather_high_ttl_min)
        self.medium_ttl_min = int(medium_ttl_min or settings.weather_medium_ttl_min)
        self._clock = clock

    def list(self) -> List[AlertRecord]:
        return parse_records(self.store.get_json(WEATHER_ALERTS_KEY), origin="weather")

    def _save(self, records: List[AlertRecord]) -> None:
        self.store.set_json(WEATHER_ALERTS_KEY, [r.to_wire() for r in records])
        self.signals.local_records_changed.publish(None)

    def upsert(self, record: AlertRecord) -> None:
        records = self.list()
        for i, existing in enumerate(records):
            if existing.cluster_id == record.cluster_id:
                records[i] = record
                break
        else:
            records.append(record)
        self._save(records)

    def remove(self, cluster_id: str) -> None:
        records = [r for r in self.list() if r.cluster_id != cluster_id]
        self._save(records)

    def publish_from_risk(
        self,
        risk_text: RiskText,
        address: str,
        lat: float,
        lon: float,
        weather: Optional[WeatherReading] = None,
    ) -> Optional[AlertRecord]:
        """
        Turn a risk reading at (lat, lon) into an advisory for that cell.

        "Low Risk" clears the cell's advisory and returns None; medium and high
        risk upsert one with a severity-specific TTL and wording.
        """
        cluster_id = weather_cluster_id(lat, lon)

        if risk_text == "Low Risk":
            self.remove(cluster_id)
            logger.debug("[weather] cleared %s", cluster_id)
            return None

        details = describe_conditions(weather)
        if risk_text == "High Risk":
            severity = "high"
            ttl_min = self.high_ttl_min
            description = (
                f"Severe Weather Warning. {details or 'Strong winds or heavy rain'}. "
                "Reduced visibility and hazardous conditions."
            )
        else:
            severity = "medium"
            ttl_min = self.medium_ttl_min
            description = f"Weather Advisory. {details or 'Gusty winds or rain expected'}. Use caution while cycling."

        record = AlertRecord(
            cluster_id=cluster_id,
            incident_type="severe_weather",
            description=description,
            severity=severity,
            expires_at=float(int(self._clock()) + ttl_min * 60),
            ackable=False,
            photo_urls=[],
            address=address,
        )
        self.upsert(record)
        logger.info("[weather] %s advisory for %s (%d min)", severity, cluster_id, ttl_min)
        return record
