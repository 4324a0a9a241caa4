from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
# Location
# ──────────────────────────────────────────────────────────────

PermissionState = Literal["granted", "denied", "prompt", "unknown"]


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float
    accuracy: Optional[float] = None  # metres


class LocationSnapshot(BaseModel):
    """
    Last-known position of the device.

    Snapshots are immutable: every change produces a new instance, so a
    subscriber never observes a half-updated coordinate/timestamp pair.
    """

    model_config = ConfigDict(frozen=True)

    coords: Optional[Coordinate] = None
    address: Optional[str] = None   # human address only, never "lat, lon"
    geocoding: bool = False
    last_updated: int = 0           # epoch ms of the last successful fix
    permission: PermissionState = "unknown"


# ──────────────────────────────────────────────────────────────
# Classified incidents (hazard feeds)
# ──────────────────────────────────────────────────────────────

Priority = Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
Category = Literal["WEATHER", "TRAFFIC", "INFRA", "SAFETY"]

PRIORITY_WEIGHT: Dict[str, int] = {"CRITICAL": 3, "HIGH": 2, "MEDIUM": 1, "LOW": 0}


class ClassifiedIncident(BaseModel):
    id: str
    title: str
    description: str
    location_label: str
    timestamp_ms: int
    priority: Priority = "MEDIUM"
    category: Category = "SAFETY"
    distance_km: Optional[float] = None


class ClassifiedIncidents(BaseModel):
    nearby: List[ClassifiedIncident] = Field(default_factory=list)
    extended: Dict[Category, List[ClassifiedIncident]] = Field(default_factory=dict)


class FeedCache(BaseModel):
    fetched_at: float                           # epoch seconds
    raw_feed_a: Optional[Dict[str, Any]] = None  # events
    raw_feed_b: Optional[Dict[str, Any]] = None  # impact areas


# ──────────────────────────────────────────────────────────────
# Alerts (backend clusters + local ephemeral records)
# ──────────────────────────────────────────────────────────────


class AlertRecord(BaseModel):
    # Stored and served with the backend's camelCase names. Unknown keys are
    # carried through untouched so newer backends don't lose data here.
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    cluster_id: str = Field(alias="clusterId")
    incident_type: str = Field(default="unknown", alias="incidentType")
    severity: Optional[str] = None  # "low" | "medium" | "high" from our producers
    expires_at: float = Field(alias="expiresAt")  # epoch seconds
    ackable: bool = True
    description: Optional[str] = None
    photo_urls: Optional[List[str]] = Field(default=None, alias="photoUrls")
    address: Optional[str] = None

    status: Optional[str] = None
    report_count: Optional[int] = Field(default=None, alias="reportCount")
    lat: Optional[float] = None
    lng: Optional[float] = None
    ack_count: Optional[int] = Field(default=None, alias="ackCount")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class BackendAlertsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = False
    server_now: Optional[float] = Field(default=None, alias="serverNow")
    alerts: List[Dict[str, Any]] = Field(default_factory=list)


class AlertsState(BaseModel):
    alerts: List[AlertRecord] = Field(default_factory=list)
    total: int = 0
    updated_at: Optional[int] = None  # epoch ms


# ──────────────────────────────────────────────────────────────
# Weather risk (consumed from the backend risk endpoint)
# ──────────────────────────────────────────────────────────────

RiskText = Literal["Low Risk", "Medium Risk", "High Risk"]


class WeatherReading(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wind_speed: Optional[float] = Field(default=None, alias="windSpeed")         # m/s
    precipitation: Optional[float] = None                                         # mm/h
    temperature: Optional[float] = None
