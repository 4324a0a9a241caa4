# cyclesafe/services/normalize.py
"""
Provider feature → ClassifiedIncident normalization.

Emergency Victoria publishes two GeoJSON documents whose property bags do
not share a schema:
  - warnings / impact areas: CAP-ish fields (headline, warningLevel,
    alertLevel, urgency, ...)
  - incidents: operational fields (name, location, category1, category2,
    status, ...)

Each bag is first recognized into a tagged `FeatureProps` (shape =
warning | incident | unknown). Normalization is then a pure function of the
recognized props, the feature centroid and "now". Priority and category are
looked up in versioned keyword tables so they can be tested and revised
without touching the fallback logic.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from cyclesafe.core.contracts import Category, ClassifiedIncident, Priority
from cyclesafe.core.geo import LatLon
from cyclesafe.core.keying import stable_id_for

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# Keyword tables
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class KeywordTable:
    """Ordered (label, keywords) rules; the first rule with a whole-word hit wins."""

    version: str
    rules: Tuple[Tuple[str, Tuple[str, ...]], ...]

    def __post_init__(self) -> None:
        compiled = tuple(
            (label, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in kws) + r")\b", re.I))
            for label, kws in self.rules
        )
        object.__setattr__(self, "_compiled", compiled)

    def match(self, text: str) -> Optional[str]:
        if not text:
            return None
        for label, rx in self._compiled:  # type: ignore[attr-defined]
            if rx.search(text):
                return label
        return None


PRIORITY_TABLE = KeywordTable(
    version="vic.priority.v1",
    rules=(
        ("CRITICAL", ("emergency warning", "emergency", "evacuate", "evacuation", "extreme")),
        ("HIGH", ("watch and act", "watch", "act", "responding", "going", "severe", "high", "major")),
        ("MEDIUM", ("advice", "moderate", "medium", "not yet under control")),
        ("LOW", ("under control", "controlled", "safe", "minor", "low", "complete", "contained")),
    ),
)

CATEGORY_TABLE = KeywordTable(
    version="vic.category.v1",
    rules=(
        ("WEATHER", ("flood", "flooding", "storm", "weather", "wind", "rain", "thunder",
                     "thunderstorm", "hail", "heat", "heatwave", "cold", "snow")),
        ("TRAFFIC", ("traffic", "road", "incident", "crash", "collision", "accident", "vehicle")),
        ("INFRA", ("works", "roadworks", "maintenance", "infrastructure", "closure",
                   "power", "outage", "tree down", "building damage")),
        ("SAFETY", ("fire", "bushfire", "grass fire", "burn", "hazmat", "hazardous material",
                    "health", "public", "emergency", "rescue", "medical", "smoke")),
    ),
)

DEFAULT_PRIORITY: Priority = "MEDIUM"
DEFAULT_CATEGORY: Category = "SAFETY"
DEFAULT_TITLE = "Incident"
DEFAULT_DESCRIPTION = "Stay informed and follow official guidance."
DEFAULT_LOCATION = "Victoria"


# ══════════════════════════════════════════════════════════════
# Recognized provider shapes
# ══════════════════════════════════════════════════════════════

ShapeKind = Literal["warning", "incident", "unknown"]

_WARNING_MARKERS = ("headline", "warningLevel", "alertLevel", "urgency")
_INCIDENT_MARKERS = ("category1", "category2", "incidentType")

_ID_KEYS = ("id", "sourceId", "eventId", "incidentNo")
_LEVEL_KEYS = ("warningLevel", "alertLevel", "status", "category2", "severity", "priority", "urgency")
_CATEGORY_KEYS = ("category", "category1", "category2", "eventCategory", "type", "hazard")
_LOCATION_KEYS = ("location", "locality", "area", "near", "municipality", "lga")
_DESCRIPTION_KEYS = ("description", "message", "instruction", "advice", "longDescription")
_TIMESTAMP_KEYS = ("updated", "published", "sent", "created", "lastUpdateDateTime", "originDateTime")


def _text(x: Any) -> Optional[str]:
    if x is None or isinstance(x, (dict, list)):
        return None
    s = str(x).strip()
    return s or None


def _first(props: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for k in keys:
        v = _text(props.get(k))
        if v:
            return v
    return None


def _all(props: Dict[str, Any], keys: Sequence[str]) -> List[str]:
    return [v for v in (_text(props.get(k)) for k in keys) if v]


class FeatureProps(BaseModel):
    """A provider property bag reduced to the fields normalization reads."""

    model_config = ConfigDict(frozen=True)

    shape: ShapeKind = "unknown"
    source_id: Optional[str] = None
    headline: Optional[str] = None
    name: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    level_texts: List[str] = Field(default_factory=list)
    category_texts: List[str] = Field(default_factory=list)
    timestamp_raw: Any = None


def recognize_properties(props: Any, feature_id: Any = None) -> FeatureProps:
    if not isinstance(props, dict):
        props = {}

    if any(_text(props.get(k)) for k in _WARNING_MARKERS):
        shape: ShapeKind = "warning"
    elif any(_text(props.get(k)) for k in _INCIDENT_MARKERS):
        shape = "incident"
    else:
        shape = "unknown"

    if shape == "warning":
        headline = _first(props, ("headline", "title"))
        name = _first(props, ("name", "eventName", "sourceTitle"))
    elif shape == "incident":
        headline = _first(props, ("title",))
        name = _first(props, ("name", "eventName", "incidentName"))
    else:
        headline = _first(props, ("headline", "title"))
        name = _first(props, ("name", "eventName", "summary"))

    ts_raw: Any = None
    for k in _TIMESTAMP_KEYS + ("lastUpdatedDt",):
        v = props.get(k)
        if v not in (None, ""):
            ts_raw = v
            break

    return FeatureProps(
        shape=shape,
        source_id=_text(feature_id) or _first(props, _ID_KEYS),
        headline=headline,
        name=name,
        location=_first(props, _LOCATION_KEYS),
        description=_first(props, _DESCRIPTION_KEYS),
        level_texts=_all(props, _LEVEL_KEYS),
        category_texts=_all(props, _CATEGORY_KEYS),
        timestamp_raw=ts_raw,
    )


# ══════════════════════════════════════════════════════════════
# Field resolution
# ══════════════════════════════════════════════════════════════

def priority_for(fp: FeatureProps) -> Priority:
    hit = PRIORITY_TABLE.match(" | ".join(fp.level_texts))
    return hit or DEFAULT_PRIORITY  # type: ignore[return-value]


def category_for(fp: FeatureProps) -> Category:
    for text in fp.category_texts:
        hit = CATEGORY_TABLE.match(text)
        if hit:
            return hit  # type: ignore[return-value]
    return DEFAULT_CATEGORY


def title_for(fp: FeatureProps) -> str:
    if fp.headline:
        return fp.headline
    if fp.name and fp.location:
        return f"{fp.name} - {fp.location}"
    if fp.name:
        return fp.name
    if fp.category_texts:
        return fp.category_texts[0]
    return DEFAULT_TITLE


def location_label_for(fp: FeatureProps, centre: Optional[LatLon]) -> str:
    if fp.location:
        return fp.location
    if centre is not None:
        return f"{centre[0]:.4f}, {centre[1]:.4f}"
    return DEFAULT_LOCATION


def parse_timestamp_ms(raw: Any) -> Optional[int]:
    """ISO 8601, VIC "DD/MM/YYYY HH:MM:SS" (taken as UTC) or epoch millis."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw) if raw > 0 else None

    t = str(raw).strip()
    if not t:
        return None
    if t.isdigit():
        return int(t)
    if t.endswith("Z"):
        t = t[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(t)
    except ValueError:
        try:
            dt = datetime.strptime(t, "%d/%m/%Y %H:%M:%S")
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def incident_id_for(fp: FeatureProps, title: str, geometry: Any) -> str:
    if fp.source_id:
        return fp.source_id
    return stable_id_for("vic", {"title": title, "geometry": geometry})


# ══════════════════════════════════════════════════════════════
# Entry point
# ══════════════════════════════════════════════════════════════

def normalize_feature(
    feature: Dict[str, Any],
    centre: Optional[LatLon],
    *,
    now_ms: int,
    distance_km: Optional[float] = None,
) -> ClassifiedIncident:
    fp = recognize_properties(feature.get("properties"), feature.get("id"))
    title = title_for(fp)
    return ClassifiedIncident(
        id=incident_id_for(fp, title, feature.get("geometry")),
        title=title,
        description=fp.description or DEFAULT_DESCRIPTION,
        location_label=location_label_for(fp, centre),
        timestamp_ms=parse_timestamp_ms(fp.timestamp_raw) or now_ms,
        priority=priority_for(fp),
        category=category_for(fp),
        distance_km=distance_km,
    )
