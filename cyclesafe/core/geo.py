"""
Geometry helpers for hazard features.

Coordinates follow GeoJSON order on the way in ([lng, lat]) and come out as
(lat, lon) tuples, matching the rest of CycleSafe.
"""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

LatLon = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


def _safe_float(x: Any) -> Optional[float]:
    try:
        f = float(x)
        if math.isfinite(f):
            return f
    except Exception:
        return None
    return None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lon2 - lon1)
    h = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


# ══════════════════════════════════════════════════════════════
# Centroids
# ══════════════════════════════════════════════════════════════

def _position(p: Any) -> Optional[LatLon]:
    if not isinstance(p, (list, tuple)) or len(p) < 2:
        return None
    lng = _safe_float(p[0])
    lat = _safe_float(p[1])
    if lat is None or lng is None:
        return None
    return (lat, lng)


def _positions(coords: Any) -> List[LatLon]:
    out: List[LatLon] = []
    if not isinstance(coords, list):
        return out
    for p in coords:
        pos = _position(p)
        if pos is not None:
            out.append(pos)
    return out


def _ring(coords: Any) -> List[LatLon]:
    pts = _positions(coords)
    # Closed rings repeat the first vertex; count it once.
    if len(pts) > 1 and pts[0] == pts[-1]:
        pts = pts[:-1]
    return pts


def _mean(points: List[LatLon]) -> Optional[LatLon]:
    if not points:
        return None
    n = float(len(points))
    return (sum(p[0] for p in points) / n, sum(p[1] for p in points) / n)


def centroid(geom: Optional[Dict[str, Any]]) -> Optional[LatLon]:
    """
    Representative point of a GeoJSON geometry, or None.

    Polygons use the plain average of their outer ring's vertices rather
    than an area-weighted centroid. MultiPolygons use the first polygon's
    outer ring. GeometryCollections average the centroids of the children
    that resolve.
    """
    if not isinstance(geom, dict):
        return None

    t = geom.get("type")
    coords = geom.get("coordinates")

    if t == "Point":
        return _position(coords)

    if t in ("MultiPoint", "LineString"):
        return _mean(_positions(coords))

    if t == "MultiLineString" and isinstance(coords, list):
        pts: List[LatLon] = []
        for line in coords:
            pts.extend(_positions(line))
        return _mean(pts)

    if t == "Polygon" and isinstance(coords, list) and coords:
        return _mean(_ring(coords[0]))

    if t == "MultiPolygon" and isinstance(coords, list) and coords:
        first = coords[0]
        if isinstance(first, list) and first:
            return _mean(_ring(first[0]))
        return None

    if t == "GeometryCollection":
        children = geom.get("geometries")
        if not isinstance(children, list):
            return None
        centres = [c for c in (centroid(g) for g in children) if c is not None]
        return _mean(centres)

    return None
