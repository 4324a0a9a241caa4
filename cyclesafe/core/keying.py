from __future__ import annotations

import hashlib
import math
import re
from typing import Any, List, Optional

import orjson


_COORD_PAIR_RE = re.compile(r"^\s*-?\d{1,3}\.\d{3,},\s*-?\d{1,3}\.\d{3,}\s*$")


def _orjson_dumps(obj: Any) -> bytes:
    return orjson.dumps(
        obj,
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
    )


def stable_id(parts: List[str]) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update((p or "").encode("utf-8"))
        h.update(b"\x1f")
    return h.hexdigest()[:24]


def stable_id_for(prefix: str, obj: Any) -> str:
    """Deterministic id for any JSON-able object (key order does not matter)."""
    return stable_id([prefix, _orjson_dumps(obj).decode("utf-8")])


def geocode_cell(lat: float, lon: float, precision: int = 3) -> str:
    """
    Coarse bucket used to throttle reverse geocoding.

    Values are floored (not rounded) to `precision` decimals, so at the
    default of 3 a cell is ~110 m on a side.

    >>> geocode_cell(-37.8136, 144.9631)
    '-37.814_144.963'
    """
    f = 10 ** precision
    latc = math.floor(lat * f) / f
    lonc = math.floor(lon * f) / f
    return f"{latc:.{precision}f}_{lonc:.{precision}f}"


def looks_like_coords(val: Optional[str]) -> bool:
    """True for strings like "-37.81360, 144.96310" that are not real addresses."""
    if not val:
        return False
    return bool(_COORD_PAIR_RE.match(val))
