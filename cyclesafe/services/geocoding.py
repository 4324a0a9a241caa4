"""
Reverse geocoding through the CycleSafe backend lambda (mode=geocode).

The endpoint returns {"address": "..."}; anything that is missing, empty or
just a formatted coordinate pair is treated as "no address".
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from cyclesafe.core.keying import looks_like_coords
from cyclesafe.core.settings import settings

logger = logging.getLogger(__name__)


class ReverseGeocoder:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_s = float(timeout_s or settings.geocode_timeout_s)
        self._transport = transport

    @classmethod
    def from_settings(cls) -> Optional["ReverseGeocoder"]:
        """None when GEOCODE_BASE_URL is unset: geocoding is disabled, not defaulted."""
        if not settings.geocode_base_url:
            logger.info("[geocode] GEOCODE_BASE_URL not set; addresses disabled")
            return None
        return cls(settings.geocode_base_url)

    async def reverse(self, lat: float, lon: float) -> Optional[str]:
        params = {"mode": "geocode", "lat": str(lat), "lon": str(lon)}
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=transport) as client:
                resp = await client.get(self.base_url, params=params, headers={"Cache-Control": "no-store"})
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("[geocode] HTTP %d for %.5f,%.5f", exc.response.status_code, lat, lon)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"[geocode] failed for {lat:.5f},{lon:.5f}: {exc}")
            return None

        addr = data.get("address") if isinstance(data, dict) else None
        if not isinstance(addr, str):
            return None
        addr = addr.strip()
        if not addr or looks_like_coords(addr):
            return None
        return addr
