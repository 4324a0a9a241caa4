# cyclesafe/services/location_tracker.py
"""
Shared source of truth for "where is the rider" and "what is their address".

Every `refresh_s` seconds the tracker asks the position source for a fresh
high-accuracy fix, replaces the snapshot and publishes it. Reverse geocoding
is throttled to one request per ~110 m cell: a new request only starts when
the rider moves into a different cell (or no address is known yet), and it
cancels whatever geocode was still outstanding, so only the most recent
cell can ever commit an address.

Position failures (denied, timeout, unavailable) are never fatal: the last
known coordinate and address are kept, the permission state is updated and
the snapshot is still published.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable, Optional

from cyclesafe.core.channel import PublishChannel
from cyclesafe.core.contracts import Coordinate, LocationSnapshot, PermissionState
from cyclesafe.core.flight import SingleFlight
from cyclesafe.core.keying import geocode_cell, looks_like_coords
from cyclesafe.core.settings import settings
from cyclesafe.core.storage import (
    ADDRESS_KEY,
    COORDS_KEY,
    LAST_GEOCODE_CELL_KEY,
    KeyValueStore,
)
from cyclesafe.core.time import now_epoch_ms
from cyclesafe.services.geocoding import ReverseGeocoder
from cyclesafe.services.position import PositionError, PositionSource

logger = logging.getLogger(__name__)


class LocationTracker:
    def __init__(
        self,
        *,
        source: PositionSource,
        store: KeyValueStore,
        geocoder: Optional[ReverseGeocoder] = None,
        refresh_s: float | None = None,
        position_timeout_s: float | None = None,
        position_max_age_s: float | None = None,
        cell_precision: int | None = None,
    ) -> None:
        self.source = source
        self.store = store
        self.geocoder = geocoder
        self.refresh_s = float(refresh_s or settings.location_refresh_s)
        self.position_timeout_s = float(position_timeout_s or settings.position_timeout_s)
        self.position_max_age_s = float(position_max_age_s or settings.position_max_age_s)
        self.cell_precision = int(cell_precision or settings.geocode_cell_precision)

        self.updates: PublishChannel[LocationSnapshot] = PublishChannel("location")

        self._snap = LocationSnapshot()
        self._loop_task: Optional[asyncio.Task] = None
        self._geocode = SingleFlight("geocode")
        self._geocode_cell: Optional[str] = None  # cell of the in-flight geocode

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._snap = self._read_saved()
        self._publish()
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name="location-tracker")
        logger.info("[tracker] started (every %.1fs)", self.refresh_s)

    def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        self._geocode.cancel()
        self._geocode_cell = None
        self._snap = LocationSnapshot()
        logger.info("[tracker] stopped")

    async def _run(self) -> None:
        while True:
            started = time.monotonic()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[tracker] tick failed")
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, self.refresh_s - elapsed))

    # ──────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────

    def subscribe(self, fn: Callable[[LocationSnapshot], None]) -> Callable[[], None]:
        off = self.updates.subscribe(fn)
        try:
            fn(self._snap)
        except Exception:
            logger.exception("[tracker] subscriber failed on initial snapshot")
        return off

    def get_snapshot(self) -> LocationSnapshot:
        return self._snap

    def get_coords(self) -> Optional[Coordinate]:
        return self._snap.coords

    def get_address(self) -> Optional[str]:
        return self._snap.address

    async def wait_for_first_fix(self, timeout_s: float = 10.0) -> Optional[Coordinate]:
        if self._snap.coords is not None:
            return self._snap.coords

        fut: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_update(s: LocationSnapshot) -> None:
            if s.coords is not None and not fut.done():
                fut.set_result(s.coords)

        off = self.subscribe(on_update)
        try:
            return await asyncio.wait_for(fut, timeout=timeout_s)
        except asyncio.TimeoutError:
            return self.get_coords()
        finally:
            off()

    async def wait_for_geocode(self) -> None:
        """Block until the outstanding reverse geocode (if any) has settled."""
        await self._geocode.join()

    # ──────────────────────────────────────────────────────────────
    # Tick
    # ──────────────────────────────────────────────────────────────

    async def tick(self) -> None:
        permission = await self._query_permission()
        try:
            fix = await self.source.current_position(
                timeout_s=self.position_timeout_s,
                max_age_s=self.position_max_age_s,
                high_accuracy=True,
            )
        except PositionError as e:
            if e.code == "permission_denied":
                permission = "denied"
            logger.debug("[tracker] no fix: %s", e.code)
            self._update(permission=permission)
            return

        self._update(coords=fix, last_updated=now_epoch_ms(), permission=permission)
        self.store.set_json(COORDS_KEY, {"lat": fix.lat, "lon": fix.lon})
        self._maybe_geocode(fix)

    async def _query_permission(self) -> PermissionState:
        try:
            return await self.source.permission()
        except Exception as e:
            logger.debug("[tracker] permission query failed: %s", e)
            return "unknown"

    def _maybe_geocode(self, fix: Coordinate) -> None:
        if self.geocoder is None:
            return

        cell = geocode_cell(fix.lat, fix.lon, self.cell_precision)
        last = self.store.get_json(LAST_GEOCODE_CELL_KEY)
        if cell == last and self._snap.address:
            return
        if self._geocode.busy and self._geocode_cell == cell:
            return

        self._geocode_cell = cell
        self._update(geocoding=True)
        self._geocode.launch(self._run_geocode(fix, cell))

    async def _run_geocode(self, fix: Coordinate, cell: str) -> None:
        addr = await self.geocoder.reverse(fix.lat, fix.lon)  # type: ignore[union-attr]

        if addr and not looks_like_coords(addr):
            self.store.set_json(ADDRESS_KEY, addr)
            self.store.set_json(LAST_GEOCODE_CELL_KEY, cell)
            self._update(geocoding=False, address=addr)
        else:
            self._update(geocoding=False)
        self._geocode_cell = None

    # ──────────────────────────────────────────────────────────────
    # Snapshot plumbing
    # ──────────────────────────────────────────────────────────────

    def _update(self, **changes: Any) -> None:
        self._snap = self._snap.model_copy(update=changes)
        self._publish()

    def _publish(self) -> None:
        self.updates.publish(self._snap)

    def _read_saved(self) -> LocationSnapshot:
        coords: Optional[Coordinate] = None
        raw = self.store.get_json(COORDS_KEY)
        if isinstance(raw, dict):
            try:
                lat, lon = float(raw["lat"]), float(raw["lon"])
                if math.isfinite(lat) and math.isfinite(lon):
                    coords = Coordinate(lat=lat, lon=lon)
            except (KeyError, TypeError, ValueError):
                logger.warning("[tracker] ignoring malformed saved coords")

        address = self.store.get_json(ADDRESS_KEY)
        if not isinstance(address, str) or not address.strip() or looks_like_coords(address):
            address = None

        return LocationSnapshot(coords=coords, address=address)
