"""
test_location_tracker.py: position polling, snapshot publishing and
geocode throttling.

Covers:
    • geocode once per cell, again on cell change, never twice in flight
    • position failures keep the last fix and update permission
    • saved state restore (coordinate-like addresses rejected)
    • wait_for_first_fix, subscribe, stop
    • PushedPositionSource semantics

Run with:
    pytest tests/test_location_tracker.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from cyclesafe.core.contracts import Coordinate
from cyclesafe.core.storage import (
    ADDRESS_KEY,
    COORDS_KEY,
    LAST_GEOCODE_CELL_KEY,
    MemoryKeyValueStore,
)
from cyclesafe.services.location_tracker import LocationTracker
from cyclesafe.services.position import PositionError, PushedPositionSource


class _ScriptedSource:
    """Returns the scripted fixes in order, repeating the last one."""

    def __init__(self, *fixes, permission="granted"):
        self.fixes = list(fixes)
        self.perm = permission

    async def permission(self):
        return self.perm

    async def current_position(self, *, timeout_s, max_age_s, high_accuracy=True):
        item = self.fixes.pop(0) if len(self.fixes) > 1 else self.fixes[0]
        if isinstance(item, Exception):
            raise item
        return Coordinate(lat=item[0], lon=item[1])


class _CountingGeocoder:
    def __init__(self, address="123 Swanston St, Melbourne VIC", gate=None):
        self.address = address
        self.gate = gate
        self.calls = []

    async def reverse(self, lat, lon):
        self.calls.append((lat, lon))
        if self.gate is not None:
            await self.gate.wait()
        return self.address


def _make_tracker(source, store=None, geocoder=None, refresh_s=0.01):
    return LocationTracker(
        source=source,
        store=store or MemoryKeyValueStore(),
        geocoder=geocoder,
        refresh_s=refresh_s,
        position_timeout_s=0.05,
        position_max_age_s=4,
        cell_precision=3,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Geocode throttling
# ═══════════════════════════════════════════════════════════════════════════

class TestGeocodeThrottling:
    def test_one_call_per_cell(self):
        source = _ScriptedSource((-37.8136, 144.9631), (-37.81361, 144.96311), (-37.8150, 144.9650))
        geocoder = _CountingGeocoder()
        store = MemoryKeyValueStore()
        tracker = _make_tracker(source, store=store, geocoder=geocoder)

        async def go():
            await tracker.tick()
            await tracker.wait_for_geocode()
            assert len(geocoder.calls) == 1

            await tracker.tick()
            await tracker.wait_for_geocode()
            assert len(geocoder.calls) == 1

            await tracker.tick()
            await tracker.wait_for_geocode()

        asyncio.run(go())
        assert len(geocoder.calls) == 2
        assert store.get_json(ADDRESS_KEY) == "123 Swanston St, Melbourne VIC"
        assert store.get_json(LAST_GEOCODE_CELL_KEY) != "-37.814_144.963"
        assert tracker.get_address() == "123 Swanston St, Melbourne VIC"
        assert tracker.get_snapshot().geocoding is False

    def test_same_cell_in_flight_not_duplicated(self):
        source = _ScriptedSource((-37.8136, 144.9631))

        async def go():
            geocoder = _CountingGeocoder(gate=asyncio.Event())
            tracker = _make_tracker(source, geocoder=geocoder)
            await tracker.tick()
            await tracker.tick()
            assert tracker.get_snapshot().geocoding is True
            geocoder.gate.set()
            await tracker.wait_for_geocode()
            return geocoder, tracker

        geocoder, tracker = asyncio.run(go())
        assert len(geocoder.calls) == 1
        assert tracker.get_snapshot().geocoding is False

    def test_new_cell_supersedes_in_flight_geocode(self):
        source = _ScriptedSource((-37.8136, 144.9631), (-37.9005, 145.1005))

        async def go():
            geocoder = _CountingGeocoder(gate=asyncio.Event())
            store = MemoryKeyValueStore()
            tracker = _make_tracker(source, store=store, geocoder=geocoder)
            await tracker.tick()
            await asyncio.sleep(0)
            await tracker.tick()
            geocoder.gate.set()
            await tracker.wait_for_geocode()
            return geocoder, store

        geocoder, store = asyncio.run(go())
        assert len(geocoder.calls) == 2
        assert store.get_json(LAST_GEOCODE_CELL_KEY) == "-37.901_145.100"

    def test_coordinate_like_address_rejected(self):
        source = _ScriptedSource((-37.8136, 144.9631))
        geocoder = _CountingGeocoder(address="-37.81360, 144.96310")
        store = MemoryKeyValueStore()
        tracker = _make_tracker(source, store=store, geocoder=geocoder)

        async def go():
            await tracker.tick()
            await tracker.wait_for_geocode()

        asyncio.run(go())
        assert tracker.get_address() is None
        assert store.get_json(ADDRESS_KEY) is None
        assert store.get_json(LAST_GEOCODE_CELL_KEY) is None

    def test_no_geocoder_means_no_address(self):
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)))
        asyncio.run(tracker.tick())
        snap = tracker.get_snapshot()
        assert snap.coords is not None
        assert snap.address is None
        assert snap.geocoding is False


# ═══════════════════════════════════════════════════════════════════════════
# Position failures and snapshots
# ═══════════════════════════════════════════════════════════════════════════

class TestSnapshots:
    def test_fix_persists_coords(self):
        store = MemoryKeyValueStore()
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)), store=store)
        asyncio.run(tracker.tick())
        assert store.get_json(COORDS_KEY) == {"lat": -37.8136, "lon": 144.9631}
        assert tracker.get_snapshot().last_updated > 0
        assert tracker.get_snapshot().permission == "granted"

    def test_permission_denied_keeps_last_fix(self):
        source = _ScriptedSource((-37.8136, 144.9631), PositionError("permission_denied"))
        tracker = _make_tracker(source)

        async def go():
            await tracker.tick()
            await tracker.tick()

        asyncio.run(go())
        snap = tracker.get_snapshot()
        assert snap.permission == "denied"
        assert snap.coords == Coordinate(lat=-37.8136, lon=144.9631)

    def test_timeout_publishes_without_coords(self):
        tracker = _make_tracker(_ScriptedSource(PositionError("timeout"), permission="prompt"))
        seen = []
        tracker.updates.subscribe(seen.append)

        asyncio.run(tracker.tick())

        assert len(seen) == 1
        assert seen[0].coords is None
        assert seen[0].permission == "prompt"

    def test_subscribe_delivers_current_snapshot(self):
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)))
        seen = []
        off = tracker.subscribe(seen.append)
        assert len(seen) == 1
        off()
        asyncio.run(tracker.tick())
        assert len(seen) == 1

    def test_snapshots_are_immutable(self):
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)))
        with pytest.raises(Exception):
            tracker.get_snapshot().address = "x"


# ═══════════════════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_start_restores_saved_state(self):
        store = MemoryKeyValueStore()
        store.set_json(COORDS_KEY, {"lat": -37.8, "lon": 144.9})
        store.set_json(ADDRESS_KEY, "-37.80000, 144.90000")
        tracker = _make_tracker(_ScriptedSource(PositionError("unavailable")), store=store, refresh_s=60)
        seen = []
        tracker.updates.subscribe(seen.append)

        async def go():
            tracker.start()
            snap = tracker.get_snapshot()
            tracker.stop()
            return snap

        snap = asyncio.run(go())
        assert snap.coords == Coordinate(lat=-37.8, lon=144.9)
        assert snap.address is None
        assert seen[0].coords is not None

    def test_start_ignores_malformed_saved_coords(self):
        store = MemoryKeyValueStore()
        store.set_json(COORDS_KEY, {"lat": "north"})
        tracker = _make_tracker(_ScriptedSource(PositionError("unavailable")), store=store, refresh_s=60)

        async def go():
            tracker.start()
            snap = tracker.get_snapshot()
            tracker.stop()
            return snap

        assert asyncio.run(go()).coords is None

    def test_wait_for_first_fix(self):
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)))

        async def go():
            tracker.start()
            try:
                return await tracker.wait_for_first_fix(timeout_s=2.0)
            finally:
                tracker.stop()

        assert asyncio.run(go()) == Coordinate(lat=-37.8136, lon=144.9631)

    def test_wait_for_first_fix_times_out(self):
        tracker = _make_tracker(_ScriptedSource(PositionError("unavailable")))

        async def go():
            tracker.start()
            try:
                return await tracker.wait_for_first_fix(timeout_s=0.05)
            finally:
                tracker.stop()

        assert asyncio.run(go()) is None

    def test_start_is_idempotent_and_stop_resets(self):
        tracker = _make_tracker(_ScriptedSource((-37.8136, 144.9631)), refresh_s=60)

        async def go():
            tracker.start()
            first = tracker._loop_task
            tracker.start()
            assert tracker._loop_task is first
            await asyncio.sleep(0.01)
            tracker.stop()
            assert not tracker.running

        asyncio.run(go())
        assert tracker.get_coords() is None


# ═══════════════════════════════════════════════════════════════════════════
# Pushed position source
# ═══════════════════════════════════════════════════════════════════════════

class TestPushedPositionSource:
    def test_recent_push_is_returned(self):
        async def go():
            src = PushedPositionSource()
            src.push(-37.8, 144.9, 5.0)
            return await src.current_position(timeout_s=0.05, max_age_s=4)

        fix = asyncio.run(go())
        assert fix.lat == -37.8
        assert fix.accuracy == 5.0

    def test_no_push_is_unavailable(self):
        async def go():
            src = PushedPositionSource()
            await src.current_position(timeout_s=0.01, max_age_s=4)

        with pytest.raises(PositionError) as exc:
            asyncio.run(go())
        assert exc.value.code == "unavailable"

    def test_stale_push_times_out(self):
        async def go():
            src = PushedPositionSource()
            src.push(-37.8, 144.9)
            await src.current_position(timeout_s=0.01, max_age_s=-1)

        with pytest.raises(PositionError) as exc:
            asyncio.run(go())
        assert exc.value.code == "timeout"

    def test_denied(self):
        async def go():
            src = PushedPositionSource()
            src.set_permission("denied")
            await src.current_position(timeout_s=0.01, max_age_s=4)

        with pytest.raises(PositionError) as exc:
            asyncio.run(go())
        assert exc.value.code == "permission_denied"

    def test_waiter_receives_next_push(self):
        async def go():
            src = PushedPositionSource()
            waiter = asyncio.ensure_future(src.current_position(timeout_s=1.0, max_age_s=4))
            await asyncio.sleep(0)
            src.push(-37.9, 145.0)
            return await waiter, await src.permission()

        fix, perm = asyncio.run(go())
        assert fix.lat == -37.9
        assert perm == "granted"
