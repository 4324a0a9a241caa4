"""
test_api.py: HTTP routes over injected components.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from cyclesafe.api import alerts as alerts_api
from cyclesafe.api import api_router
from cyclesafe.api import incidents as incidents_api
from cyclesafe.api import location as location_api
from cyclesafe.api import weather as weather_api
from cyclesafe.core.storage import ALERTS_LIST_KEY, ALERTS_TOTAL_KEY, MemoryKeyValueStore
from cyclesafe.services.aggregator import AlertSignals
from cyclesafe.services.classifier import GeospatialClassifier
from cyclesafe.services.feeds import VicFeeds
from cyclesafe.services.location_tracker import LocationTracker
from cyclesafe.services.position import PushedPositionSource
from cyclesafe.services.weather_advisories import WeatherAdvisories

FIRE_NEAR_MELBOURNE = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "id": "ev-1",
            "properties": {"category1": "Fire", "status": "Responding", "name": "Grass Fire"},
            "geometry": {"type": "Point", "coordinates": [144.97, -37.82]},
        }
    ],
}


class _Components:
    def __init__(self):
        self.store = MemoryKeyValueStore()
        self.signals = AlertSignals()
        self.source = PushedPositionSource()
        self.tracker = LocationTracker(
            source=self.source,
            store=self.store,
            refresh_s=60,
            position_timeout_s=0.05,
            position_max_age_s=4,
        )

        def feed(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("events.json"):
                return httpx.Response(200, json=FIRE_NEAR_MELBOURNE)
            return httpx.Response(200, json={"type": "FeatureCollection", "features": []})

        self.classifier = GeospatialClassifier(
            feeds=VicFeeds(
                store=self.store,
                events_url="https://feeds.test/events.json",
                impacts_url="https://feeds.test/impacts.json",
                transport=httpx.MockTransport(feed),
            ),
            nearby_radius_km=25,
            extended_radius_km=100,
        )
        self.weather = WeatherAdvisories(store=self.store, signals=self.signals)


@pytest.fixture
def components():
    return _Components()


@pytest.fixture
def client(components):
    app = FastAPI()
    app.include_router(api_router)
    app.dependency_overrides[location_api.get_location_tracker] = lambda: components.tracker
    app.dependency_overrides[location_api.get_position_source] = lambda: components.source
    app.dependency_overrides[incidents_api.get_classifier] = lambda: components.classifier
    app.dependency_overrides[incidents_api.get_location_tracker] = lambda: components.tracker
    app.dependency_overrides[alerts_api.get_store] = lambda: components.store
    app.dependency_overrides[alerts_api.get_alert_signals] = lambda: components.signals
    app.dependency_overrides[weather_api.get_weather_advisories] = lambda: components.weather
    with TestClient(app) as c:
        yield c


class TestHealth:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True


class TestLocationRoutes:
    def test_empty_snapshot(self, client):
        r = client.get("/location")
        assert r.status_code == 200
        body = r.json()
        assert body["coords"] is None
        assert body["permission"] == "unknown"

    def test_fix_then_tick(self, client, components):
        r = client.post("/location/fix", json={"lat": -37.8136, "lon": 144.9631, "accuracy": 12})
        assert r.status_code == 200
        assert r.json()["coords"]["accuracy"] == 12

        asyncio.run(components.tracker.tick())

        body = client.get("/location").json()
        assert body["coords"]["lat"] == -37.8136
        assert body["permission"] == "granted"

    def test_fix_out_of_range(self, client):
        r = client.post("/location/fix", json={"lat": 123, "lon": 144.9})
        assert r.status_code == 422

    def test_permission(self, client, components):
        r = client.post("/location/permission", json={"state": "denied"})
        assert r.status_code == 200
        assert asyncio.run(components.source.permission()) == "denied"

    def test_bad_permission_state(self, client):
        assert client.post("/location/permission", json={"state": "maybe"}).status_code == 422


class TestIncidentRoutes:
    def test_explicit_coords(self, client):
        r = client.get("/incidents", params={"lat": -37.8136, "lon": 144.9631})
        assert r.status_code == 200
        nearby = r.json()["nearby"]
        assert [i["id"] for i in nearby] == ["ev-1"]
        assert nearby[0]["priority"] == "HIGH"
        assert nearby[0]["category"] == "SAFETY"

    def test_no_coords_and_no_fix(self, client):
        r = client.get("/incidents")
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "no_location"

    def test_half_coords(self, client):
        r = client.get("/incidents", params={"lat": -37.8})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "bad_coords"

    def test_falls_back_to_tracker(self, client, components):
        components.source.push(-37.8136, 144.9631)
        asyncio.run(components.tracker.tick())
        r = client.get("/incidents")
        assert r.status_code == 200
        assert len(r.json()["nearby"]) == 1


class TestAlertRoutes:
    def test_list_reads_store(self, client, components):
        components.store.set_json(ALERTS_LIST_KEY, [{"clusterId": "c1", "expiresAt": 9_999_999_999}])
        components.store.set_json(ALERTS_TOTAL_KEY, 1)
        body = client.get("/alerts").json()
        assert body["total"] == 1
        assert body["alerts"][0]["clusterId"] == "c1"

    def test_refresh_and_foreground_fire_signals(self, client, components):
        fired = []
        components.signals.maybe_changed.subscribe(lambda _: fired.append("maybe"))
        components.signals.foreground.subscribe(lambda _: fired.append("fg"))
        assert client.post("/alerts/refresh").status_code == 200
        assert client.post("/alerts/foreground").status_code == 200
        assert fired == ["maybe", "fg"]


class TestWeatherRoutes:
    def test_high_then_low(self, client, components):
        r = client.post(
            "/weather/risk",
            json={
                "risk_text": "High Risk",
                "address": "Swanston St",
                "lat": -37.8136,
                "lon": 144.9631,
                "weather": {"windSpeed": 14, "precipitation": 6.0},
            },
        )
        assert r.status_code == 200
        alert = r.json()["alert"]
        assert alert["clusterId"] == "weather#-37.814_144.963"
        assert "winds (~14 m/s) or rain (6.0 mm/h)" in alert["description"]
        assert len(components.weather.list()) == 1

        r = client.post("/weather/risk", json={"risk_text": "Low Risk", "lat": -37.8136, "lon": 144.9631})
        assert r.json()["alert"] is None
        assert components.weather.list() == []

    def test_unknown_risk_text(self, client):
        r = client.post("/weather/risk", json={"risk_text": "Extreme", "lat": 0, "lon": 0})
        assert r.status_code == 422
