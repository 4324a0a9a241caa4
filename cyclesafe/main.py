# cyclesafe/main.py
from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/cyclesafe/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from cyclesafe.core.errors import ConfigurationError
from cyclesafe.core.settings import settings
from cyclesafe.core.storage import SqliteKeyValueStore, connect_sqlite
from cyclesafe.api import api_router

from cyclesafe.services.aggregator import AlertAggregator, AlertSignals
from cyclesafe.services.classifier import GeospatialClassifier
from cyclesafe.services.feeds import VicFeeds
from cyclesafe.services.geocoding import ReverseGeocoder
from cyclesafe.services.location_tracker import LocationTracker
from cyclesafe.services.position import PushedPositionSource
from cyclesafe.services.weather_advisories import WeatherAdvisories

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CycleSafe Alerts", version="1.0.0")

# ── Compression (must be added before CORS) ──
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        # Capacitor / iOS
        "capacitor://localhost",
        "ionic://localhost",

        # Local web dev
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# Components
# ──────────────────────────────────────────────────────────────

# Shared key/value store (rw), SQLite, local to the instance
_store = SqliteKeyValueStore(connect_sqlite(settings.store_db_path))

_signals = AlertSignals()
_position_source = PushedPositionSource()

_tracker = LocationTracker(
    source=_position_source,
    store=_store,
    geocoder=ReverseGeocoder.from_settings(),
)
_classifier = GeospatialClassifier(feeds=VicFeeds(store=_store))
_aggregator = AlertAggregator(store=_store, signals=_signals)
_weather = WeatherAdvisories(store=_store, signals=_signals)

# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_store():
    return _store


def provide_signals() -> AlertSignals:
    return _signals


def provide_position_source() -> PushedPositionSource:
    return _position_source


def provide_tracker() -> LocationTracker:
    return _tracker


def provide_classifier() -> GeospatialClassifier:
    return _classifier


def provide_weather() -> WeatherAdvisories:
    return _weather


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from cyclesafe.api import alerts as alerts_api
from cyclesafe.api import incidents as incidents_api
from cyclesafe.api import location as location_api
from cyclesafe.api import weather as weather_api

# Location
app.dependency_overrides[location_api.get_location_tracker] = provide_tracker
app.dependency_overrides[location_api.get_position_source] = provide_position_source

# Incidents
app.dependency_overrides[incidents_api.get_classifier] = provide_classifier
app.dependency_overrides[incidents_api.get_location_tracker] = provide_tracker

# Alerts
app.dependency_overrides[alerts_api.get_store] = provide_store
app.dependency_overrides[alerts_api.get_alert_signals] = provide_signals

# Weather
app.dependency_overrides[weather_api.get_weather_advisories] = provide_weather

# Routes
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Startup / shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    _tracker.start()
    try:
        _aggregator.start()
    except ConfigurationError as e:
        logger.warning(f"[app] alert aggregator not started: {e}")


@app.on_event("shutdown")
async def shutdown():
    logger.info("[app] Shutting down, stopping background work")
    _aggregator.stop()
    _tracker.stop()
    try:
        _store.close()
    except Exception as e:
        logger.warning(f"[app] Error closing store: {e}")
