# cyclesafe/services/feeds.py
"""
Emergency Victoria GeoJSON feeds behind one global TTL cache.

The feeds are not location-scoped on the wire (the whole state comes back),
so the cache is keyed by nothing but the store key: every caller, wherever
they are, shares the same unfiltered payloads until the TTL runs out.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from cyclesafe.core.contracts import FeedCache
from cyclesafe.core.settings import settings
from cyclesafe.core.storage import FEED_CACHE_KEY, KeyValueStore

logger = logging.getLogger(__name__)


def features_of(doc: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not isinstance(doc, dict):
        return []
    feats = doc.get("features")
    if not isinstance(feats, list):
        return []
    return [f for f in feats if isinstance(f, dict)]


class VicFeeds:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        events_url: str | None = None,
        impacts_url: str | None = None,
        cache_seconds: int | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.events_url = events_url or settings.vic_events_url
        self.impacts_url = impacts_url or settings.vic_impacts_url
        self.cache_seconds = int(cache_seconds if cache_seconds is not None else settings.feeds_cache_seconds)
        self.timeout_s = float(timeout_s or settings.feeds_timeout_s)
        self._transport = transport
        self._clock = clock

    def _read_cache(self) -> Optional[FeedCache]:
        raw = self.store.get_json(FEED_CACHE_KEY)
        if raw is None:
            return None
        try:
            return FeedCache.model_validate(raw)
        except ValidationError:
            logger.warning("[feeds] ignoring malformed feed cache")
            return None

    def _is_fresh(self, cache: FeedCache) -> bool:
        if self.cache_seconds <= 0:
            return False
        return (self._clock() - cache.fetched_at) <= float(self.cache_seconds)

    async def _fetch_json(self, client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
        r = await client.get(url, headers={"User-Agent": "cyclesafe/feeds", "Cache-Control": "no-store"})
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError(f"expected a FeatureCollection object from {url}")
        return data

    async def load(self) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """
        Return (events, impacts) raw documents, either may be None.

        Fresh cache → no network. Otherwise both feeds are fetched together;
        a feed that fails falls back to its previously cached copy, and the
        cache is only rewritten when both feeds came back.
        """
        cached = self._read_cache()
        if cached is not None and self._is_fresh(cached):
            return cached.raw_feed_a, cached.raw_feed_b

        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True, transport=transport) as client:
            events_res, impacts_res = await asyncio.gather(
                self._fetch_json(client, self.events_url),
                self._fetch_json(client, self.impacts_url),
                return_exceptions=True,
            )

        for name, res in (("events", events_res), ("impacts", impacts_res)):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                logger.warning(f"[feeds] vic_{name} failed: {res}")

        events = events_res if isinstance(events_res, dict) else None
        impacts = impacts_res if isinstance(impacts_res, dict) else None

        if events is not None and impacts is not None:
            self.store.set_json(
                FEED_CACHE_KEY,
                FeedCache(fetched_at=self._clock(), raw_feed_a=events, raw_feed_b=impacts).model_dump(),
            )
            return events, impacts

        if cached is not None:
            events = events if events is not None else cached.raw_feed_a
            impacts = impacts if impacts is not None else cached.raw_feed_b
        return events, impacts
