# cyclesafe/services/aggregator.py
"""
Canonical "active alerts" list.

Backend cluster records and locally stored ephemeral records (weather
advisories) are merged every `refresh_s` seconds, immediately on start, and
whenever one of the invalidation signals fires:
  - maybe_changed            something upstream may have new clusters
  - local_records_changed    a local producer rewrote its records
  - foreground               the app came back to the foreground

Merge rules (see `merge_alerts`): unexpired only, one record per cluster id
(larger expiresAt wins, first occurrence on a tie), newest expiry first.

A cycle that fails (network, bad payload) leaves the last good list in the
store untouched. A cycle superseded by a newer one is dropped silently.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from cyclesafe.core.channel import PublishChannel
from cyclesafe.core.contracts import AlertRecord, AlertsState, BackendAlertsPayload
from cyclesafe.core.errors import ConfigurationError
from cyclesafe.core.flight import SingleFlight
from cyclesafe.core.settings import settings
from cyclesafe.core.storage import (
    ALERTS_LIST_KEY,
    ALERTS_TOTAL_KEY,
    ALERTS_UPDATED_AT_KEY,
    WEATHER_ALERTS_KEY,
    KeyValueStore,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# Pure merge
# ══════════════════════════════════════════════════════════════

def merge_alerts(records: Iterable[AlertRecord], now: float) -> List[AlertRecord]:
    """
    Merge alert records from every source into the canonical list.

    - records with expires_at <= now are dropped
    - records without a cluster id are dropped
    - per cluster id the larger expires_at wins; on an exact tie the record
      seen first wins (callers pass backend records before local ones)
    - result is ordered by expires_at descending; the sort is stable, so
      equal expiries keep input order and the output is deterministic
    """
    by_id: Dict[str, AlertRecord] = {}
    for rec in records:
        if not rec.cluster_id:
            continue
        if not rec.expires_at > now:
            continue
        prev = by_id.get(rec.cluster_id)
        if prev is None or rec.expires_at > prev.expires_at:
            by_id[rec.cluster_id] = rec

    merged = list(by_id.values())
    merged.sort(key=lambda r: r.expires_at, reverse=True)
    return merged


def parse_records(items: Any, *, origin: str) -> List[AlertRecord]:
    """Validate records one by one; malformed entries are skipped, not fatal."""
    if not isinstance(items, list):
        if items is not None:
            logger.warning("[aggregator] %s records are not a list; ignoring", origin)
        return []

    out: List[AlertRecord] = []
    for item in items:
        try:
            out.append(AlertRecord.model_validate(item))
        except ValidationError as e:
            logger.debug("[aggregator] skipping malformed %s record: %s", origin, e.errors()[:1])
    return out


def read_alerts_state(store: KeyValueStore) -> AlertsState:
    records = parse_records(store.get_json(ALERTS_LIST_KEY), origin="stored")
    total = store.get_json(ALERTS_TOTAL_KEY)
    updated_at = store.get_json(ALERTS_UPDATED_AT_KEY)
    return AlertsState(
        alerts=records,
        total=int(total) if isinstance(total, int) else len(records),
        updated_at=int(updated_at) if isinstance(updated_at, (int, float)) else None,
    )


# ══════════════════════════════════════════════════════════════
# Signals
# ══════════════════════════════════════════════════════════════

class AlertSignals:
    """External invalidation signals the aggregator listens to."""

    def __init__(self) -> None:
        self.maybe_changed: PublishChannel[None] = PublishChannel("alerts:maybe_changed")
        self.local_records_changed: PublishChannel[None] = PublishChannel("alerts:local_records_changed")
        self.foreground: PublishChannel[None] = PublishChannel("app:foreground")


# ══════════════════════════════════════════════════════════════
# Aggregator
# ══════════════════════════════════════════════════════════════

class AlertAggregator:
    def __init__(
        self,
        *,
        store: KeyValueStore,
        signals: AlertSignals,
        list_url: str | None = None,
        refresh_s: float | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.signals = signals
        self.list_url = list_url if list_url is not None else settings.list_alerts_url
        self.refresh_s = float(refresh_s or settings.alerts_refresh_s)
        self.timeout_s = float(timeout_s or settings.alerts_timeout_s)
        self._transport = transport
        self._clock = clock

        self.count_changed: PublishChannel[int] = PublishChannel("alerts:count")
        self.list_changed: PublishChannel[List[AlertRecord]] = PublishChannel("alerts:list")

        self._flight = SingleFlight("alerts-merge")
        self._poll_task: Optional[asyncio.Task] = None
        self._detach: List[Callable[[], None]] = []

    # ──────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self) -> None:
        if not self.list_url:
            raise ConfigurationError("LIST_ALERTS_URL is not set; the alert aggregator cannot poll.")

        # Restart cleanly: never leave a second timer or duplicate listeners.
        self.stop()

        self._detach = [
            self.signals.maybe_changed.subscribe(self._on_signal),
            self.signals.local_records_changed.subscribe(self._on_signal),
            self.signals.foreground.subscribe(self._on_signal),
        ]
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(), name="alerts-poll")
        logger.info("[aggregator] started (every %.0fs)", self.refresh_s)

    def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        for off in self._detach:
            off()
        self._detach = []
        self._flight.cancel()

    async def _poll(self) -> None:
        while True:
            self.trigger()
            await asyncio.sleep(self.refresh_s)

    def _on_signal(self, _value: Any = None) -> None:
        self.trigger()

    def trigger(self) -> None:
        """Start a cycle now, superseding any cycle still in flight."""
        self._flight.launch(self._cycle())

    async def refresh(self) -> Optional[List[AlertRecord]]:
        """Run one cycle and wait for it. None if it failed or was superseded."""
        return await self._flight.run(self._cycle())

    async def wait_idle(self) -> None:
        await self._flight.join()

    # ──────────────────────────────────────────────────────────────
    # One merge cycle
    # ──────────────────────────────────────────────────────────────

    async def _fetch_backend(self) -> List[AlertRecord]:
        if not self.list_url:
            raise ConfigurationError("LIST_ALERTS_URL is not set")
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True, transport=transport) as client:
            r = await client.get(self.list_url, headers={"Cache-Control": "no-store"})
            r.raise_for_status()
            payload = BackendAlertsPayload.model_validate(r.json())
        return parse_records(payload.alerts, origin="backend")

    def _read_local(self) -> List[AlertRecord]:
        return parse_records(self.store.get_json(WEATHER_ALERTS_KEY), origin="local")

    async def _cycle(self) -> Optional[List[AlertRecord]]:
        try:
            backend = await self._fetch_backend()
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(f"[aggregator] load alerts failed: {e}")
            return None

        local = self._read_local()
        merged = merge_alerts([*backend, *local], now=self._clock())
        self._commit(merged)
        return merged

    def _commit(self, merged: List[AlertRecord]) -> None:
        self.store.set_json(ALERTS_LIST_KEY, [r.to_wire() for r in merged])
        self.store.set_json(ALERTS_TOTAL_KEY, len(merged))
        self.store.set_json(ALERTS_UPDATED_AT_KEY, int(self._clock() * 1000))

        logger.debug("[aggregator] %d active alert(s)", len(merged))
        self.count_changed.publish(len(merged))
        self.list_changed.publish(list(merged))
