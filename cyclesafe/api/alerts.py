from __future__ import annotations

from fastapi import APIRouter, Depends

from cyclesafe.core.contracts import AlertsState
from cyclesafe.core.storage import KeyValueStore
from cyclesafe.services.aggregator import AlertSignals, read_alerts_state

router = APIRouter(prefix="/alerts")


def get_store() -> KeyValueStore:
    raise RuntimeError("store must be provided by app dependency override")


def get_alert_signals() -> AlertSignals:
    raise RuntimeError("AlertSignals must be provided by app dependency override")


@router.get("")
def alerts_list(store: KeyValueStore = Depends(get_store)):
    state: AlertsState = read_alerts_state(store)
    return {
        "alerts": [r.to_wire() for r in state.alerts],
        "total": state.total,
        "updated_at": state.updated_at,
    }


@router.post("/refresh")
async def alerts_refresh(signals: AlertSignals = Depends(get_alert_signals)):
    signals.maybe_changed.publish(None)
    return {"ok": True}


@router.post("/foreground")
async def alerts_foreground(signals: AlertSignals = Depends(get_alert_signals)):
    signals.foreground.publish(None)
    return {"ok": True}
