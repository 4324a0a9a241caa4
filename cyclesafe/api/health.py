from __future__ import annotations

from fastapi import APIRouter

from cyclesafe.core.time import utc_now_iso

router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True, "now": utc_now_iso()}
