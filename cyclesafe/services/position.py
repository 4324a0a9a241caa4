from __future__ import annotations

import asyncio
import time
from typing import Literal, Optional, Protocol

from cyclesafe.core.contracts import Coordinate, PermissionState

PositionErrorCode = Literal["permission_denied", "timeout", "unavailable"]


class PositionError(Exception):
    def __init__(self, code: PositionErrorCode, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code


class PositionSource(Protocol):
    async def current_position(
        self,
        *,
        timeout_s: float,
        max_age_s: float,
        high_accuracy: bool = True,
    ) -> Coordinate: ...

    async def permission(self) -> PermissionState: ...


class PushedPositionSource:
    """
    Position source fed by the device over HTTP (POST /location/fix).

    A request is answered from the latest pushed fix when it is younger than
    `max_age_s`; otherwise it waits up to `timeout_s` for the next push.
    """

    def __init__(self) -> None:
        self._fix: Optional[Coordinate] = None
        self._fix_at: float = 0.0
        self._permission: PermissionState = "prompt"
        self._changed = asyncio.Event()

    def push(self, lat: float, lon: float, accuracy: Optional[float] = None) -> Coordinate:
        fix = Coordinate(lat=lat, lon=lon, accuracy=accuracy)
        self._fix = fix
        self._fix_at = time.monotonic()
        self._permission = "granted"
        self._wake()
        return fix

    def set_permission(self, state: PermissionState) -> None:
        self._permission = state
        self._wake()

    def _wake(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    async def permission(self) -> PermissionState:
        return self._permission

    async def current_position(
        self,
        *,
        timeout_s: float,
        max_age_s: float,
        high_accuracy: bool = True,
    ) -> Coordinate:
        if self._permission == "denied":
            raise PositionError("permission_denied")

        if self._fix is not None and time.monotonic() - self._fix_at <= max_age_s:
            return self._fix

        waiter = self._changed
        try:
            await asyncio.wait_for(waiter.wait(), timeout=timeout_s)
        except asyncio.TimeoutError:
            if self._fix is None:
                raise PositionError("unavailable", "no fix has been pushed yet")
            raise PositionError("timeout")

        if self._permission == "denied":
            raise PositionError("permission_denied")
        if self._fix is None:
            raise PositionError("unavailable")
        return self._fix
