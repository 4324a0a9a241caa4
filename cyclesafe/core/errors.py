from __future__ import annotations

from fastapi import HTTPException


class ConfigurationError(RuntimeError):
    """A required setting was never provided. Raised immediately, never retried."""


def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})
