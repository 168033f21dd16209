from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import Request

from .container import Services


CORRELATION_HEADER = "x-correlation-id"


def get_services(request: Request) -> Services:
    return request.app.state.services


def correlation_id(request: Request) -> str:
    return str(getattr(request.state, "correlation_id", "") or "unknown")


def envelope(request: Request, payload: dict[str, Any]) -> dict[str, Any]:
    # Every JSON response carries the request's correlation id and a timestamp.
    out = dict(payload)
    out["timestamp"] = datetime.now(timezone.utc).isoformat()
    out["correlationId"] = correlation_id(request)
    return out
