from __future__ import annotations

from fastapi import Request, status

from miniapp_notify.domain.errors import api_error
from miniapp_notify.store import SubscriberStore


def request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def get_store(request: Request) -> SubscriberStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "server_misconfigured",
            message="Database is not configured",
        )
    return store


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))
