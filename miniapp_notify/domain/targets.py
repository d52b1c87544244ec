from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import urlparse

from miniapp_notify.domain.normalization import truncate
from miniapp_notify.providers.farcaster.client import MAX_NOTIFICATION_ID_LENGTH


def _host(url: str) -> str | None:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    if parsed.scheme != "https" or not parsed.hostname:
        return None
    return parsed.hostname.lower()


def is_allowed_target_url(target_url: str, miniapp_origin: str) -> bool:
    """True when ``target_url`` is https on exactly the mini-app origin's host."""
    allowed = _host(miniapp_origin)
    return allowed is not None and _host(target_url) == allowed


def default_notification_id(prefix: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return truncate(f"{prefix}-{now.date().isoformat()}-{int(now.timestamp() * 1000)}", MAX_NOTIFICATION_ID_LENGTH)
