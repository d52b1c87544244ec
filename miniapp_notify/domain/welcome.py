from __future__ import annotations

import hashlib
import uuid
from typing import Any, Protocol


WELCOME_NAMESPACE = "nft-season:welcome:v1"


class WelcomeStateLike(Protocol):
    @property
    def welcome_sent_for_token(self) -> str | None: ...


def welcome_message_id(fid: int, token: str) -> str:
    """Stable notificationId for the welcome push to one (fid, token).

    Redelivered enable webhooks map to the same id, so the push provider can
    drop duplicates that slip past the local check.
    """
    digest = hashlib.sha256(f"{WELCOME_NAMESPACE}:{fid}:{token}".encode("utf-8")).hexdigest()
    return str(uuid.UUID(hex=digest[:32]))


def should_send_welcome(subscriber: WelcomeStateLike | None, token: str) -> bool:
    if subscriber is None:
        return True
    return subscriber.welcome_sent_for_token != token


def welcome_confirmed(result: Any, token: str) -> bool:
    """True when a dispatch result proves the welcome landed for ``token``."""
    if not result.ok:
        return False
    if token in result.rate_limited_tokens or token in result.invalid_tokens:
        return False
    if result.successful_tokens:
        return token in result.successful_tokens
    return True
