from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Protocol

from miniapp_notify.domain.errors import provider_error_detail
from miniapp_notify.observability import incr_metric, log_event
from miniapp_notify.providers.farcaster import client as farcaster_client
from miniapp_notify.providers.farcaster.client import DispatchResult, FarcasterNotificationError


DEFAULT_BATCH_SIZE = 100


class RecipientLike(Protocol):
    @property
    def token(self) -> str: ...

    @property
    def notification_url(self) -> str: ...


@dataclass(frozen=True)
class NotificationMessage:
    notification_id: str
    title: str
    body: str
    target_url: str


@dataclass
class BroadcastOutcome:
    recipients: int
    results: list[DispatchResult] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)
    invalid_tokens_pruned: int = 0

    @property
    def rate_limited_tokens(self) -> list[str]:
        return [token for result in self.results for token in result.rate_limited_tokens]

    @property
    def successful_tokens(self) -> list[str]:
        return [token for result in self.results for token in result.successful_tokens]


def chunk(items: list[str], size: int) -> Iterator[list[str]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def group_tokens_by_url(recipients: Iterable[RecipientLike]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    seen: set[tuple[str, str]] = set()
    for recipient in recipients:
        if not recipient.notification_url or not recipient.token:
            continue
        key = (recipient.notification_url, recipient.token)
        if key in seen:
            continue
        seen.add(key)
        grouped.setdefault(recipient.notification_url, []).append(recipient.token)
    return grouped


def broadcast_notification(
    recipients: list[RecipientLike],
    message: NotificationMessage,
    *,
    prune_invalid_tokens: Callable[[set[str]], int],
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout_seconds: float = farcaster_client.DEFAULT_TIMEOUT_SECONDS,
    request_id: str | None = None,
) -> BroadcastOutcome:
    """Fan a message out to every recipient, grouped by notification url.

    Batches run sequentially. A failing batch is recorded and the loop moves on.
    Invalid tokens from every batch are pruned in one call once all batches finish.
    """
    outcome = BroadcastOutcome(recipients=len(recipients))
    invalid: dict[str, None] = {}

    for url, tokens in group_tokens_by_url(recipients).items():
        for batch in chunk(tokens, batch_size):
            try:
                result = farcaster_client.send_notification(
                    url,
                    batch,
                    notification_id=message.notification_id,
                    title=message.title,
                    body=message.body,
                    target_url=message.target_url,
                    timeout_seconds=timeout_seconds,
                )
            except FarcasterNotificationError as exc:
                incr_metric("notifications.batches.failed", category=exc.category)
                log_event(
                    "notification_batch_failed",
                    level=logging.WARNING,
                    request_id=request_id,
                    url=url,
                    batch_size=len(batch),
                    error=str(exc),
                )
                result = DispatchResult(
                    url=url,
                    status_code=None,
                    batch_size=len(batch),
                    error=provider_error_detail(provider="farcaster", operation="send_notification", exc=exc),
                )
            else:
                incr_metric("notifications.batches.sent", status_code=result.status_code)
                log_event(
                    "notification_batch_sent",
                    request_id=request_id,
                    url=url,
                    batch_size=len(batch),
                    status_code=result.status_code,
                    successful=len(result.successful_tokens),
                    invalid=len(result.invalid_tokens),
                    rate_limited=len(result.rate_limited_tokens),
                )
            for token in result.invalid_tokens:
                invalid[token] = None
            outcome.results.append(result)

    outcome.invalid_tokens = list(invalid)
    if outcome.invalid_tokens:
        outcome.invalid_tokens_pruned = prune_invalid_tokens(set(outcome.invalid_tokens))
        incr_metric("subscribers.tokens.pruned", value=outcome.invalid_tokens_pruned)
        log_event(
            "invalid_tokens_pruned",
            request_id=request_id,
            reported=len(outcome.invalid_tokens),
            pruned=outcome.invalid_tokens_pruned,
        )
    return outcome
