from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from miniapp_notify.domain.normalization import normalize_delivery_report, truncate


MAX_TITLE_LENGTH = 32
MAX_BODY_LENGTH = 128
MAX_NOTIFICATION_ID_LENGTH = 128
DEFAULT_TIMEOUT_SECONDS = 12.0


class FarcasterNotificationError(Exception):
    """Provider-level exception for notification delivery failures."""

    @property
    def category(self) -> str:
        message = str(self).lower()
        if "connectivity error" in message or "timed out" in message:
            return "transient"
        if "missing notification url" in message or "invalid notification url" in message or "no tokens" in message:
            return "terminal"
        return "unknown"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


@dataclass
class DispatchResult:
    url: str
    status_code: int | None
    batch_size: int
    response: Any = None
    parsed: bool = False
    successful_tokens: list[str] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)
    rate_limited_tokens: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.parsed and self.status_code is not None and 200 <= self.status_code < 300


def build_notification_payload(
    tokens: list[str],
    *,
    notification_id: str,
    title: str,
    body: str,
    target_url: str,
) -> dict[str, Any]:
    return {
        "notificationId": truncate(notification_id, MAX_NOTIFICATION_ID_LENGTH),
        "title": truncate(title, MAX_TITLE_LENGTH),
        "body": truncate(body, MAX_BODY_LENGTH),
        "targetUrl": target_url,
        "tokens": list(tokens),
    }


def _post_json(*, url: str, json_payload: dict[str, Any], timeout_seconds: float) -> httpx.Response:
    try:
        with httpx.Client(timeout=timeout_seconds) as client:
            return client.post(url, headers={"Content-Type": "application/json"}, json=json_payload)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        raise FarcasterNotificationError(f"Invalid notification url: {exc}") from exc
    except httpx.TimeoutException as exc:
        raise FarcasterNotificationError(f"Notification request timed out: {url}") from exc
    except httpx.HTTPError as exc:
        raise FarcasterNotificationError(f"Notification connectivity error: {exc}") from exc


def send_notification(
    notification_url: str,
    tokens: list[str],
    *,
    notification_id: str,
    title: str,
    body: str,
    target_url: str,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
) -> DispatchResult:
    if not notification_url:
        raise FarcasterNotificationError("Missing notification url")
    if not tokens:
        raise FarcasterNotificationError("No tokens to notify")

    payload = build_notification_payload(
        tokens,
        notification_id=notification_id,
        title=title,
        body=body,
        target_url=target_url,
    )
    response = _post_json(url=notification_url, json_payload=payload, timeout_seconds=timeout_seconds)

    try:
        parsed_body: Any = response.json()
        parsed = True
    except ValueError:
        parsed_body = {"raw": response.text[:2000]}
        parsed = False

    report = normalize_delivery_report(parsed_body) if parsed else normalize_delivery_report(None)
    return DispatchResult(
        url=notification_url,
        status_code=response.status_code,
        batch_size=len(tokens),
        response=parsed_body,
        parsed=parsed,
        successful_tokens=report.successful_tokens,
        invalid_tokens=report.invalid_tokens,
        rate_limited_tokens=report.rate_limited_tokens,
    )
