"""Decoding of the Farcaster webhook envelope.

The envelope is ``{"header": <b64url>, "payload": <b64url>, "signature": <str>}`` where
header and payload are base64url-encoded JSON objects. Nothing here raises on bad input:
undecodable fields come back as ``None`` so the caller can record the event and
acknowledge it.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from miniapp_notify.models.webhooks import (
    NotificationDetails,
    NotificationsDisabledEvent,
    NotificationsEnabledEvent,
    UnhandledEvent,
    WebhookEvent,
)


@dataclass(frozen=True)
class DecodedEnvelope:
    header: dict[str, Any] | None
    payload: dict[str, Any] | None


def b64url_decode(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        value = value.decode("ascii")
    value = value.strip()
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)


def decode_json_field(value: str | bytes | None) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        parsed = json.loads(b64url_decode(value).decode("utf-8"))
    except (binascii.Error, ValueError, RecursionError):
        # UnicodeDecodeError and JSONDecodeError are both ValueError subclasses.
        return None
    return parsed if isinstance(parsed, dict) else None


def decode_envelope(header_b64: str | bytes | None, payload_b64: str | bytes | None) -> DecodedEnvelope:
    return DecodedEnvelope(header=decode_json_field(header_b64), payload=decode_json_field(payload_b64))


def extract_fid(header: dict[str, Any] | None) -> int | None:
    if not header:
        return None
    fid = header.get("fid")
    # bool is an int subclass; JSON true is not a fid.
    if isinstance(fid, bool) or not isinstance(fid, int):
        return None
    return fid


def parse_webhook_event(payload: dict[str, Any] | None) -> WebhookEvent:
    if not payload:
        return UnhandledEvent(event=None)
    event = payload.get("event")
    if event == "notifications_enabled":
        try:
            details = NotificationDetails.model_validate(payload.get("notificationDetails"))
        except ValidationError:
            details = None
        return NotificationsEnabledEvent(notification_details=details)
    if event == "notifications_disabled":
        return NotificationsDisabledEvent()
    return UnhandledEvent(event=event if isinstance(event, str) else None)
