from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request, status

from miniapp_notify.config import settings
from miniapp_notify.domain.broadcast import NotificationMessage
from miniapp_notify.domain.envelope import DecodedEnvelope, decode_envelope, extract_fid, parse_webhook_event
from miniapp_notify.domain.errors import api_error
from miniapp_notify.domain.welcome import should_send_welcome, welcome_confirmed, welcome_message_id
from miniapp_notify.models.webhooks import (
    NotificationsDisabledEvent,
    NotificationsEnabledEvent,
    WebhookAckResponse,
    WebhookEvent,
    WelcomeOutcome,
)
from miniapp_notify.observability import incr_metric, log_event, mask_token
from miniapp_notify.providers.farcaster import client as farcaster_client
from miniapp_notify.providers.farcaster.client import FarcasterNotificationError
from miniapp_notify.routers.deps import get_store, request_id
from miniapp_notify.store import SubscriberRecord, SubscriberStore


router = APIRouter(prefix="/api/farcaster", tags=["farcaster"])


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _welcome_message(fid: int, token: str) -> NotificationMessage:
    return NotificationMessage(
        notification_id=welcome_message_id(fid, token),
        title=settings.welcome_title,
        body=settings.welcome_body,
        target_url=settings.welcome_target_url or settings.miniapp_origin,
    )


def _send_welcome(
    store: SubscriberStore,
    *,
    subscriber: SubscriberRecord,
    token: str,
    notification_url: str,
    req_id: str | None,
) -> WelcomeOutcome:
    if not settings.welcome_enabled:
        return "disabled"
    if not should_send_welcome(subscriber, token):
        incr_metric("welcome.skipped")
        return "skipped"

    message = _welcome_message(subscriber.fid, token)
    try:
        result = farcaster_client.send_notification(
            notification_url,
            [token],
            notification_id=message.notification_id,
            title=message.title,
            body=message.body,
            target_url=message.target_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )
    except FarcasterNotificationError as exc:
        incr_metric("welcome.failed", category=exc.category)
        log_event(
            "welcome_send_failed",
            level=logging.WARNING,
            request_id=req_id,
            fid=subscriber.fid,
            token=mask_token(token),
            error=str(exc),
        )
        return "failed"

    if token in result.invalid_tokens:
        pruned = store.prune_invalid_tokens({token})
        incr_metric("welcome.invalid")
        log_event("welcome_token_invalid", request_id=req_id, fid=subscriber.fid, token=mask_token(token), pruned=pruned)
        return "invalid"
    if token in result.rate_limited_tokens:
        incr_metric("welcome.rate_limited")
        log_event("welcome_rate_limited", request_id=req_id, fid=subscriber.fid, token=mask_token(token))
        return "rate_limited"
    if not welcome_confirmed(result, token):
        incr_metric("welcome.failed", category="provider_response")
        log_event(
            "welcome_send_failed",
            level=logging.WARNING,
            request_id=req_id,
            fid=subscriber.fid,
            token=mask_token(token),
            status_code=result.status_code,
        )
        return "failed"

    store.mark_welcome_sent(subscriber.fid, subscriber.app_fid, token, _now())
    incr_metric("welcome.sent")
    log_event(
        "welcome_sent",
        request_id=req_id,
        fid=subscriber.fid,
        token=mask_token(token),
        notification_id=message.notification_id,
    )
    return "sent"


def _apply_event(
    store: SubscriberStore,
    *,
    event: WebhookEvent,
    fid: int | None,
    app_fid: int,
    observed_at: datetime,
    req_id: str | None,
) -> WebhookAckResponse:
    if fid is None:
        return WebhookAckResponse(event=event.event, note="no_fid")

    if isinstance(event, NotificationsEnabledEvent):
        details = event.notification_details
        if details is None:
            return WebhookAckResponse(
                event=event.event,
                fid=fid,
                app_fid=app_fid,
                enabled=False,
                note="missing_token_or_url",
            )

        record = store.upsert_enabled(fid, app_fid, details.token, details.url, observed_at)
        if record.updated_at > observed_at:
            return WebhookAckResponse(
                event=event.event,
                fid=fid,
                app_fid=app_fid,
                enabled=record.enabled,
                note="stale_event",
            )
        welcome = _send_welcome(
            store,
            subscriber=record,
            token=details.token,
            notification_url=details.url,
            req_id=req_id,
        )
        return WebhookAckResponse(event=event.event, fid=fid, app_fid=app_fid, enabled=record.enabled, welcome=welcome)

    if isinstance(event, NotificationsDisabledEvent):
        record = store.upsert_disabled(fid, app_fid, observed_at)
        return WebhookAckResponse(
            event=event.event,
            fid=fid,
            app_fid=app_fid,
            enabled=record.enabled,
            note="stale_event" if record.updated_at > observed_at else None,
        )

    return WebhookAckResponse(event=event.event, fid=fid, app_fid=app_fid, note="ignored_event")


def _record_and_apply(
    store: SubscriberStore,
    *,
    raw_envelope: dict,
    decoded: DecodedEnvelope,
    event: WebhookEvent,
    fid: int | None,
    app_fid: int,
    received_at: datetime,
    req_id: str | None,
) -> WebhookAckResponse:
    store.ensure_schema()
    store.record_event(raw_envelope, decoded.header, decoded.payload, received_at=received_at)
    return _apply_event(
        store,
        event=event,
        fid=fid,
        app_fid=app_fid,
        observed_at=received_at,
        req_id=req_id,
    )


@router.post("/webhook")
async def ingest_farcaster_webhook(request: Request):
    received_at = _now()
    req_id = request_id(request)
    incr_metric("webhook.events.received", provider_slug="farcaster")

    raw_body = await request.body()
    try:
        body = json.loads(raw_body.decode("utf-8")) if raw_body else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "bad_request", message="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise api_error(status.HTTP_400_BAD_REQUEST, "bad_request", message="Body must be a JSON object")

    header_b64 = body.get("header") if isinstance(body.get("header"), str) else ""
    payload_b64 = body.get("payload") if isinstance(body.get("payload"), str) else ""
    signature = body.get("signature") if isinstance(body.get("signature"), str) else None
    if not header_b64 or not payload_b64:
        raise api_error(status.HTTP_400_BAD_REQUEST, "missing_header_or_payload", message="missing header/payload")

    # TODO: verify `signature` against the app key registry before trusting header.fid.
    decoded = decode_envelope(header_b64, payload_b64)
    event = parse_webhook_event(decoded.payload)
    fid = extract_fid(decoded.header)
    app_fid = settings.app_fid
    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="farcaster",
        event_type=event.event,
        fid=fid,
        header_decoded=decoded.header is not None,
        payload_decoded=decoded.payload is not None,
    )

    store = get_store(request)
    try:
        ack = await asyncio.to_thread(
            _record_and_apply,
            store,
            raw_envelope={"header": header_b64, "payload": payload_b64, "signature": signature},
            decoded=decoded,
            event=event,
            fid=fid,
            app_fid=app_fid,
            received_at=received_at,
            req_id=req_id,
        )
    except Exception as exc:
        incr_metric("webhook.events.failed", provider_slug="farcaster")
        log_event(
            "webhook_failed",
            level=logging.ERROR,
            request_id=req_id,
            provider_slug="farcaster",
            event_type=event.event,
            fid=fid,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise api_error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "webhook_failed",
            message="Webhook processing failed",
        ) from exc

    outcome = "ignored" if ack.note in {"no_fid", "ignored_event", "missing_token_or_url"} else "processed"
    incr_metric(f"webhook.events.{outcome}", provider_slug="farcaster", event_type=event.event)
    log_event(
        f"webhook_{outcome}",
        request_id=req_id,
        provider_slug="farcaster",
        event_type=event.event,
        fid=fid,
        app_fid=app_fid,
        enabled=ack.enabled,
        welcome=ack.welcome,
        note=ack.note,
    )
    return ack.model_dump(by_alias=True, exclude_none=True)
