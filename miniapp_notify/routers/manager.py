from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import HTMLResponse
from pydantic import ValidationError

from miniapp_notify.auth import require_editor_token
from miniapp_notify.config import settings
from miniapp_notify.domain.broadcast import BroadcastOutcome, NotificationMessage, broadcast_notification
from miniapp_notify.domain.errors import api_error
from miniapp_notify.domain.targets import is_allowed_target_url
from miniapp_notify.manager_page import content_security_policy, new_nonce, render_manager_page
from miniapp_notify.models.notifications import (
    ManagerSendRequest,
    ManagerSendResult,
    SubscriberListItem,
    SubscriberPage,
)
from miniapp_notify.models.webhooks import WebhookEventListItem, WebhookEventPage
from miniapp_notify.observability import incr_metric, log_event, mask_token
from miniapp_notify.routers.deps import clamp, get_store, request_id
from miniapp_notify.store import SubscriberStore


page_router = APIRouter(tags=["manager"])
router = APIRouter(prefix="/api", tags=["manager"], dependencies=[Depends(require_editor_token)])

MAX_PAGE = 10_000
MAX_PER_PAGE = 200


def ok(result: Any) -> dict[str, Any]:
    return {"ok": True, "result": result}


def _store_or_fail(request: Request) -> SubscriberStore:
    store = get_store(request)
    try:
        store.ensure_schema()
    except Exception as exc:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "DB error", details=str(exc)) from exc
    return store


async def _read_send_request(request: Request, *, default_body: str) -> NotificationMessage:
    raw_body = await request.body()
    try:
        data = json.loads(raw_body.decode("utf-8")) if raw_body else {}
        payload = ManagerSendRequest.model_validate(data if isinstance(data, dict) else {})
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "Invalid send request", details=str(exc)) from exc

    target_url = (payload.target_url or settings.miniapp_origin).strip()
    if not is_allowed_target_url(target_url, settings.miniapp_origin):
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            "targetUrl_not_allowed",
            details={"targetUrl": target_url, "allowedOrigin": settings.miniapp_origin},
        )
    return NotificationMessage(
        notification_id=(payload.notification_id or settings.notify_notification_id).strip(),
        title=payload.title or "NFT Season",
        body=payload.body or default_body,
        target_url=target_url,
    )


def _send_results(outcome: BroadcastOutcome, notification_id: str) -> list[dict[str, Any]]:
    return [
        ManagerSendResult(
            notification_id=notification_id,
            url=result.url,
            sent_to=result.batch_size,
            successful_tokens=result.successful_tokens,
            invalid_tokens=result.invalid_tokens,
            rate_limited_tokens=result.rate_limited_tokens,
            http_status=result.status_code,
            raw=result.response,
            error=result.error,
        ).model_dump(by_alias=True)
        for result in outcome.results
    ]


@page_router.get("/", response_class=HTMLResponse)
async def manager_page():
    nonce = new_nonce()
    return HTMLResponse(
        render_manager_page(
            port=settings.notify_manager_port,
            default_notification_id=settings.notify_notification_id,
            miniapp_origin=settings.miniapp_origin,
            test_fid=settings.test_fid,
            nonce=nonce,
        ),
        headers={
            "Content-Security-Policy": content_security_policy(nonce),
            "X-Content-Type-Options": "nosniff",
        },
    )


@router.get("/health")
def manager_health(request: Request):
    store = get_store(request)
    try:
        now = store.database_now()
    except Exception as exc:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "DB error", details=str(exc)) from exc
    return ok({"now": now.isoformat() if now else None, "appFid": settings.app_fid})


@router.get("/subscribers")
def list_subscribers(
    request: Request,
    page: int = 1,
    per_page: int = Query(50, alias="perPage"),
    enabled_only: str = Query("", alias="enabledOnly"),
):
    page = clamp(page, 1, MAX_PAGE)
    per_page = clamp(per_page, 1, MAX_PER_PAGE)
    store = _store_or_fail(request)
    try:
        total, records = store.list_subscribers_page(
            limit=per_page,
            offset=(page - 1) * per_page,
            enabled_only=enabled_only.strip() == "1",
        )
    except Exception as exc:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "DB error", details=str(exc)) from exc

    rows = [
        SubscriberListItem(
            fid=record.fid,
            app_fid=record.app_fid,
            enabled=record.enabled,
            token_len=len(record.token or ""),
            token_masked=mask_token(record.token),
            notification_url=record.notification_url,
            updated_at=record.updated_at,
            welcome_sent_at=record.welcome_sent_at,
        )
        for record in records
    ]
    return ok(SubscriberPage(page=page, per_page=per_page, total=total, rows=rows).model_dump(mode="json", by_alias=True))


def event_list_item(row: dict[str, Any]) -> WebhookEventListItem:
    header = row.get("decoded_header") if isinstance(row.get("decoded_header"), dict) else {}
    payload = row.get("decoded_payload") if isinstance(row.get("decoded_payload"), dict) else {}
    details = payload.get("notificationDetails") if isinstance(payload.get("notificationDetails"), dict) else {}
    fid = header.get("fid")
    has_fid = isinstance(fid, int) and not isinstance(fid, bool)
    event = payload.get("event")
    token = details.get("token")
    url = details.get("url")
    return WebhookEventListItem(
        id=str(row["id"]),
        received_at=row["received_at"],
        event=event if isinstance(event, str) else None,
        fid=fid if has_fid else None,
        app_fid=settings.app_fid if has_fid else None,
        token_masked=mask_token(token if isinstance(token, str) else None),
        notification_url=url if isinstance(url, str) else None,
    )


@router.get("/events")
def list_events(
    request: Request,
    page: int = 1,
    per_page: int = Query(50, alias="perPage"),
):
    page = clamp(page, 1, MAX_PAGE)
    per_page = clamp(per_page, 1, MAX_PER_PAGE)
    store = _store_or_fail(request)
    try:
        total, rows = store.list_events_page(limit=per_page, offset=(page - 1) * per_page)
    except Exception as exc:
        raise api_error(status.HTTP_500_INTERNAL_SERVER_ERROR, "DB error", details=str(exc)) from exc
    items = [event_list_item(row) for row in rows]
    return ok(WebhookEventPage(page=page, per_page=per_page, total=total, rows=items).model_dump(mode="json", by_alias=True))


def _send_test(request: Request, message: NotificationMessage) -> dict[str, Any]:
    store = _store_or_fail(request)
    subscriber = store.get_subscriber(settings.test_fid, settings.app_fid)
    if subscriber is None or not subscriber.enabled or not subscriber.token or not subscriber.notification_url:
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            "No enabled token for test fid",
            details={"fid": settings.test_fid, "appFid": settings.app_fid},
        )

    outcome = broadcast_notification(
        [subscriber],
        message,
        prune_invalid_tokens=store.prune_invalid_tokens,
        batch_size=settings.notification_batch_size,
        timeout_seconds=settings.notification_timeout_seconds,
        request_id=request_id(request),
    )
    incr_metric("broadcast.completed", source="manager_test")
    return ok(_send_results(outcome, message.notification_id)[0])


def _send_broadcast(request: Request, message: NotificationMessage) -> dict[str, Any]:
    req_id = request_id(request)
    store = _store_or_fail(request)
    recipients = store.list_enabled_subscribers(settings.app_fid)
    if not recipients:
        raise api_error(status.HTTP_400_BAD_REQUEST, "No enabled tokens in DB", details={"appFid": settings.app_fid})

    outcome = broadcast_notification(
        recipients,
        message,
        prune_invalid_tokens=store.prune_invalid_tokens,
        batch_size=settings.notification_batch_size,
        timeout_seconds=settings.notification_timeout_seconds,
        request_id=req_id,
    )
    incr_metric("broadcast.completed", source="manager")
    log_event(
        "manager_broadcast_completed",
        level=logging.WARNING if outcome.rate_limited_tokens else logging.INFO,
        request_id=req_id,
        recipients=outcome.recipients,
        batches=len(outcome.results),
        rate_limited=len(outcome.rate_limited_tokens),
        invalid_tokens_pruned=outcome.invalid_tokens_pruned,
    )
    return ok(
        {
            "groups": len({result.url for result in outcome.results}),
            "recipients": outcome.recipients,
            "invalidTokensPruned": outcome.invalid_tokens_pruned,
            "rateLimited": bool(outcome.rate_limited_tokens),
            "results": _send_results(outcome, message.notification_id),
        }
    )


@router.post("/send/test")
async def send_test(request: Request):
    message = await _read_send_request(request, default_body="test")
    return await asyncio.to_thread(_send_test, request, message)


@router.post("/send/broadcast")
async def send_broadcast(request: Request):
    message = await _read_send_request(request, default_body="gm")
    return await asyncio.to_thread(_send_broadcast, request, message)
