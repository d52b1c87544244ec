from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import ValidationError

from miniapp_notify.auth import AdminContext, require_admin
from miniapp_notify.config import settings
from miniapp_notify.domain.broadcast import BroadcastOutcome, NotificationMessage, broadcast_notification
from miniapp_notify.domain.errors import api_error
from miniapp_notify.domain.normalization import truncate
from miniapp_notify.domain.targets import default_notification_id, is_allowed_target_url
from miniapp_notify.models.notifications import (
    BroadcastBatchResult,
    BroadcastRequest,
    BroadcastResponse,
    MetricsResponse,
    StatsResponse,
)
from miniapp_notify.observability import incr_metric, log_event, metrics_snapshot
from miniapp_notify.providers.farcaster.client import (
    MAX_BODY_LENGTH,
    MAX_NOTIFICATION_ID_LENGTH,
    MAX_TITLE_LENGTH,
)
from miniapp_notify.routers.deps import get_store, request_id
from miniapp_notify.store import Recipient, SubscriberStore


router = APIRouter(prefix="/api/notify", tags=["notify"])


async def _read_json_object(request: Request) -> dict:
    raw_body = await request.body()
    if not raw_body:
        return {}
    try:
        body = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "bad_request", message="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise api_error(status.HTTP_400_BAD_REQUEST, "bad_request", message="Body must be a JSON object")
    return body


def batch_results(outcome: BroadcastOutcome) -> list[BroadcastBatchResult]:
    return [
        BroadcastBatchResult(
            url=result.url,
            status=result.status_code,
            batch_size=result.batch_size,
            response=result.response,
            successful_tokens=len(result.successful_tokens),
            invalid_tokens=len(result.invalid_tokens),
            rate_limited_tokens=result.rate_limited_tokens,
            error=result.error,
        )
        for result in outcome.results
    ]


def _load_recipients(store: SubscriberStore) -> list[Recipient]:
    store.ensure_schema()
    return store.list_enabled_subscribers(settings.app_fid)


@router.post("/broadcast")
async def broadcast(
    request: Request,
    _ctx: AdminContext = Depends(require_admin),
):
    req_id = request_id(request)
    try:
        payload = BroadcastRequest.model_validate(await _read_json_object(request))
    except ValidationError as exc:
        raise api_error(status.HTTP_400_BAD_REQUEST, "bad_request", message="Invalid broadcast request") from exc

    title = truncate(payload.title, MAX_TITLE_LENGTH)
    body = truncate(payload.body, MAX_BODY_LENGTH)
    target_url = (payload.target_url or "").strip()
    notification_id = truncate(
        payload.notification_id or default_notification_id(settings.notification_id_prefix),
        MAX_NOTIFICATION_ID_LENGTH,
    )

    if not title or not body or not target_url:
        raise api_error(status.HTTP_400_BAD_REQUEST, "missing_title_body_targetUrl")
    if not is_allowed_target_url(target_url, settings.miniapp_origin):
        log_event("broadcast_target_rejected", level=logging.WARNING, request_id=req_id, target_url=target_url)
        raise api_error(
            status.HTTP_400_BAD_REQUEST,
            "targetUrl_not_allowed",
            message=f"targetUrl must be on {settings.miniapp_origin}",
        )

    store = get_store(request)
    recipients = await asyncio.to_thread(_load_recipients, store)

    if payload.dry_run:
        log_event("broadcast_dry_run", request_id=req_id, recipients=len(recipients), notification_id=notification_id)
        return BroadcastResponse(
            dry_run=True,
            recipients=len(recipients),
            notification_id=notification_id,
        ).model_dump(by_alias=True)

    outcome = await asyncio.to_thread(
        broadcast_notification,
        recipients,
        NotificationMessage(
            notification_id=notification_id,
            title=title,
            body=body,
            target_url=target_url,
        ),
        prune_invalid_tokens=store.prune_invalid_tokens,
        batch_size=settings.notification_batch_size,
        timeout_seconds=settings.notification_timeout_seconds,
        request_id=req_id,
    )
    incr_metric("broadcast.completed", source="api")
    log_event(
        "broadcast_completed",
        request_id=req_id,
        recipients=outcome.recipients,
        batches=len(outcome.results),
        failed_batches=sum(1 for result in outcome.results if not result.ok),
        rate_limited=len(outcome.rate_limited_tokens),
        invalid_tokens_pruned=outcome.invalid_tokens_pruned,
        notification_id=notification_id,
    )
    return BroadcastResponse(
        dry_run=False,
        recipients=outcome.recipients,
        notification_id=notification_id,
        invalid_tokens_pruned=outcome.invalid_tokens_pruned,
        results=batch_results(outcome),
    ).model_dump(by_alias=True)


@router.post("/stats")
def subscriber_stats(
    request: Request,
    _ctx: AdminContext = Depends(require_admin),
):
    store = get_store(request)
    store.ensure_schema()
    total, enabled = store.count_subscribers()
    return StatsResponse(total=total, enabled=enabled).model_dump()


@router.get("/metrics")
def service_metrics(_ctx: AdminContext = Depends(require_admin)):
    return MetricsResponse(counters=metrics_snapshot()).model_dump()
