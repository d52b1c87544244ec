from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class BroadcastRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str | None = None
    body: str | None = None
    target_url: str | None = Field(default=None, alias="targetUrl")
    notification_id: str | None = Field(default=None, alias="notificationId")
    dry_run: bool = Field(default=False, alias="dryRun")


class BroadcastBatchResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    status: int | None
    batch_size: int = Field(serialization_alias="batchSize")
    response: Any = None
    successful_tokens: int = Field(default=0, serialization_alias="successfulTokens")
    invalid_tokens: int = Field(default=0, serialization_alias="invalidTokens")
    rate_limited_tokens: list[str] = Field(default_factory=list, serialization_alias="rateLimitedTokens")
    error: dict[str, Any] | None = None


class BroadcastResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: Literal[True] = True
    dry_run: bool = Field(serialization_alias="dryRun")
    recipients: int
    notification_id: str = Field(serialization_alias="notificationId")
    invalid_tokens_pruned: int = Field(default=0, serialization_alias="invalidTokensPruned")
    results: list[BroadcastBatchResult] = Field(default_factory=list)


class StatsResponse(BaseModel):
    ok: Literal[True] = True
    total: int
    enabled: int


class MetricsResponse(BaseModel):
    ok: Literal[True] = True
    counters: dict[str, int]


class ManagerSendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str | None = None
    body: str | None = None
    target_url: str | None = Field(default=None, alias="targetUrl")
    notification_id: str | None = Field(default=None, alias="notificationId")


class ManagerSendResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notification_id: str = Field(serialization_alias="notificationId")
    url: str
    sent_to: int = Field(serialization_alias="sentTo")
    successful_tokens: list[str] = Field(default_factory=list, serialization_alias="successfulTokens")
    invalid_tokens: list[str] = Field(default_factory=list, serialization_alias="invalidTokens")
    rate_limited_tokens: list[str] = Field(default_factory=list, serialization_alias="rateLimitedTokens")
    http_status: int | None = Field(default=None, serialization_alias="httpStatus")
    raw: Any = None
    error: dict[str, Any] | None = None


class SubscriberListItem(BaseModel):
    fid: int
    app_fid: int
    enabled: bool
    token_len: int
    token_masked: str
    notification_url: str | None = None
    updated_at: datetime
    welcome_sent_at: datetime | None = None


class SubscriberPage(BaseModel):
    page: int
    per_page: int = Field(serialization_alias="perPage")
    total: int
    rows: list[SubscriberListItem]
