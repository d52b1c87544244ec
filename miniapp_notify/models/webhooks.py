from __future__ import annotations

from datetime import datetime
from typing import Literal, Union

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError, field_validator


_HTTP_URL = TypeAdapter(AnyHttpUrl)


class NotificationDetails(BaseModel):
    url: StrictStr = Field(min_length=1)
    token: StrictStr = Field(min_length=1)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, value: str) -> str:
        # Kept as the raw string; the provider expects the url exactly as issued.
        try:
            _HTTP_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError("notification url must be an http(s) url") from exc
        return value


class NotificationsEnabledEvent(BaseModel):
    event: Literal["notifications_enabled"] = "notifications_enabled"
    notification_details: NotificationDetails | None = None


class NotificationsDisabledEvent(BaseModel):
    event: Literal["notifications_disabled"] = "notifications_disabled"


class UnhandledEvent(BaseModel):
    event: str | None = None


WebhookEvent = Union[NotificationsEnabledEvent, NotificationsDisabledEvent, UnhandledEvent]

WelcomeOutcome = Literal["sent", "skipped", "rate_limited", "invalid", "failed", "disabled"]


class WebhookAckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: Literal[True] = True
    event: str | None = None
    fid: int | None = None
    app_fid: int | None = Field(default=None, serialization_alias="appFid")
    enabled: bool | None = None
    welcome: WelcomeOutcome | None = None
    note: str | None = None


class WebhookEventListItem(BaseModel):
    id: str
    received_at: datetime
    event: str | None = None
    fid: int | None = None
    app_fid: int | None = None
    token_masked: str = ""
    notification_url: str | None = None


class WebhookEventPage(BaseModel):
    page: int
    per_page: int = Field(serialization_alias="perPage")
    total: int
    rows: list[WebhookEventListItem]

