from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Iterable

from psycopg2.extras import Json

from miniapp_notify.db import Database


EVENTS_TABLE = "miniapp_notification_webhook_events"
SUBSCRIBERS_TABLE = "miniapp_notification_subscribers"

SCHEMA_SQL = f"""
create table if not exists {EVENTS_TABLE} (
    id bigserial primary key,
    received_at timestamptz not null default now(),
    body jsonb not null,
    decoded_header jsonb,
    decoded_payload jsonb
);
create index if not exists idx_mnwe_received_at
    on {EVENTS_TABLE} (received_at desc);

create table if not exists {SUBSCRIBERS_TABLE} (
    fid bigint not null,
    app_fid bigint not null,
    token text,
    notification_url text,
    enabled boolean not null default false,
    updated_at timestamptz not null default now(),
    welcome_sent_for_token text,
    welcome_sent_at timestamptz,
    primary key (fid, app_fid)
);
alter table {SUBSCRIBERS_TABLE} add column if not exists welcome_sent_for_token text;
alter table {SUBSCRIBERS_TABLE} add column if not exists welcome_sent_at timestamptz;
create index if not exists idx_subscribers_enabled
    on {SUBSCRIBERS_TABLE} (enabled);
create index if not exists idx_subscribers_token
    on {SUBSCRIBERS_TABLE} (token);
"""

_SUBSCRIBER_COLUMNS = (
    "fid, app_fid, token, notification_url, enabled, updated_at, welcome_sent_for_token, welcome_sent_at"
)

# The trailing WHERE on the conflict branch is the ordering guard: a delivery observed
# earlier than the stored row is a no-op, and RETURNING yields nothing.
UPSERT_ENABLED_SQL = f"""
insert into {SUBSCRIBERS_TABLE} (fid, app_fid, token, notification_url, enabled, updated_at)
values (%(fid)s, %(app_fid)s, %(token)s, %(notification_url)s, true, %(observed_at)s)
on conflict (fid, app_fid) do update
    set token = excluded.token,
        notification_url = excluded.notification_url,
        enabled = true,
        updated_at = excluded.updated_at
    where {SUBSCRIBERS_TABLE}.updated_at <= excluded.updated_at
returning {_SUBSCRIBER_COLUMNS}
"""

UPSERT_DISABLED_SQL = f"""
insert into {SUBSCRIBERS_TABLE} (fid, app_fid, token, notification_url, enabled, updated_at)
values (%(fid)s, %(app_fid)s, null, null, false, %(observed_at)s)
on conflict (fid, app_fid) do update
    set token = null,
        notification_url = null,
        enabled = false,
        updated_at = excluded.updated_at
    where {SUBSCRIBERS_TABLE}.updated_at <= excluded.updated_at
returning {_SUBSCRIBER_COLUMNS}
"""

SELECT_SUBSCRIBER_SQL = f"""
select {_SUBSCRIBER_COLUMNS}
from {SUBSCRIBERS_TABLE}
where fid = %(fid)s and app_fid = %(app_fid)s
"""

MARK_WELCOME_SENT_SQL = f"""
update {SUBSCRIBERS_TABLE}
set welcome_sent_for_token = %(token)s,
    welcome_sent_at = %(sent_at)s
where fid = %(fid)s and app_fid = %(app_fid)s and token = %(token)s
"""

PRUNE_INVALID_TOKENS_SQL = f"""
update {SUBSCRIBERS_TABLE}
set enabled = false, notification_url = null, token = null, updated_at = now()
where token = any(%(tokens)s::text[])
"""

INSERT_EVENT_SQL = f"""
insert into {EVENTS_TABLE} (received_at, body, decoded_header, decoded_payload)
values (%(received_at)s, %(body)s, %(decoded_header)s, %(decoded_payload)s)
returning id
"""


@dataclass(frozen=True)
class SubscriberRecord:
    fid: int
    app_fid: int
    token: str | None
    notification_url: str | None
    enabled: bool
    updated_at: datetime
    welcome_sent_for_token: str | None = None
    welcome_sent_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SubscriberRecord":
        return cls(
            fid=int(row["fid"]),
            app_fid=int(row["app_fid"]),
            token=row.get("token"),
            notification_url=row.get("notification_url"),
            enabled=bool(row["enabled"]),
            updated_at=row["updated_at"],
            welcome_sent_for_token=row.get("welcome_sent_for_token"),
            welcome_sent_at=row.get("welcome_sent_at"),
        )


@dataclass(frozen=True)
class Recipient:
    fid: int
    app_fid: int
    token: str
    notification_url: str


class SubscriberStore:
    """Subscriber registry and webhook event log backed by Postgres.

    Every state change goes through a single conditional statement so that concurrent
    handlers converge on the delivery with the newest ``observed_at``.
    """

    def __init__(self, database: Database) -> None:
        self.database = database
        self._schema_ready = False
        self._schema_lock = Lock()

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self.database.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            self._schema_ready = True

    def record_event(
        self,
        raw_envelope: dict[str, Any],
        decoded_header: dict[str, Any] | None,
        decoded_payload: dict[str, Any] | None,
        *,
        received_at: datetime,
    ) -> int:
        with self.database.cursor() as cur:
            cur.execute(
                INSERT_EVENT_SQL,
                {
                    "received_at": received_at,
                    "body": Json(raw_envelope),
                    "decoded_header": Json(decoded_header),
                    "decoded_payload": Json(decoded_payload),
                },
            )
            row = cur.fetchone()
        return int(row["id"])

    def _upsert(self, sql: str, params: dict[str, Any]) -> SubscriberRecord:
        with self.database.cursor() as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            if row is None:
                # Guard rejected the write; report the row that won.
                cur.execute(SELECT_SUBSCRIBER_SQL, params)
                row = cur.fetchone()
        return SubscriberRecord.from_row(row)

    def upsert_enabled(
        self,
        fid: int,
        app_fid: int,
        token: str,
        notification_url: str,
        observed_at: datetime,
    ) -> SubscriberRecord:
        return self._upsert(
            UPSERT_ENABLED_SQL,
            {
                "fid": fid,
                "app_fid": app_fid,
                "token": token,
                "notification_url": notification_url,
                "observed_at": observed_at,
            },
        )

    def upsert_disabled(self, fid: int, app_fid: int, observed_at: datetime) -> SubscriberRecord:
        return self._upsert(
            UPSERT_DISABLED_SQL,
            {"fid": fid, "app_fid": app_fid, "observed_at": observed_at},
        )

    def get_subscriber(self, fid: int, app_fid: int) -> SubscriberRecord | None:
        with self.database.cursor() as cur:
            cur.execute(SELECT_SUBSCRIBER_SQL, {"fid": fid, "app_fid": app_fid})
            row = cur.fetchone()
        return SubscriberRecord.from_row(row) if row else None

    def mark_welcome_sent(self, fid: int, app_fid: int, token: str, sent_at: datetime) -> bool:
        with self.database.cursor() as cur:
            cur.execute(
                MARK_WELCOME_SENT_SQL,
                {"fid": fid, "app_fid": app_fid, "token": token, "sent_at": sent_at},
            )
            return cur.rowcount > 0

    def list_enabled_subscribers(self, app_fid: int | None = None) -> list[Recipient]:
        sql = f"""
            select fid, app_fid, token, notification_url
            from {SUBSCRIBERS_TABLE}
            where enabled = true and token is not null and notification_url is not null
        """
        params: dict[str, Any] = {}
        if app_fid is not None:
            sql += " and app_fid = %(app_fid)s"
            params["app_fid"] = app_fid
        sql += " order by updated_at desc"
        with self.database.cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [
            Recipient(
                fid=int(row["fid"]),
                app_fid=int(row["app_fid"]),
                token=str(row["token"]),
                notification_url=str(row["notification_url"]),
            )
            for row in rows
        ]

    def prune_invalid_tokens(self, tokens: Iterable[str]) -> int:
        token_list = sorted({token for token in tokens if token})
        if not token_list:
            return 0
        with self.database.cursor() as cur:
            cur.execute(PRUNE_INVALID_TOKENS_SQL, {"tokens": token_list})
            return cur.rowcount

    def count_subscribers(self) -> tuple[int, int]:
        with self.database.cursor() as cur:
            cur.execute(
                f"""
                select count(*)::int as total,
                       count(*) filter (where enabled = true)::int as enabled
                from {SUBSCRIBERS_TABLE}
                """
            )
            row = cur.fetchone()
        return int(row["total"] or 0), int(row["enabled"] or 0)

    def list_subscribers_page(
        self,
        *,
        limit: int,
        offset: int,
        enabled_only: bool = False,
    ) -> tuple[int, list[SubscriberRecord]]:
        where = "where enabled = true" if enabled_only else ""
        with self.database.cursor() as cur:
            cur.execute(f"select count(*)::bigint as n from {SUBSCRIBERS_TABLE} {where}")
            total = int(cur.fetchone()["n"] or 0)
            cur.execute(
                f"""
                select {_SUBSCRIBER_COLUMNS}
                from {SUBSCRIBERS_TABLE}
                {where}
                order by updated_at desc
                limit %(limit)s offset %(offset)s
                """,
                {"limit": limit, "offset": offset},
            )
            rows = cur.fetchall()
        return total, [SubscriberRecord.from_row(row) for row in rows]

    def list_events_page(self, *, limit: int, offset: int) -> tuple[int, list[dict[str, Any]]]:
        with self.database.cursor() as cur:
            cur.execute(f"select count(*)::bigint as n from {EVENTS_TABLE}")
            total = int(cur.fetchone()["n"] or 0)
            cur.execute(
                f"""
                select id::text as id, received_at, decoded_header, decoded_payload
                from {EVENTS_TABLE}
                order by received_at desc
                limit %(limit)s offset %(offset)s
                """,
                {"limit": limit, "offset": offset},
            )
            rows = cur.fetchall()
        return total, [dict(row) for row in rows]

    def database_now(self) -> datetime:
        with self.database.cursor() as cur:
            cur.execute("select now() as now")
            return cur.fetchone()["now"]

    def close(self) -> None:
        self.database.close()
