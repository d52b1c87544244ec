from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import pytest

from miniapp_notify.observability import reset_metrics
from miniapp_notify.store import Recipient, SubscriberRecord


def b64url(obj) -> str:
    raw = json.dumps(obj).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def envelope(header, payload, signature: str = "sig") -> dict:
    return {"header": b64url(header), "payload": b64url(payload), "signature": signature}


def ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class FakeSubscriberStore:
    """In-memory stand-in for SubscriberStore with the same ordering guard."""

    def __init__(self):
        self.rows: dict[tuple[int, int], dict] = {}
        self.events: list[dict] = []
        self.pruned_calls: list[set[str]] = []
        self.schema_calls = 0
        self.closed = False
        self.fail_on: set[str] = set()

    def _maybe_fail(self, op: str):
        if op in self.fail_on:
            raise RuntimeError(f"{op} exploded")

    def ensure_schema(self):
        self._maybe_fail("ensure_schema")
        self.schema_calls += 1

    def record_event(self, raw, header, payload, *, received_at):
        self._maybe_fail("record_event")
        self.events.append(
            {
                "id": str(len(self.events) + 1),
                "body": raw,
                "decoded_header": header,
                "decoded_payload": payload,
                "received_at": received_at,
            }
        )
        return len(self.events)

    def _upsert(self, fid, app_fid, values, observed_at):
        key = (fid, app_fid)
        existing = self.rows.get(key)
        if existing is None:
            self.rows[key] = {
                "fid": fid,
                "app_fid": app_fid,
                "welcome_sent_for_token": None,
                "welcome_sent_at": None,
                "updated_at": observed_at,
                **values,
            }
        elif existing["updated_at"] <= observed_at:
            existing.update(values)
            existing["updated_at"] = observed_at
        return SubscriberRecord.from_row(self.rows[key])

    def upsert_enabled(self, fid, app_fid, token, notification_url, observed_at):
        self._maybe_fail("upsert_enabled")
        return self._upsert(
            fid,
            app_fid,
            {"token": token, "notification_url": notification_url, "enabled": True},
            observed_at,
        )

    def upsert_disabled(self, fid, app_fid, observed_at):
        return self._upsert(
            fid,
            app_fid,
            {"token": None, "notification_url": None, "enabled": False},
            observed_at,
        )

    def get_subscriber(self, fid, app_fid):
        row = self.rows.get((fid, app_fid))
        return SubscriberRecord.from_row(row) if row else None

    def mark_welcome_sent(self, fid, app_fid, token, sent_at):
        row = self.rows.get((fid, app_fid))
        if row is None or row["token"] != token:
            return False
        row["welcome_sent_for_token"] = token
        row["welcome_sent_at"] = sent_at
        return True

    def list_enabled_subscribers(self, app_fid=None):
        rows = [
            row
            for row in self.rows.values()
            if row["enabled"] and row["token"] and row["notification_url"]
            and (app_fid is None or row["app_fid"] == app_fid)
        ]
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return [
            Recipient(
                fid=row["fid"],
                app_fid=row["app_fid"],
                token=row["token"],
                notification_url=row["notification_url"],
            )
            for row in rows
        ]

    def prune_invalid_tokens(self, tokens):
        tokens = set(tokens)
        self.pruned_calls.append(tokens)
        count = 0
        for row in self.rows.values():
            if row["token"] in tokens:
                row.update(
                    {
                        "token": None,
                        "notification_url": None,
                        "enabled": False,
                        "updated_at": datetime.now(timezone.utc),
                    }
                )
                count += 1
        return count

    def count_subscribers(self):
        total = len(self.rows)
        enabled = sum(1 for row in self.rows.values() if row["enabled"])
        return total, enabled

    def list_subscribers_page(self, *, limit, offset, enabled_only=False):
        rows = [row for row in self.rows.values() if row["enabled"] or not enabled_only]
        rows.sort(key=lambda row: row["updated_at"], reverse=True)
        return len(rows), [SubscriberRecord.from_row(row) for row in rows[offset:offset + limit]]

    def list_events_page(self, *, limit, offset):
        rows = sorted(self.events, key=lambda row: row["received_at"], reverse=True)
        return len(rows), rows[offset:offset + limit]

    def database_now(self):
        self._maybe_fail("database_now")
        return datetime(2026, 1, 1, tzinfo=timezone.utc)

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()
