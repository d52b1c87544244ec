import json
import logging
from datetime import datetime, timezone

from miniapp_notify.observability import (
    incr_metric,
    log_event,
    mask_token,
    metric_key,
    metrics_snapshot,
    reset_metrics,
)


def test_metric_keys_sort_labels():
    assert metric_key("webhook.events.received") == "webhook.events.received"
    assert metric_key("x", b=2, a="1") == "x|a=1,b=2"


def test_counters_accumulate_and_reset():
    incr_metric("welcome.sent")
    incr_metric("welcome.sent")
    incr_metric("subscribers.tokens.pruned", value=5)
    incr_metric("notifications.batches.sent", status_code=200)

    snapshot = metrics_snapshot()
    assert snapshot["welcome.sent"] == 2
    assert snapshot["subscribers.tokens.pruned"] == 5
    assert snapshot["notifications.batches.sent|status_code=200"] == 1

    reset_metrics()
    assert metrics_snapshot() == {}


def test_log_event_emits_sorted_json(caplog):
    with caplog.at_level(logging.INFO, logger="miniapp_notify"):
        log_event(
            "welcome_sent",
            request_id="req-1",
            fid=372916,
            at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            tokens=("a",),
        )

    record = caplog.records[-1]
    payload = json.loads(record.getMessage())
    assert payload["event"] == "welcome_sent"
    assert payload["request_id"] == "req-1"
    assert payload["fid"] == 372916
    assert payload["at"] == "2026-01-01 00:00:00+00:00"
    assert payload["tokens"] == ["a"]


def test_mask_token():
    assert mask_token(None) == ""
    assert mask_token("   ") == ""
    assert mask_token("abc") == "ab…"
    assert mask_token("0123456789") == "01…"
    assert mask_token("0123456789abcdef") == "01234567…cdef"
