import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeSubscriberStore, envelope, ts

from miniapp_notify.config import settings
from miniapp_notify.domain.welcome import welcome_message_id
from miniapp_notify.main import app
from miniapp_notify.observability import metrics_snapshot
from miniapp_notify.providers.farcaster import client as farcaster_client
from miniapp_notify.providers.farcaster.client import DispatchResult, FarcasterNotificationError
from miniapp_notify.routers import webhooks as webhooks_router


FID = 372916
NOTIFY_URL = "https://api.farcaster.xyz/v1/frame-notifications"


def _enabled(token: str, url: str = NOTIFY_URL, fid=FID) -> dict:
    return envelope(
        {"fid": fid, "type": "app_key", "key": "0xabc"},
        {"event": "notifications_enabled", "notificationDetails": {"url": url, "token": token}},
    )


def _disabled(fid=FID) -> dict:
    return envelope({"fid": fid}, {"event": "notifications_disabled"})


@pytest.fixture
def store():
    fake = FakeSubscriberStore()
    previous = app.state.store
    app.state.store = fake
    yield fake
    app.state.store = previous


@pytest.fixture
def sends(monkeypatch):
    calls: list[dict] = []

    def _fake_send(url, tokens, **kwargs):
        calls.append({"url": url, "tokens": list(tokens), **kwargs})
        return DispatchResult(url=url, status_code=200, batch_size=len(tokens), parsed=True, successful_tokens=list(tokens))

    monkeypatch.setattr(farcaster_client, "send_notification", _fake_send)
    monkeypatch.setattr(settings, "welcome_enabled", True)
    return calls


def test_enable_sends_one_welcome_per_token_and_disable_clears(store, sends, monkeypatch):
    clock = {"now": ts(100)}
    monkeypatch.setattr(webhooks_router, "_now", lambda: clock["now"])
    client = TestClient(app)

    first = client.post("/api/farcaster/webhook", json=_enabled("tok-1"))
    assert first.status_code == 200
    assert first.json() == {
        "ok": True,
        "event": "notifications_enabled",
        "fid": FID,
        "appFid": settings.app_fid,
        "enabled": True,
        "welcome": "sent",
    }
    assert len(sends) == 1
    assert sends[0]["url"] == NOTIFY_URL
    assert sends[0]["tokens"] == ["tok-1"]
    assert sends[0]["notification_id"] == welcome_message_id(FID, "tok-1")
    row = store.rows[(FID, settings.app_fid)]
    assert row["welcome_sent_for_token"] == "tok-1"
    assert row["welcome_sent_at"] == ts(100)

    clock["now"] = ts(200)
    redelivered = client.post("/api/farcaster/webhook", json=_enabled("tok-1"))
    assert redelivered.status_code == 200
    assert redelivered.json()["welcome"] == "skipped"
    assert len(sends) == 1

    clock["now"] = ts(300)
    rotated = client.post("/api/farcaster/webhook", json=_enabled("tok-2"))
    assert rotated.json()["welcome"] == "sent"
    assert len(sends) == 2
    assert sends[1]["tokens"] == ["tok-2"]
    assert store.rows[(FID, settings.app_fid)]["token"] == "tok-2"

    clock["now"] = ts(400)
    disabled = client.post("/api/farcaster/webhook", json=_disabled())
    assert disabled.status_code == 200
    assert disabled.json()["enabled"] is False
    row = store.rows[(FID, settings.app_fid)]
    assert row["token"] is None
    assert row["notification_url"] is None
    assert row["updated_at"] == ts(400)

    assert len(store.events) == 4
    assert store.events[0]["body"]["signature"] == "sig"
    assert store.events[0]["decoded_header"]["fid"] == FID
    assert metrics_snapshot()["welcome.sent"] == 2
    assert metrics_snapshot()["welcome.skipped"] == 1


def test_out_of_order_disable_does_not_override_newer_enable(store, sends, monkeypatch):
    clock = {"now": ts(100)}
    monkeypatch.setattr(webhooks_router, "_now", lambda: clock["now"])
    client = TestClient(app)

    client.post("/api/farcaster/webhook", json=_enabled("tok-1"))
    clock["now"] = ts(50)
    stale = client.post("/api/farcaster/webhook", json=_disabled())

    assert stale.status_code == 200
    body = stale.json()
    assert body["note"] == "stale_event"
    assert body["enabled"] is True
    row = store.rows[(FID, settings.app_fid)]
    assert row["enabled"] is True
    assert row["token"] == "tok-1"
    assert row["updated_at"] == ts(100)
    assert len(store.events) == 2


def test_stale_enable_does_not_send_welcome(store, sends, monkeypatch):
    clock = {"now": ts(100)}
    monkeypatch.setattr(webhooks_router, "_now", lambda: clock["now"])
    client = TestClient(app)

    client.post("/api/farcaster/webhook", json=_disabled())
    clock["now"] = ts(50)
    stale = client.post("/api/farcaster/webhook", json=_enabled("tok-1"))

    assert stale.json()["note"] == "stale_event"
    assert "welcome" not in stale.json()
    assert sends == []
    assert store.rows[(FID, settings.app_fid)]["enabled"] is False


def test_unusable_events_are_acknowledged_and_recorded(store, sends):
    client = TestClient(app)

    no_fid = client.post(
        "/api/farcaster/webhook",
        json=envelope({}, {"event": "notifications_enabled", "notificationDetails": {"url": NOTIFY_URL, "token": "t"}}),
    )
    assert no_fid.status_code == 200
    assert no_fid.json()["note"] == "no_fid"

    bool_fid = client.post("/api/farcaster/webhook", json=_enabled("t", fid=True))
    assert bool_fid.json()["note"] == "no_fid"

    unknown = client.post("/api/farcaster/webhook", json=envelope({"fid": FID}, {"event": "frame_added"}))
    assert unknown.status_code == 200
    assert unknown.json()["event"] == "frame_added"
    assert unknown.json()["note"] == "ignored_event"

    missing_details = client.post(
        "/api/farcaster/webhook",
        json=envelope({"fid": FID}, {"event": "notifications_enabled"}),
    )
    assert missing_details.status_code == 200
    assert missing_details.json()["note"] == "missing_token_or_url"
    assert missing_details.json()["enabled"] is False

    garbage = client.post("/api/farcaster/webhook", json={"header": "%%%", "payload": "%%%", "signature": "x"})
    assert garbage.status_code == 200
    assert garbage.json()["note"] == "no_fid"

    assert store.rows == {}
    assert sends == []
    assert len(store.events) == 5
    assert store.events[-1]["decoded_header"] is None
    assert store.events[-1]["decoded_payload"] is None


def test_welcome_outcomes_for_provider_responses(store, monkeypatch):
    client = TestClient(app)
    monkeypatch.setattr(settings, "welcome_enabled", True)

    monkeypatch.setattr(
        farcaster_client,
        "send_notification",
        lambda url, tokens, **kwargs: DispatchResult(
            url=url, status_code=200, batch_size=1, parsed=True, rate_limited_tokens=list(tokens)
        ),
    )
    limited = client.post("/api/farcaster/webhook", json=_enabled("tok-rl"))
    assert limited.json()["welcome"] == "rate_limited"
    assert store.rows[(FID, settings.app_fid)]["welcome_sent_for_token"] is None

    def _raise(url, tokens, **kwargs):
        raise FarcasterNotificationError("Notification request timed out: x")

    monkeypatch.setattr(farcaster_client, "send_notification", _raise)
    failed = client.post("/api/farcaster/webhook", json=_enabled("tok-rl"))
    assert failed.status_code == 200
    assert failed.json()["welcome"] == "failed"

    monkeypatch.setattr(
        farcaster_client,
        "send_notification",
        lambda url, tokens, **kwargs: DispatchResult(
            url=url, status_code=200, batch_size=1, parsed=True, invalid_tokens=list(tokens)
        ),
    )
    invalid = client.post("/api/farcaster/webhook", json=_enabled("tok-bad"))
    assert invalid.json()["welcome"] == "invalid"
    assert store.pruned_calls == [{"tok-bad"}]
    assert store.rows[(FID, settings.app_fid)]["enabled"] is False

    monkeypatch.setattr(settings, "welcome_enabled", False)
    off = client.post("/api/farcaster/webhook", json=_enabled("tok-off"))
    assert off.json()["welcome"] == "disabled"


def test_bad_requests_and_method_not_allowed(store):
    client = TestClient(app)

    missing = client.post("/api/farcaster/webhook", json={"header": "abc"})
    assert missing.status_code == 400
    assert missing.json()["error"] == "missing_header_or_payload"

    not_json = client.post(
        "/api/farcaster/webhook",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert not_json.status_code == 400
    assert not_json.json()["error"] == "bad_request"

    not_object = client.post("/api/farcaster/webhook", json=["header", "payload"])
    assert not_object.status_code == 400

    wrong_method = client.get("/api/farcaster/webhook")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["ok"] is False
    assert wrong_method.json()["error"] == "method_not_allowed"

    assert store.events == []


def test_storage_failure_returns_webhook_failed(store, sends):
    store.fail_on = {"upsert_enabled"}
    client = TestClient(app)
    response = client.post("/api/farcaster/webhook", json=_enabled("tok-1"))
    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "webhook_failed", "message": "Webhook processing failed"}
    assert len(store.events) == 1
    assert metrics_snapshot()["webhook.events.failed|provider_slug=farcaster"] == 1


def test_missing_store_is_server_misconfigured():
    previous = app.state.store
    app.state.store = None
    try:
        response = TestClient(app).post("/api/farcaster/webhook", json=_enabled("tok-1"))
    finally:
        app.state.store = previous
    assert response.status_code == 500
    assert response.json()["error"] == "server_misconfigured"


def test_unexpected_errors_use_internal_envelope(store, monkeypatch):
    def _explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(webhooks_router, "decode_envelope", _explode)
    client = TestClient(app, raise_server_exceptions=False)
    response = client.post("/api/farcaster/webhook", json=_enabled("tok-1"))
    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert response.json()["error"] == "internal"


def test_ping_and_health():
    client = TestClient(app)
    assert client.get("/api/ping").json() == {"ok": True, "method": "GET"}
    assert client.delete("/api/ping").json() == {"ok": True, "method": "DELETE"}
    assert client.get("/health").json() == {"status": "healthy"}
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_malformed_notification_url_is_not_stored(store, sends):
    client = TestClient(app)
    for url in ("http://[::1", "ftp://push.example/send", "not a url"):
        response = client.post("/api/farcaster/webhook", json=_enabled("tok-1", url=url))
        assert response.status_code == 200
        assert response.json()["note"] == "missing_token_or_url"
        assert response.json()["enabled"] is False

    assert store.rows == {}
    assert sends == []
    assert len(store.events) == 3


def test_slow_welcome_send_does_not_stall_other_requests(store, monkeypatch):
    monkeypatch.setattr(settings, "welcome_enabled", True)
    sending = threading.Event()

    def _slow_send(url, tokens, **kwargs):
        sending.set()
        time.sleep(1.0)
        return DispatchResult(url=url, status_code=200, batch_size=len(tokens), parsed=True, successful_tokens=list(tokens))

    monkeypatch.setattr(farcaster_client, "send_notification", _slow_send)
    responses: list = []

    with TestClient(app) as client:
        worker = threading.Thread(
            target=lambda: responses.append(client.post("/api/farcaster/webhook", json=_enabled("tok-1")))
        )
        worker.start()
        assert sending.wait(timeout=5)

        started = time.monotonic()
        health = client.get("/health")
        elapsed = time.monotonic() - started
        worker.join(timeout=5)

    assert health.status_code == 200
    assert elapsed < 0.5
    assert responses[0].json()["welcome"] == "sent"
