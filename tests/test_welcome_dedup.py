import uuid
from types import SimpleNamespace

from miniapp_notify.domain.welcome import should_send_welcome, welcome_confirmed, welcome_message_id
from miniapp_notify.providers.farcaster.client import DispatchResult


def _result(status_code=200, parsed=True, **tokens):
    return DispatchResult(url="https://api.example/notify", status_code=status_code, batch_size=1, parsed=parsed, **tokens)


def test_welcome_message_id_is_stable_uuid_per_fid_and_token():
    first = welcome_message_id(372916, "tok-1")
    assert first == welcome_message_id(372916, "tok-1")
    assert str(uuid.UUID(first)) == first
    assert welcome_message_id(372916, "tok-2") != first
    assert welcome_message_id(1, "tok-1") != first


def test_should_send_welcome_only_for_new_tokens():
    assert should_send_welcome(None, "tok-1") is True
    assert should_send_welcome(SimpleNamespace(welcome_sent_for_token=None), "tok-1") is True
    assert should_send_welcome(SimpleNamespace(welcome_sent_for_token="tok-1"), "tok-1") is False
    assert should_send_welcome(SimpleNamespace(welcome_sent_for_token="tok-1"), "tok-2") is True


def test_welcome_confirmed_requires_ok_status_and_no_bad_lists():
    assert welcome_confirmed(_result(successful_tokens=["tok-1"]), "tok-1") is True
    # provider omitted successfulTokens entirely
    assert welcome_confirmed(_result(), "tok-1") is True

    assert welcome_confirmed(_result(status_code=500), "tok-1") is False
    assert welcome_confirmed(_result(parsed=False), "tok-1") is False
    assert welcome_confirmed(_result(rate_limited_tokens=["tok-1"]), "tok-1") is False
    assert welcome_confirmed(_result(invalid_tokens=["tok-1"]), "tok-1") is False
    assert welcome_confirmed(_result(successful_tokens=["other"]), "tok-1") is False
