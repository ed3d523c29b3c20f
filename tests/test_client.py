"""
Tests for the console client's message handling, with two clients wired
directly to each other instead of through a relay.
"""

import pytest

from securechat.common.protocol import (
    CipherBatchMessage,
    CipherEnvelope,
    DeliveredMessage,
    JoinConfirmedMessage,
    KeyExchangeEnvelope,
    UserJoinedMessage,
    UserLeftMessage,
)
from securechat.client import SecureChatClient
from securechat.session import SessionState


@pytest.fixture
def pair(monkeypatch):
    monkeypatch.delenv("CIPHER_MODE", raising=False)
    alice = SecureChatClient("alice", host="127.0.0.1", port=0)
    bob = SecureChatClient("bob", host="127.0.0.1", port=0)
    alice.outbox, bob.outbox = [], []
    alice._send = alice.outbox.append
    bob._send = bob.outbox.append

    alice.handle_message(JoinConfirmedMessage(username="alice", online_users=["alice", "bob"]))
    bob.handle_message(JoinConfirmedMessage(username="bob", online_users=["alice", "bob"]))

    yield alice, bob

    alice.registry.teardown()
    bob.registry.teardown()


def pump(src, dst):
    """Deliver everything src has queued to dst."""
    while src.outbox:
        dst.handle_message(src.outbox.pop(0))


def test_online_users_exclude_self(pair):
    alice, _ = pair
    assert alice.online_users == {"bob"}
    assert alice.joined.is_set()


def test_user_joined(pair):
    alice, _ = pair
    alice.handle_message(UserJoinedMessage(username="carol"))
    alice.handle_message(UserJoinedMessage(username="alice"))
    assert alice.online_users == {"bob", "carol"}


def test_select_offline_partner(pair):
    alice, _ = pair
    alice.select_partner("carol")
    assert alice.selected_partner is None
    assert alice.outbox == []


def test_handshake_and_chat(pair):
    alice, bob = pair

    alice.select_partner("bob")
    assert isinstance(alice.outbox[0], KeyExchangeEnvelope)
    pump(alice, bob)
    pump(bob, alice)

    assert alice.registry.is_established("bob")
    assert bob.registry.is_established("alice")

    sent = alice.send_chat("hello bob")
    envelope = alice.outbox[-1]
    assert isinstance(envelope, CipherEnvelope)
    assert "hello bob" not in envelope.model_dump_json()

    pump(alice, bob)
    received = bob.messages_by_user["alice"]
    assert [m.content for m in received] == ["hello bob"]

    alice.handle_message(DeliveredMessage(message_id=sent.message_id))
    assert alice.messages_by_user["bob"][0].delivered


def test_simultaneous_selection(pair):
    alice, bob = pair

    alice.select_partner("bob")
    bob.select_partner("alice")
    pump(alice, bob)
    pump(bob, alice)
    pump(alice, bob)

    assert alice.registry.is_established("bob")
    assert bob.registry.is_established("alice")

    bob.send_chat("crossed")
    pump(bob, alice)
    assert alice.messages_by_user["bob"][0].content == "crossed"


def test_send_without_partner(pair):
    alice, _ = pair
    assert alice.send_chat("hi") is None


def test_partner_left_resets_session(pair):
    alice, bob = pair
    alice.select_partner("bob")
    pump(alice, bob)
    pump(bob, alice)

    alice.handle_message(UserLeftMessage(username="bob"))

    assert alice.registry.state("bob") is SessionState.NONE
    assert alice.selected_partner is None
    assert "bob" not in alice.online_users


def test_bad_key_exchange_is_logged_not_raised(pair):
    alice, _ = pair
    alice.handle_message(KeyExchangeEnvelope(
        kind="response", sender_id="bob", recipient_id="alice", public_value="AAEC",
    ))
    assert not alice.registry.is_established("bob")


def test_notifications_consumed(pair):
    alice, bob = pair
    for _ in range(3):
        alice.select_partner("bob")
        pump(alice, bob)
        pump(bob, alice)
        alice.handle_message(UserLeftMessage(username="bob"))
        bob.handle_message(UserLeftMessage(username="alice"))
        alice.online_users.add("bob")
        bob.online_users.add("alice")

    assert alice.registry.notifications.qsize() == 0
    assert bob.registry.notifications.qsize() == 0


def test_user_left_after_teardown(pair):
    alice, _ = pair
    alice.registry.teardown()
    alice.handle_message(UserLeftMessage(username="bob"))
    assert "bob" not in alice.online_users


def test_reselect_resends_pending_offer(pair):
    alice, bob = pair
    alice.select_partner("bob")
    first = alice.outbox.pop()

    alice.select_partner("bob")

    assert len(alice.outbox) == 1
    assert alice.outbox[0].kind == "offer"
    assert alice.outbox[0].public_value == first.public_value


def test_reselect_established_sends_nothing(pair):
    alice, bob = pair
    alice.select_partner("bob")
    pump(alice, bob)
    pump(bob, alice)

    alice.select_partner("bob")
    assert alice.outbox == []


def test_broadcast_chat(pair):
    alice, bob = pair
    alice.select_partner("bob")
    pump(alice, bob)
    pump(bob, alice)
    alice.registry.begin_session("carol")
    alice.registry.drain_notifications()

    sent = alice.broadcast_chat("to everyone")

    batch = alice.outbox.pop()
    assert isinstance(batch, CipherBatchMessage)
    assert [e.recipient_id for e in batch.envelopes] == ["bob"]
    assert [m.content for m in sent] == ["to everyone"]

    for envelope in batch.envelopes:
        bob.handle_message(envelope)
    assert bob.messages_by_user["alice"][0].content == "to everyone"


def test_broadcast_without_channels(pair):
    alice, _ = pair
    assert alice.broadcast_chat("anyone?") == []
    assert alice.outbox == []
