"""
Tests for the relay's dispatch logic, using in-memory connections.
"""

from unittest import mock

import pytest

from securechat.common.exceptions import DatabaseError
from securechat.common.protocol import (
    CipherBatchMessage,
    CipherEnvelope,
    DeliveredMessage,
    ErrorMessage,
    GetOnlineUsersMessage,
    JoinConfirmedMessage,
    JoinMessage,
    KeyExchangeEnvelope,
    LeaveMessage,
    UserJoinedMessage,
    UserLeftMessage,
    UserListMessage,
)
from securechat.server import SecureChatRelay


class FakeConnection:
    """Stands in for ClientConnection and records what was sent."""

    def __init__(self, connection_id="c0", fail=False):
        self.connection_id = connection_id
        self.username = None
        self.sent = []
        self.fail = fail

    def send(self, msg):
        if self.fail:
            raise OSError("connection reset")
        self.sent.append(msg)

    def of_type(self, cls):
        return [m for m in self.sent if isinstance(m, cls)]

    def errors(self):
        return [m.code for m in self.of_type(ErrorMessage)]


@pytest.fixture
def relay():
    return SecureChatRelay(host="127.0.0.1", port=0, persist=False)


def joined(relay, username):
    conn = FakeConnection(connection_id=f"id-{username}")
    relay.dispatch(conn, JoinMessage(username=username))
    return conn


def offer(sender, recipient):
    return KeyExchangeEnvelope(kind="offer", sender_id=sender, recipient_id=recipient, public_value="AAEC")


def cipher(sender, recipient, message_id="m1"):
    return CipherEnvelope(
        message_id=message_id, sender_id=sender, recipient_id=recipient, ciphertext="ct", iv="iv",
    )


class TestJoin:

    def test_join_confirms(self, relay):
        alice = joined(relay, "alice")

        assert alice.username == "alice"
        confirmed = alice.of_type(JoinConfirmedMessage)
        assert confirmed[0].online_users == ["alice"]
        assert relay.online_users() == ["alice"]

    def test_join_broadcasts_presence(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        assert [m.username for m in alice.of_type(UserJoinedMessage)] == ["alice", "bob"]
        assert bob.of_type(JoinConfirmedMessage)[0].online_users == ["alice", "bob"]

    def test_duplicate_username(self, relay):
        joined(relay, "alice")
        again = joined(relay, "alice")

        assert again.username is None
        assert again.errors() == ["BAD_USERNAME"]

    @pytest.mark.parametrize("name", ["", "   "])
    def test_empty_username(self, relay, name):
        conn = joined(relay, name)
        assert conn.errors() == ["BAD_USERNAME"]
        assert relay.online_users() == []

    def test_join_twice(self, relay):
        alice = joined(relay, "alice")
        relay.dispatch(alice, JoinMessage(username="alicia"))

        assert alice.errors() == ["BAD_USERNAME"]
        assert relay.online_users() == ["alice"]

    def test_must_join_first(self, relay):
        conn = FakeConnection()
        assert relay.dispatch(conn, GetOnlineUsersMessage())
        assert conn.errors() == ["NOT_JOINED"]

    def test_get_users(self, relay):
        alice = joined(relay, "alice")
        joined(relay, "bob")
        alice.sent.clear()

        relay.dispatch(alice, GetOnlineUsersMessage())

        assert alice.sent == [UserListMessage(users=["alice", "bob"])]


class TestRelaying:

    def test_key_exchange_forwarded(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        envelope = offer("alice", "bob")
        relay.dispatch(alice, envelope)

        assert bob.of_type(KeyExchangeEnvelope) == [envelope]
        assert alice.errors() == []

    def test_key_exchange_to_offline_user(self, relay):
        alice = joined(relay, "alice")
        relay.dispatch(alice, offer("alice", "bob"))
        assert alice.errors() == ["NOT_ONLINE"]

    def test_spoofed_sender(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        relay.dispatch(alice, offer("carol", "bob"))
        relay.dispatch(alice, cipher("carol", "bob"))

        assert alice.errors() == ["BAD_MESSAGE", "BAD_MESSAGE"]
        assert bob.of_type(KeyExchangeEnvelope) == []
        assert bob.of_type(CipherEnvelope) == []

    def test_cipher_forwarded_and_confirmed(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        envelope = cipher("alice", "bob")
        relay.dispatch(alice, envelope)

        assert bob.of_type(CipherEnvelope) == [envelope]
        assert alice.of_type(DeliveredMessage) == [DeliveredMessage(message_id="m1")]

    def test_cipher_to_offline_user(self, relay):
        alice = joined(relay, "alice")
        relay.dispatch(alice, cipher("alice", "bob"))

        assert alice.errors() == ["NOT_ONLINE"]
        assert alice.of_type(DeliveredMessage) == []

    def test_unreachable_recipient(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")
        bob.fail = True

        relay.dispatch(alice, cipher("alice", "bob"))

        assert alice.errors() == ["NOT_ONLINE"]
        assert alice.of_type(DeliveredMessage) == []

    def test_batch_relayed_per_recipient(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")
        carol = joined(relay, "carol")

        to_bob = cipher("alice", "bob", message_id="m1")
        to_carol = cipher("alice", "carol", message_id="m2")
        to_dave = cipher("alice", "dave", message_id="m3")
        relay.dispatch(alice, CipherBatchMessage(envelopes=[to_bob, to_carol, to_dave]))

        assert bob.of_type(CipherEnvelope) == [to_bob]
        assert carol.of_type(CipherEnvelope) == [to_carol]
        assert [m.message_id for m in alice.of_type(DeliveredMessage)] == ["m1", "m2"]
        assert alice.errors() == ["NOT_ONLINE"]

    def test_batch_spoofed_entries_refused(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        relay.dispatch(alice, CipherBatchMessage(envelopes=[cipher("carol", "bob")]))

        assert bob.of_type(CipherEnvelope) == []
        assert alice.errors() == ["BAD_MESSAGE"]

    def test_unexpected_type(self, relay):
        alice = joined(relay, "alice")
        relay.dispatch(alice, UserListMessage(users=[]))
        assert alice.errors() == ["BAD_MESSAGE"]


class TestLeave:

    def test_leave_stops_dispatch(self, relay):
        alice = joined(relay, "alice")
        assert relay.dispatch(alice, LeaveMessage()) is False

    def test_disconnect_broadcasts(self, relay):
        alice = joined(relay, "alice")
        bob = joined(relay, "bob")

        relay.disconnect(alice)

        assert relay.online_users() == ["bob"]
        assert bob.of_type(UserLeftMessage) == [UserLeftMessage(username="alice")]
        assert alice.username is None

    def test_disconnect_before_join(self, relay):
        bob = joined(relay, "bob")
        relay.disconnect(FakeConnection())
        assert bob.of_type(UserLeftMessage) == []

    def test_name_free_after_leave(self, relay):
        alice = joined(relay, "alice")
        relay.disconnect(alice)
        again = joined(relay, "alice")
        assert again.username == "alice"


class TestPersistence:

    @pytest.fixture
    def store(self):
        with mock.patch("securechat.server.db") as store:
            store.get_undelivered_messages.return_value = []
            yield store

    @pytest.fixture
    def relay(self, store):
        return SecureChatRelay(host="127.0.0.1", port=0, persist=True)

    def test_presence_recorded(self, relay, store):
        alice = joined(relay, "alice")
        relay.disconnect(alice)

        store.set_user_online.assert_called_once_with("alice", "id-alice")
        store.set_user_offline.assert_called_once_with("alice")

    def test_delivered_message_marked(self, relay, store):
        alice = joined(relay, "alice")
        joined(relay, "bob")

        envelope = cipher("alice", "bob")
        relay.dispatch(alice, envelope)

        store.save_message.assert_called_once_with(envelope)
        store.mark_delivered.assert_called_once_with("m1")

    def test_offline_recipient_stored(self, relay, store):
        alice = joined(relay, "alice")
        relay.dispatch(alice, cipher("alice", "bob"))

        assert alice.errors() == []
        store.mark_delivered.assert_not_called()

    def test_pending_delivered_on_join(self, relay, store):
        pending = cipher("alice", "bob", message_id="old")
        store.get_undelivered_messages.return_value = [pending]

        bob = joined(relay, "bob")

        assert bob.of_type(CipherEnvelope) == [pending]
        store.mark_delivered.assert_called_once_with("old")

    def test_store_failure_falls_back(self, relay, store):
        store.save_message.side_effect = DatabaseError("down")
        alice = joined(relay, "alice")
        relay.dispatch(alice, cipher("alice", "bob"))
        assert alice.errors() == ["NOT_ONLINE"]
