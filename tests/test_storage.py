"""
Tests for MySQL storage with the connector mocked out.
"""

from unittest import mock

import mysql.connector
import pytest

from securechat.common.exceptions import DatabaseError
from securechat.common.protocol import CipherEnvelope
from securechat.storage import db


@pytest.fixture
def conn():
    """Patch mysql.connector.connect to return a mock connection."""
    connection = mock.MagicMock()
    with mock.patch.object(db.mysql.connector, "connect", return_value=connection):
        yield connection


def _cursor(conn):
    return conn.cursor.return_value


def _envelope(message_id="m1"):
    return CipherEnvelope(
        message_id=message_id,
        sender_id="alice",
        recipient_id="bob",
        ciphertext="ct",
        iv="iv",
        timestamp=1234,
    )


class TestConnection:

    def test_connect_failure(self):
        """Connector errors become DatabaseError."""
        with mock.patch.object(db.mysql.connector, "connect", side_effect=mysql.connector.Error("down")):
            with pytest.raises(DatabaseError):
                db.get_db_connection()

    def test_connection_parameters_from_env(self, monkeypatch):
        """DB_* variables are read at connect time."""
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PORT", "3307")
        monkeypatch.setenv("DB_NAME", "chat")
        monkeypatch.setenv("DB_USER", "relay")
        monkeypatch.setenv("DB_PASSWORD", "secret")

        with mock.patch.object(db.mysql.connector, "connect") as connect:
            db.get_db_connection()

        connect.assert_called_once_with(
            host="db.internal", port=3307, database="chat", user="relay", password="secret",
        )

    def test_init_db_creates_tables(self, conn):
        db.init_db()
        statements = [c.args[0] for c in _cursor(conn).execute.call_args_list]
        assert any("CREATE TABLE IF NOT EXISTS users" in s for s in statements)
        assert any("CREATE TABLE IF NOT EXISTS messages" in s for s in statements)
        conn.commit.assert_called_once()
        conn.close.assert_called_once()


class TestPresence:

    def test_set_user_online(self, conn):
        db.set_user_online("alice", "conn-1")
        sql, params = _cursor(conn).execute.call_args.args
        assert "ON DUPLICATE KEY UPDATE" in sql
        assert params[:2] == ("alice", "conn-1")
        conn.commit.assert_called_once()

    def test_set_user_offline(self, conn):
        db.set_user_offline("alice")
        _, params = _cursor(conn).execute.call_args.args
        assert params == ("alice",)

    def test_get_online_usernames(self, conn):
        _cursor(conn).fetchall.return_value = [("alice",), ("bob",)]
        assert db.get_online_usernames() == ["alice", "bob"]

    def test_is_username_taken(self, conn):
        _cursor(conn).fetchone.return_value = (1,)
        assert db.is_username_taken("alice")
        _cursor(conn).fetchone.return_value = None
        assert not db.is_username_taken("alice")

    def test_is_username_taken_empty(self):
        with pytest.raises(ValueError):
            db.is_username_taken("")

    def test_query_error_closes_connection(self, conn):
        _cursor(conn).execute.side_effect = mysql.connector.Error("boom")
        with pytest.raises(DatabaseError):
            db.set_user_offline("alice")
        conn.close.assert_called_once()


class TestMessages:

    def test_save_message(self, conn):
        db.save_message(_envelope())
        _, params = _cursor(conn).execute.call_args.args
        assert params == ("m1", "alice", "bob", "ct", "iv", 1234)
        conn.commit.assert_called_once()

    def test_save_duplicate(self, conn):
        """A duplicate message id is a DatabaseError."""
        _cursor(conn).execute.side_effect = mysql.connector.IntegrityError("duplicate")
        with pytest.raises(DatabaseError, match="already stored"):
            db.save_message(_envelope())

    def test_mark_delivered(self, conn):
        db.mark_delivered("m1")
        _, params = _cursor(conn).execute.call_args.args
        assert params[1] == "m1"

    def test_get_undelivered_messages(self, conn):
        _cursor(conn).fetchall.return_value = [
            ("m1", "alice", "bob", "ct1", "iv1", 1),
            ("m2", "carol", "bob", "ct2", "iv2", 2),
        ]

        envelopes = db.get_undelivered_messages("bob")

        assert [e.message_id for e in envelopes] == ["m1", "m2"]
        assert envelopes[1].sender_id == "carol"
        assert envelopes[1].timestamp == 2

    def test_get_message_history_paging(self, conn):
        _cursor(conn).fetchall.return_value = []
        db.get_message_history("alice", "bob", take=10, skip=20)
        _, params = _cursor(conn).execute.call_args.args
        assert params == ("alice", "bob", "bob", "alice", 10, 20)

    def test_get_message(self, conn):
        _cursor(conn).fetchone.return_value = ("m1", "alice", "bob", "ct", "iv", 1234)
        assert db.get_message("m1") == _envelope()

    def test_get_missing_message(self, conn):
        _cursor(conn).fetchone.return_value = None
        assert db.get_message("nope") is None
