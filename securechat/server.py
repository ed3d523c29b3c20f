#!/usr/bin/env python3
"""
SecureChat Relay Server

Relays messages between named clients without being able to read them:
1. Join: register a unique username, broadcast presence
2. Key exchange: forward DH offers and responses to the named recipient
3. Chat: forward ciphertext envelopes (singly or in a batch, one per
   recipient), confirm delivery to the sender
4. Leave/disconnect: broadcast that the user left

Messages are newline-delimited JSON (see securechat.common.protocol).
Ciphertext envelopes are optionally stored in MySQL for offline recipients.
"""

import logging
import socket
import threading
import uuid
from typing import Dict, List, Optional

from securechat.common.config import load_settings
from securechat.common.exceptions import DatabaseError, ProtocolError
from securechat.common.protocol import (
    CipherEnvelope,
    CipherBatchMessage,
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
    deserialize_message,
    serialize_message,
)
from securechat.storage import db

logger = logging.getLogger(__name__)


class ClientConnection:
    """One connected client socket."""

    def __init__(self, sock: socket.socket, address):
        self.sock = sock
        self.address = address
        self.connection_id = uuid.uuid4().hex[:8]
        self.username: Optional[str] = None
        self._send_lock = threading.Lock()
        self._reader = sock.makefile('rb')

    def send(self, msg):
        with self._send_lock:
            self.sock.sendall(serialize_message(msg))

    def lines(self):
        for line in self._reader:
            if line.strip():
                yield line

    def close(self):
        try:
            self._reader.close()
        finally:
            self.sock.close()


class SecureChatRelay:
    def __init__(self, host: str = None, port: int = None, persist: bool = None):
        settings = load_settings()
        self.host = host or settings.server_host
        self.port = port or settings.server_port
        self.persist = settings.persist_messages if persist is None else persist

        self._users: Dict[str, ClientConnection] = {}
        self._lock = threading.Lock()

        print(f"[*] SecureChat Relay initialized")
        print(f"    Listening on: {self.host}:{self.port}")
        print(f"    Persist messages: {self.persist}")

    def start(self):
        """Start the server and listen for connections."""
        server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server_socket.bind((self.host, self.port))
        server_socket.listen(5)

        print(f"\n[✓] Relay listening on {self.host}:{self.port}")
        print("[*] Waiting for clients...\n")

        try:
            while True:
                client_socket, address = server_socket.accept()
                logger.info("New connection from %s", address)

                conn = ClientConnection(client_socket, address)
                threading.Thread(target=self.handle_client, args=(conn,), daemon=True).start()

        except KeyboardInterrupt:
            print("\n[*] Relay shutting down...")
        finally:
            server_socket.close()

    def handle_client(self, conn: ClientConnection):
        """Read and dispatch messages from one client until it leaves."""
        try:
            for line in conn.lines():
                try:
                    msg = deserialize_message(line)
                except ProtocolError as e:
                    conn.send(ErrorMessage(code="BAD_MESSAGE", message=str(e)))
                    continue

                if not self.dispatch(conn, msg):
                    break

        except OSError as e:
            logger.info("Connection %s dropped: %s", conn.connection_id, e)
        finally:
            self.disconnect(conn)
            conn.close()
            logger.info("Client %s disconnected", conn.address)

    def dispatch(self, conn, msg) -> bool:
        """
        Handle one parsed message.

        Returns:
            False when the client asked to leave, True otherwise
        """
        if isinstance(msg, LeaveMessage):
            return False

        if isinstance(msg, JoinMessage):
            self.join(conn, msg.username)
            return True

        if conn.username is None:
            conn.send(ErrorMessage(code="NOT_JOINED", message="Join the chat first."))
            return True

        if isinstance(msg, GetOnlineUsersMessage):
            conn.send(UserListMessage(users=self.online_users()))
        elif isinstance(msg, KeyExchangeEnvelope):
            self.relay_key_exchange(conn, msg)
        elif isinstance(msg, CipherEnvelope):
            self.relay_cipher(conn, msg)
        elif isinstance(msg, CipherBatchMessage):
            for envelope in msg.envelopes:
                self.relay_cipher(conn, envelope)
        else:
            conn.send(ErrorMessage(code="BAD_MESSAGE", message=f"Unexpected message type: {msg.type}"))
        return True

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def online_users(self) -> List[str]:
        with self._lock:
            return sorted(self._users)

    def _lookup(self, username: str) -> Optional[ClientConnection]:
        with self._lock:
            return self._users.get(username)

    def _broadcast(self, msg):
        with self._lock:
            targets = list(self._users.values())
        for target in targets:
            try:
                target.send(msg)
            except OSError as e:
                logger.warning("Broadcast to %s failed: %s", target.username, e)

    def join(self, conn, username: str):
        """Register a client under a unique username."""
        username = (username or "").strip()
        if not username:
            conn.send(ErrorMessage(code="BAD_USERNAME", message="Username cannot be empty."))
            return

        if conn.username is not None:
            conn.send(ErrorMessage(code="BAD_USERNAME", message=f"Already joined as '{conn.username}'."))
            return

        with self._lock:
            if username in self._users:
                taken = True
            else:
                taken = False
                self._users[username] = conn
                conn.username = username

        if taken:
            conn.send(ErrorMessage(code="BAD_USERNAME", message="Username is already taken."))
            return

        logger.info("User '%s' joined (%s)", username, conn.connection_id)

        if self.persist:
            try:
                db.set_user_online(username, conn.connection_id)
            except DatabaseError as e:
                logger.error("Could not record presence for %s: %s", username, e)

        self._broadcast(UserJoinedMessage(username=username))
        users = self.online_users()
        conn.send(UserListMessage(users=users))
        conn.send(JoinConfirmedMessage(username=username, online_users=users))

        if self.persist:
            self._deliver_pending(conn)

    def _deliver_pending(self, conn):
        try:
            pending = db.get_undelivered_messages(conn.username)
        except DatabaseError as e:
            logger.error("Could not load pending messages for %s: %s", conn.username, e)
            return

        for envelope in pending:
            conn.send(envelope)
            try:
                db.mark_delivered(envelope.message_id)
            except DatabaseError as e:
                logger.error("Could not mark %s delivered: %s", envelope.message_id, e)

    def disconnect(self, conn):
        """Forget a client and tell everyone it left."""
        username = conn.username
        if username is None:
            return

        with self._lock:
            if self._users.get(username) is conn:
                del self._users[username]
            else:
                return
        conn.username = None

        logger.info("User '%s' left", username)

        if self.persist:
            try:
                db.set_user_offline(username)
            except DatabaseError as e:
                logger.error("Could not record presence for %s: %s", username, e)

        self._broadcast(UserLeftMessage(username=username))

    # ------------------------------------------------------------------
    # Relaying
    # ------------------------------------------------------------------

    def _check_sender(self, conn, envelope) -> bool:
        if envelope.sender_id != conn.username:
            conn.send(ErrorMessage(
                code="BAD_MESSAGE",
                message=f"Sender '{envelope.sender_id}' does not match '{conn.username}'."
            ))
            return False
        return True

    def _forward(self, conn, recipient, envelope) -> bool:
        try:
            recipient.send(envelope)
            return True
        except OSError as e:
            logger.warning("Forwarding to %s failed: %s", envelope.recipient_id, e)
            conn.send(ErrorMessage(code="NOT_ONLINE", message=f"User '{envelope.recipient_id}' is not reachable."))
            return False

    def relay_key_exchange(self, conn, envelope: KeyExchangeEnvelope):
        """Forward a DH offer or response. The relay cannot derive the key."""
        if not self._check_sender(conn, envelope):
            return

        recipient = self._lookup(envelope.recipient_id)
        if recipient is None:
            conn.send(ErrorMessage(code="NOT_ONLINE", message=f"User '{envelope.recipient_id}' is not online."))
            return

        if not self._forward(conn, recipient, envelope):
            return
        logger.debug("Relayed key exchange %s %s -> %s", envelope.kind, envelope.sender_id, envelope.recipient_id)

    def relay_cipher(self, conn, envelope: CipherEnvelope):
        """Forward an encrypted message and confirm delivery to the sender."""
        if not self._check_sender(conn, envelope):
            return

        stored = False
        if self.persist:
            try:
                db.save_message(envelope)
                stored = True
            except DatabaseError as e:
                logger.error("Could not store message %s: %s", envelope.message_id, e)

        recipient = self._lookup(envelope.recipient_id)
        if recipient is None:
            if not stored:
                conn.send(ErrorMessage(code="NOT_ONLINE", message=f"User '{envelope.recipient_id}' is not online."))
            return

        if not self._forward(conn, recipient, envelope):
            return
        conn.send(DeliveredMessage(message_id=envelope.message_id))

        if stored:
            try:
                db.mark_delivered(envelope.message_id)
            except DatabaseError as e:
                logger.error("Could not mark %s delivered: %s", envelope.message_id, e)


def main():
    print("="*70)
    print("  SECURECHAT RELAY")
    print("="*70 + "\n")

    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Initialize database
    if settings.persist_messages:
        try:
            db.init_db()
        except DatabaseError as e:
            print(f"[!] Database initialization failed: {e}")
            print("[!] Please check your MySQL configuration in .env")
            return

    # Start server
    relay = SecureChatRelay()
    relay.start()


if __name__ == "__main__":
    main()
