#!/usr/bin/env python3
"""
SecureChat Client

Console client for the relay. Keeps one SessionRegistry for the local user:
selecting a partner starts a DH key exchange, and chat messages are
encrypted with the per-partner key. The relay only ever sees public values
and ciphertext.

Commands:
    /users          refresh the online user list
    /chat <user>    select a partner (starts the key exchange, or resends
                    a pending offer)
    /all <text>     send to every partner with an established channel
    /exit           leave
"""

import argparse
import logging
import socket
import threading
from typing import Dict, List, Optional, Set

from securechat.common.config import load_settings
from securechat.common.exceptions import ProtocolError, SecureChatException
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
    PlaintextMessage,
    UserJoinedMessage,
    UserLeftMessage,
    UserListMessage,
    deserialize_message,
    serialize_message,
)
from securechat.session import SessionEvent, SessionRegistry, SessionState

logger = logging.getLogger(__name__)


class SecureChatClient:
    def __init__(self, username: str, host: str = None, port: int = None, cipher_mode: str = None):
        settings = load_settings()
        self.host = host or settings.server_host
        self.port = port or settings.server_port
        self.username = username

        self.registry = SessionRegistry(username, cipher_mode or settings.cipher_mode)
        self.online_users: Set[str] = set()
        self.messages_by_user: Dict[str, List[PlaintextMessage]] = {}
        self.selected_partner: Optional[str] = None
        self.joined = threading.Event()

        self.sock = None
        self._send_lock = threading.Lock()
        self._receiver = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def connect(self):
        """Connect to the relay and join under our username."""
        print(f"\n[*] Connecting to {self.host}:{self.port}...")

        self.sock = socket.create_connection((self.host, self.port))
        print(f"[✓] Connected to relay\n")

        self._receiver = threading.Thread(target=self._receive_loop, daemon=True)
        self._receiver.start()

        self._send(JoinMessage(username=self.username))

    def _send(self, msg):
        with self._send_lock:
            self.sock.sendall(serialize_message(msg))

    def _receive_loop(self):
        reader = self.sock.makefile('rb')
        try:
            for line in reader:
                if not line.strip():
                    continue
                try:
                    self.handle_message(deserialize_message(line))
                except ProtocolError as e:
                    logger.warning("Dropping malformed message from relay: %s", e)
        except OSError as e:
            logger.info("Relay connection closed: %s", e)
        finally:
            reader.close()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, msg):
        """Apply one message received from the relay."""
        if isinstance(msg, JoinConfirmedMessage):
            self.online_users = set(msg.online_users) - {self.username}
            self.joined.set()
            print(f"[✓] Joined as {msg.username}")

        elif isinstance(msg, UserListMessage):
            self.online_users = set(msg.users) - {self.username}

        elif isinstance(msg, UserJoinedMessage):
            if msg.username != self.username:
                self.online_users.add(msg.username)
                print(f"[+] {msg.username} joined")

        elif isinstance(msg, UserLeftMessage):
            self.online_users.discard(msg.username)
            if self.selected_partner == msg.username:
                self.selected_partner = None
            print(f"[-] {msg.username} left")
            try:
                self.registry.on_partner_departed(msg.username)
            except SecureChatException as e:
                logger.warning("Could not reset session with %s: %s", msg.username, e)
            self._report_state_changes()

        elif isinstance(msg, KeyExchangeEnvelope):
            self._handle_key_exchange(msg)

        elif isinstance(msg, CipherEnvelope):
            self._handle_cipher(msg)

        elif isinstance(msg, DeliveredMessage):
            self._mark_delivered(msg.message_id)

        elif isinstance(msg, ErrorMessage):
            print(f"[!] {msg.code}: {msg.message}")

    def _handle_key_exchange(self, envelope: KeyExchangeEnvelope):
        try:
            if envelope.kind == "offer":
                response = self.registry.on_peer_offer(envelope)
                if response is not None:
                    self._send(response)
            else:
                self.registry.on_peer_response(envelope)
        except SecureChatException as e:
            logger.warning("Key exchange with %s failed: %s", envelope.sender_id, e)
        self._report_state_changes()

    def _report_state_changes(self):
        """Print and discard the registry's pending state change notifications."""
        for change in self.registry.drain_notifications():
            if change.event is SessionEvent.INITIATED:
                print(f"[*] Key exchange with {change.partner_id} started")
            elif change.event is SessionEvent.ESTABLISHED:
                print(f"[✓] Secure channel with {change.partner_id} established")
            elif change.event is SessionEvent.RESET:
                print(f"[-] Secure channel with {change.partner_id} closed")

    def _handle_cipher(self, envelope: CipherEnvelope):
        try:
            message = self.registry.receive_message(envelope)
        except SecureChatException as e:
            logger.warning("Could not read message %s from %s: %s", envelope.message_id, envelope.sender_id, e)
            return

        self.messages_by_user.setdefault(message.sender_id, []).append(message)
        print(f"[{message.sender_id}] {message.content}")

    def _mark_delivered(self, message_id: str):
        for messages in self.messages_by_user.values():
            for message in messages:
                if message.message_id == message_id:
                    message.delivered = True
                    return

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def select_partner(self, partner: str):
        """Choose who to chat with, starting a key exchange if needed."""
        if partner not in self.online_users:
            print(f"[!] {partner} is not online")
            return

        self.selected_partner = partner
        if self.registry.state(partner) is SessionState.INITIATED:
            offer = self.registry.resend_offer(partner)
            print(f"[*] Resending key exchange offer to {partner}")
        else:
            offer = self.registry.begin_session(partner)
        if offer is not None:
            self._send(offer)
        self._report_state_changes()

    def send_chat(self, text: str) -> Optional[PlaintextMessage]:
        """Encrypt and send a message to the selected partner."""
        if self.selected_partner is None:
            print("[!] Select a partner first with /chat <user>")
            return None

        envelope = self.registry.encrypt_for_partner(self.selected_partner, text)
        message = self.registry.outgoing_message(envelope, text)
        self.messages_by_user.setdefault(self.selected_partner, []).append(message)

        self._send(envelope)
        return message

    def broadcast_chat(self, text: str) -> List[PlaintextMessage]:
        """
        Encrypt a message separately for every established partner and
        send all envelopes in one batch.

        Returns:
            Local copies of the sent messages, one per partner
        """
        envelopes = []
        sent = []
        for partner in self.registry.partners():
            if not self.registry.is_established(partner):
                continue
            envelope = self.registry.encrypt_for_partner(partner, text)
            message = self.registry.outgoing_message(envelope, text)
            self.messages_by_user.setdefault(partner, []).append(message)
            envelopes.append(envelope)
            sent.append(message)

        if not envelopes:
            print("[!] No established secure channels")
            return sent

        self._send(CipherBatchMessage(envelopes=envelopes))
        return sent

    def chat_loop(self):
        """Main chat loop."""
        print("="*70)
        print("  SECURE CHAT SESSION")
        print("  /users, /chat <user>, /all <text>, /exit. Anything else is sent to your partner.")
        print("="*70 + "\n")

        while True:
            try:
                line = input(f"[{self.username}] ").strip()
            except (KeyboardInterrupt, EOFError):
                break

            if not line:
                continue

            if line == '/exit':
                break
            elif line == '/users':
                self._send(GetOnlineUsersMessage())
                print(f"    Online: {', '.join(sorted(self.online_users)) or '(nobody)'}")
            elif line.startswith('/chat '):
                self.select_partner(line[len('/chat '):].strip())
            elif line.startswith('/all '):
                try:
                    self.broadcast_chat(line[len('/all '):])
                except SecureChatException as e:
                    print(f"[!] {e}")
            else:
                try:
                    self.send_chat(line)
                except SecureChatException as e:
                    print(f"[!] {e}")

    def disconnect(self):
        """Leave the relay and wipe all session keys."""
        if self.sock:
            try:
                self._send(LeaveMessage())
            except OSError as e:
                logger.debug("Leave not sent: %s", e)
            self.sock.close()
            print("[*] Disconnected from relay")
        self.registry.teardown()
        self.registry.drain_notifications()


def main():
    print("="*70)
    print("  SECURECHAT CLIENT")
    print("="*70 + "\n")

    parser = argparse.ArgumentParser(description="SecureChat console client")
    parser.add_argument("username", help="Name to join the relay with")
    parser.add_argument("--host", help="Relay host (default: SERVER_HOST)")
    parser.add_argument("--port", type=int, help="Relay port (default: SERVER_PORT)")
    args = parser.parse_args()

    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    client = SecureChatClient(args.username, host=args.host, port=args.port)

    try:
        client.connect()
        client.chat_loop()
    except OSError as e:
        print(f"\n[!] Error: {e}")
    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
