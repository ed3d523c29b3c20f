"""
Session Registry

Maps partner usernames to their key exchange state, DH key pair and derived
AES key, and exposes the operations the chat client drives:

    begin_session -> offer envelope (send it)
    on_peer_offer -> response envelope (send it)
    on_peer_response
    encrypt_for_partner / decrypt_from_partner
    on_partner_departed

All mutations happen under one lock, so no caller ever sees an entry that is
ESTABLISHED without a key. Nothing here performs I/O; the caller sends the
returned envelopes after the call returns.
"""

import logging
import queue
import threading
from typing import Dict, List, Optional, Union

from securechat.common.exceptions import (
    DecryptionFailedError,
    NoSessionKeyError,
    ProtocolError,
    RegistryClosedError,
)
from securechat.common.protocol import CipherEnvelope, KeyExchangeEnvelope, PlaintextMessage
from securechat.common.utils import new_message_id
from securechat.crypto import aes
from securechat.crypto.aes import CipherMode
from securechat.crypto.dh import KeyExchangeEngine
from .state import SessionEntry, SessionEvent, SessionState, StateChange

logger = logging.getLogger(__name__)


def associated_data_for(message_id: str, sender_id: str, recipient_id: str) -> bytes:
    """Bind a ciphertext to its envelope header."""
    return f"{message_id}|{sender_id}|{recipient_id}".encode('utf-8')


class SessionRegistry:
    """
    Secure sessions of one local user with all of their partners.

    Use as a context manager, or call teardown() when done; teardown zeroes
    every key before returning.
    """

    def __init__(self, own_id: str, cipher_mode: Union[CipherMode, str] = CipherMode.GCM):
        if not own_id:
            raise ValueError("own_id cannot be empty")

        self.own_id = own_id
        self.cipher_mode = CipherMode(cipher_mode)
        self.notifications: "queue.Queue[StateChange]" = queue.Queue()

        self._engine = KeyExchangeEngine()
        self._entries: Dict[str, SessionEntry] = {}
        self._lock = threading.RLock()
        self._closed = False

    def __enter__(self) -> 'SessionRegistry':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Internal helpers (callers hold self._lock)
    # ------------------------------------------------------------------

    def _check_open(self):
        if self._closed:
            raise RegistryClosedError("Session registry has been torn down")

    def _check_partner(self, partner_id: str):
        if not partner_id:
            raise ValueError("partner_id cannot be empty")
        if partner_id == self.own_id:
            raise ValueError("Cannot open a session with yourself")

    def _entry(self, partner_id: str) -> SessionEntry:
        entry = self._entries.get(partner_id)
        if entry is None:
            entry = SessionEntry(partner_id)
            self._entries[partner_id] = entry
        return entry

    def _notify(self, entry: SessionEntry, event: SessionEvent):
        self.notifications.put(StateChange(entry.partner_id, event, entry.state))

    def _check_inbound(self, envelope: KeyExchangeEnvelope, kind: str):
        if envelope.kind != kind:
            raise ProtocolError(f"Expected key exchange {kind}, got {envelope.kind}")
        if envelope.recipient_id != self.own_id:
            raise ProtocolError(
                f"Key exchange addressed to '{envelope.recipient_id}', not '{self.own_id}'"
            )
        if envelope.sender_id == self.own_id:
            raise ProtocolError("Key exchange envelope claims to come from ourselves")

    def _envelope(self, kind: str, partner_id: str, public_value: str) -> KeyExchangeEnvelope:
        return KeyExchangeEnvelope(
            kind=kind,
            sender_id=self.own_id,
            recipient_id=partner_id,
            public_value=public_value,
        )

    # ------------------------------------------------------------------
    # Key exchange
    # ------------------------------------------------------------------

    def begin_session(self, partner_id: str) -> Optional[KeyExchangeEnvelope]:
        """
        Start a key exchange with a partner.

        Args:
            partner_id: Partner username

        Returns:
            Offer envelope to send, or None if a handshake is already in
            progress or complete (state is left untouched)
        """
        with self._lock:
            self._check_open()
            self._check_partner(partner_id)

            entry = self._entry(partner_id)
            if entry.state is not SessionState.NONE:
                logger.debug("begin_session(%s) ignored in state %s", partner_id, entry.state.value)
                return None

            public_value = self._engine.generate_key_pair(partner_id)
            entry.mark_initiated()
            self._notify(entry, SessionEvent.INITIATED)

            logger.info("Initiated key exchange with %s", partner_id)
            return self._envelope("offer", partner_id, public_value)

    def resend_offer(self, partner_id: str) -> Optional[KeyExchangeEnvelope]:
        """
        Rebuild the pending offer for a handshake that has not completed.

        Reuses the stored key pair, so the public value matches the one
        already sent. Returns None unless the session is INITIATED.
        """
        with self._lock:
            self._check_open()
            entry = self._entries.get(partner_id)
            if entry is None or entry.state is not SessionState.INITIATED:
                return None
            return self._envelope("offer", partner_id, self._engine.get_stored_public_key(partner_id))

    def on_peer_offer(self, envelope: KeyExchangeEnvelope) -> Optional[KeyExchangeEnvelope]:
        """
        Handle a key exchange offer from a partner.

        If we already initiated with this partner, the existing key pair is
        reused: regenerating it would leave the partner deriving from a
        public value we no longer hold.

        Args:
            envelope: Inbound offer

        Returns:
            Response envelope to send back, or None if the session was
            already established (the offer is ignored)

        Raises:
            InvalidPublicValueError: Peer value malformed or out of range;
                state is unchanged
            ProtocolError: Envelope not an offer addressed to us
        """
        with self._lock:
            self._check_open()
            self._check_inbound(envelope, "offer")

            partner_id = envelope.sender_id
            entry = self._entries.get(partner_id)
            state = entry.state if entry is not None else SessionState.NONE

            if state is SessionState.ESTABLISHED:
                logger.info("Key exchange already completed with %s, ignoring offer", partner_id)
                return None

            if state is SessionState.INITIATED:
                public_value = self._engine.get_stored_public_key(partner_id)
                key = self._engine.derive_shared_key(partner_id, envelope.public_value)
                logger.debug("Using existing key pair for %s (we initiated first)", partner_id)
            else:
                # Reject before generating so a bad offer leaves nothing behind
                self._engine.validate_public_value(envelope.public_value)
                public_value = self._engine.generate_key_pair(partner_id)
                try:
                    key = self._engine.derive_shared_key(partner_id, envelope.public_value)
                except Exception:
                    self._engine.remove_key_pair(partner_id)
                    raise
                logger.debug("Generated new key pair for %s (they initiated first)", partner_id)

            entry = self._entry(partner_id)
            entry.establish(key)
            self._notify(entry, SessionEvent.ESTABLISHED)

            logger.info("Key exchange completed with %s", partner_id)
            return self._envelope("response", partner_id, public_value)

    def on_peer_response(self, envelope: KeyExchangeEnvelope):
        """
        Handle the partner's response to an offer we sent.

        Raises:
            NotFoundError: We never generated a key pair for this partner
            InvalidPublicValueError: Peer value malformed or out of range
            ProtocolError: Envelope not a response addressed to us
        """
        with self._lock:
            self._check_open()
            self._check_inbound(envelope, "response")

            partner_id = envelope.sender_id
            entry = self._entries.get(partner_id)

            if entry is not None and entry.state is SessionState.ESTABLISHED:
                logger.info("Key exchange already completed with %s, skipping", partner_id)
                return

            key = self._engine.derive_shared_key(partner_id, envelope.public_value)
            entry = self._entry(partner_id)
            entry.establish(key)
            self._notify(entry, SessionEvent.ESTABLISHED)

            logger.info("Key exchange completed with %s", partner_id)

    def reset(self, partner_id: str):
        """Zero and drop all key material for a partner and return to NONE."""
        with self._lock:
            self._check_open()

            entry = self._entries.pop(partner_id, None)
            self._engine.remove_key_pair(partner_id)
            if entry is None:
                return

            was_active = entry.state is not SessionState.NONE
            entry.wipe()
            if was_active:
                self._notify(entry, SessionEvent.RESET)
                logger.info("Session with %s reset", partner_id)

    def on_partner_departed(self, partner_id: str):
        """The partner went offline; the next session needs a new handshake."""
        self.reset(partner_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def encrypt_for_partner(self, partner_id: str, plaintext: str) -> CipherEnvelope:
        """
        Encrypt a chat message for an established partner.

        Raises:
            NoSessionKeyError: Key exchange not complete
        """
        with self._lock:
            self._check_open()

            entry = self._entries.get(partner_id)
            if entry is None or not entry.is_established:
                raise NoSessionKeyError(f"No shared key established with {partner_id}")

            message_id = new_message_id()
            ciphertext, iv = aes.encrypt(
                plaintext,
                entry.derived_key,
                self.cipher_mode,
                associated_data_for(message_id, self.own_id, partner_id),
            )

        return CipherEnvelope(
            message_id=message_id,
            sender_id=self.own_id,
            recipient_id=partner_id,
            ciphertext=ciphertext,
            iv=iv,
        )

    def decrypt_from_partner(self, partner_id: str, envelope: CipherEnvelope) -> str:
        """
        Decrypt a chat message from an established partner.

        Raises:
            NoSessionKeyError: Key exchange not complete
            DecryptionFailedError: Wrong key, corruption or tampering
            ProtocolError: Envelope not from partner_id to us
        """
        if envelope.sender_id != partner_id or envelope.recipient_id != self.own_id:
            raise ProtocolError(
                f"Envelope {envelope.message_id} is from '{envelope.sender_id}' to "
                f"'{envelope.recipient_id}', expected '{partner_id}' to '{self.own_id}'"
            )

        with self._lock:
            self._check_open()

            entry = self._entries.get(partner_id)
            if entry is None or not entry.is_established:
                raise NoSessionKeyError(f"Received message from {partner_id} but no shared key")

            try:
                return aes.decrypt(
                    envelope.ciphertext,
                    envelope.iv,
                    entry.derived_key,
                    self.cipher_mode,
                    associated_data_for(envelope.message_id, envelope.sender_id, envelope.recipient_id),
                )
            except DecryptionFailedError:
                logger.warning("Decryption failed for message %s from %s", envelope.message_id, partner_id)
                raise

    def receive_message(self, envelope: CipherEnvelope) -> PlaintextMessage:
        """Decrypt an inbound envelope into a displayable message."""
        content = self.decrypt_from_partner(envelope.sender_id, envelope)
        return PlaintextMessage(
            message_id=envelope.message_id,
            sender_id=envelope.sender_id,
            content=content,
            timestamp=envelope.timestamp,
            is_own_message=False,
            delivered=True,
        )

    def outgoing_message(self, envelope: CipherEnvelope, content: str) -> PlaintextMessage:
        """Local copy of a message we just encrypted, not yet delivered."""
        return PlaintextMessage(
            message_id=envelope.message_id,
            sender_id=self.own_id,
            content=content,
            timestamp=envelope.timestamp,
            is_own_message=True,
            delivered=False,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def state(self, partner_id: str) -> SessionState:
        with self._lock:
            entry = self._entries.get(partner_id)
            return entry.state if entry is not None else SessionState.NONE

    def is_established(self, partner_id: str) -> bool:
        return self.state(partner_id) is SessionState.ESTABLISHED

    def has_key_pair_for(self, partner_id: str) -> bool:
        with self._lock:
            self._check_open()
            return self._engine.has_key_pair_for(partner_id)

    def partners(self) -> List[str]:
        """Partners with a handshake in progress or complete."""
        with self._lock:
            return [p for p, e in self._entries.items() if e.state is not SessionState.NONE]

    def drain_notifications(self) -> List[StateChange]:
        """Return and clear all pending state change notifications."""
        changes = []
        while True:
            try:
                changes.append(self.notifications.get_nowait())
            except queue.Empty:
                return changes

    def teardown(self):
        """Zero every derived key and key pair. Idempotent."""
        with self._lock:
            if self._closed:
                return
            for entry in self._entries.values():
                entry.wipe()
            self._entries.clear()
            self._engine.close()
            self._closed = True
            logger.debug("Session registry for %s torn down", self.own_id)
