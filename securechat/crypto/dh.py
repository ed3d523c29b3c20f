"""
Diffie-Hellman Key Exchange

Per-partner key pairs over the 2048-bit MODP group and derivation of
32-byte AES-256 session keys.

The key derived as:
    K = SHA256(big_endian(peer_public ^ own_exponent mod p))
"""

import hashlib
import logging
import secrets
import threading
from typing import Dict

from securechat.common.exceptions import (
    InvalidPublicValueError,
    NotFoundError,
    RegistryClosedError,
)
from securechat.common.utils import b64decode, b64encode, zero_bytes
from .group import G, P, PUBLIC_VALUE_SIZE, mod_pow

logger = logging.getLogger(__name__)

DERIVED_KEY_SIZE = 32


def encode_public_value(value: int) -> str:
    """
    Encode a public value for the wire.

    Args:
        value: Public value (0 < value < p)

    Returns:
        Base64 of the fixed-width big-endian bytes
    """
    return b64encode(value.to_bytes(PUBLIC_VALUE_SIZE, byteorder='big'))


def decode_public_value(encoded: str) -> int:
    """
    Decode a wire public value. Does not range-check.

    Raises:
        InvalidPublicValueError: If the input is not base64 or too long
    """
    try:
        raw = b64decode(encoded)
    except ValueError as e:
        raise InvalidPublicValueError(f"Public value is not valid base64: {e}")

    if len(raw) > PUBLIC_VALUE_SIZE:
        raise InvalidPublicValueError(
            f"Public value too long: {len(raw)} bytes (max {PUBLIC_VALUE_SIZE})"
        )
    return int.from_bytes(raw, byteorder='big')


def check_public_value(value: int) -> int:
    """
    Reject public values outside 1 < value < p-1.

    Values 0, 1 and p-1 (and anything >= p) would force the shared secret
    into a trivial subgroup.

    Args:
        value: Decoded peer public value

    Returns:
        The value unchanged

    Raises:
        InvalidPublicValueError: If the value is out of range
    """
    if value <= 1 or value >= P - 1:
        raise InvalidPublicValueError("Invalid partner public value: out of valid range")
    return value


class KeyPair:
    """
    DH key pair for one partner.

    The private exponent is kept in a mutable buffer so it can be
    overwritten when the session ends.
    """

    def __init__(self, exponent: bytearray):
        if len(exponent) != PUBLIC_VALUE_SIZE:
            raise ValueError(f"Exponent must be {PUBLIC_VALUE_SIZE} bytes, got {len(exponent)}")
        self._exponent = exponent
        self.public_value = mod_pow(G, int.from_bytes(exponent, byteorder='big'), P)
        self._wiped = False

    @classmethod
    def generate(cls) -> 'KeyPair':
        """
        Generate a new key pair.

        Draws 256 random bytes and clears the top bit so the exponent stays
        below the magnitude of p.
        """
        exponent = bytearray(secrets.token_bytes(PUBLIC_VALUE_SIZE))
        exponent[0] &= 0x7F
        return cls(exponent)

    @property
    def wiped(self) -> bool:
        return self._wiped

    @property
    def encoded_public_value(self) -> str:
        return encode_public_value(self.public_value)

    def compute_shared_secret(self, peer_public_value: int) -> bytearray:
        """
        Compute peer_public_value^exponent mod p.

        Args:
            peer_public_value: Range-checked peer public value

        Returns:
            Shared secret as minimal-length big-endian bytes (caller zeroes it)
        """
        if self._wiped:
            raise NotFoundError("Key pair has been wiped")

        shared_secret = mod_pow(peer_public_value, int.from_bytes(self._exponent, byteorder='big'), P)
        byte_length = (shared_secret.bit_length() + 7) // 8
        return bytearray(shared_secret.to_bytes(byte_length, byteorder='big'))

    def wipe(self):
        """Overwrite the private exponent."""
        zero_bytes(self._exponent)
        self._wiped = True


class KeyExchangeEngine:
    """
    Holds one DH key pair per partner and derives shared keys.

    Thread-safe: every operation runs under an internal lock.
    """

    def __init__(self):
        self._key_pairs: Dict[str, KeyPair] = {}
        self._lock = threading.RLock()
        self._closed = False

    def _check_open(self):
        if self._closed:
            raise RegistryClosedError("Key exchange engine has been closed")

    def generate_key_pair(self, partner_id: str) -> str:
        """
        Generate a key pair for a partner, replacing any previous one.

        Any key derived from the previous pair is no longer reproducible.

        Args:
            partner_id: Partner username

        Returns:
            Encoded public value to send to the partner
        """
        with self._lock:
            self._check_open()

            previous = self._key_pairs.pop(partner_id, None)
            if previous is not None:
                previous.wipe()

            key_pair = KeyPair.generate()
            self._key_pairs[partner_id] = key_pair

            logger.debug("Generated key pair for %s", partner_id)
            return key_pair.encoded_public_value

    def has_key_pair_for(self, partner_id: str) -> bool:
        with self._lock:
            self._check_open()
            return partner_id in self._key_pairs

    def get_stored_public_key(self, partner_id: str) -> str:
        """
        Get the encoded public value already generated for a partner.

        Raises:
            NotFoundError: If no key pair exists for the partner
        """
        with self._lock:
            self._check_open()
            key_pair = self._key_pairs.get(partner_id)
            if key_pair is None:
                raise NotFoundError(
                    f"No key pair found for partner: {partner_id}. Call generate_key_pair first."
                )
            return key_pair.encoded_public_value

    @staticmethod
    def validate_public_value(encoded: str) -> int:
        """
        Decode and range-check a peer public value.

        Raises:
            InvalidPublicValueError: If malformed or out of range
        """
        return check_public_value(decode_public_value(encoded))

    def derive_shared_key(self, partner_id: str, partner_public_value: str) -> bytes:
        """
        Derive the 32-byte shared AES key from the partner's public value.

        Args:
            partner_id: Partner username
            partner_public_value: Encoded public value received from the partner

        Returns:
            32-byte key

        Raises:
            NotFoundError: If no local key pair exists for the partner
            InvalidPublicValueError: If the partner value is malformed or out of range
        """
        with self._lock:
            self._check_open()

            key_pair = self._key_pairs.get(partner_id)
            if key_pair is None:
                raise NotFoundError(
                    f"No key pair found for partner: {partner_id}. Call generate_key_pair first."
                )

            peer_value = self.validate_public_value(partner_public_value)

            secret_bytes = key_pair.compute_shared_secret(peer_value)
            try:
                return hashlib.sha256(secret_bytes).digest()
            finally:
                zero_bytes(secret_bytes)

    def remove_key_pair(self, partner_id: str):
        """Wipe and drop the key pair for a partner, if any."""
        with self._lock:
            self._check_open()
            key_pair = self._key_pairs.pop(partner_id, None)
            if key_pair is not None:
                key_pair.wipe()
                logger.debug("Removed key pair for %s", partner_id)

    def clear_all(self):
        """Wipe and drop every stored key pair."""
        with self._lock:
            self._check_open()
            self._wipe_all()

    def _wipe_all(self):
        for key_pair in self._key_pairs.values():
            key_pair.wipe()
        self._key_pairs.clear()

    def close(self):
        """Wipe all key material and refuse further use. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._wipe_all()
            self._closed = True


# Test function for development
if __name__ == "__main__":
    print("[*] Testing Diffie-Hellman Key Exchange")

    alice = KeyExchangeEngine()
    bob = KeyExchangeEngine()

    alice_public = alice.generate_key_pair("bob")
    bob_public = bob.generate_key_pair("alice")
    print(f"\n[1] Alice public value: {alice_public[:32]}...")
    print(f"[2] Bob public value:   {bob_public[:32]}...")

    alice_key = alice.derive_shared_key("bob", bob_public)
    bob_key = bob.derive_shared_key("alice", alice_public)

    print(f"\n[3] Derived AES-256 keys:")
    print(f"    Alice's key: {alice_key.hex()}")
    print(f"    Bob's key:   {bob_key.hex()}")
    assert alice_key == bob_key, "AES keys don't match!"

    alice.close()
    bob.close()
    print("\n[✓] Diffie-Hellman key exchange test passed!")
