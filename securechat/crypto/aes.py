"""
AES-256 Encryption/Decryption

Two modes are supported:
- GCM (default): authenticated, 12-byte random nonce, 16-byte tag appended
  to the ciphertext. Wrong keys and tampering fail deterministically.
- CBC (legacy): 16-byte random IV with PKCS#7 padding. No integrity check,
  so a wrong key is only caught when the padding or UTF-8 decoding happens
  to fail.

A fresh random nonce/IV is drawn for every message.
"""

import os
from enum import Enum
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from securechat.common.exceptions import (
    DecryptionFailedError,
    InvalidIVSizeError,
    InvalidKeySizeError,
)
from securechat.common.utils import b64decode, b64encode, zero_bytes

KEY_SIZE = 32           # AES-256
GCM_NONCE_SIZE = 12     # 96 bits for GCM
CBC_IV_SIZE = 16        # one AES block
BLOCK_SIZE_BITS = 128


class CipherMode(str, Enum):
    GCM = "gcm"
    CBC = "cbc"


def iv_size(mode: Union[CipherMode, str]) -> int:
    """Required IV/nonce length in bytes for a mode."""
    return GCM_NONCE_SIZE if CipherMode(mode) is CipherMode.GCM else CBC_IV_SIZE


def _validate_key(key: bytes):
    if key is None:
        raise InvalidKeySizeError("Encryption key cannot be None")
    if len(key) != KEY_SIZE:
        raise InvalidKeySizeError(
            f"Key must be exactly {KEY_SIZE} bytes (256 bits) for AES-256. Got {len(key)} bytes."
        )


def generate_random_key() -> bytes:
    """
    Generate a random AES-256 key.

    Only for tests and demos; session keys come from the DH exchange.
    """
    return os.urandom(KEY_SIZE)


def encrypt(
    plaintext: str,
    key: bytes,
    mode: Union[CipherMode, str] = CipherMode.GCM,
    associated_data: bytes = b"",
) -> Tuple[str, str]:
    """
    Encrypt a UTF-8 string with AES-256.

    Args:
        plaintext: Message to encrypt
        key: 32-byte AES key
        mode: CipherMode.GCM or CipherMode.CBC
        associated_data: Authenticated but unencrypted data (GCM only)

    Returns:
        Tuple of (ciphertext, iv), both base64-encoded

    Raises:
        InvalidKeySizeError: If key length is not 32 bytes
    """
    _validate_key(key)
    mode = CipherMode(mode)

    plaintext_bytes = bytearray(plaintext.encode('utf-8'))
    iv = os.urandom(iv_size(mode))

    try:
        if mode is CipherMode.GCM:
            ciphertext = AESGCM(bytes(key)).encrypt(iv, bytes(plaintext_bytes), associated_data or None)
        else:
            padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
            padded_data = bytearray(padder.update(bytes(plaintext_bytes)) + padder.finalize())
            try:
                encryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(iv)).encryptor()
                ciphertext = encryptor.update(bytes(padded_data)) + encryptor.finalize()
            finally:
                zero_bytes(padded_data)
    finally:
        # Clear plaintext from memory
        zero_bytes(plaintext_bytes)

    return b64encode(ciphertext), b64encode(iv)


def decrypt(
    ciphertext_b64: str,
    iv_b64: str,
    key: bytes,
    mode: Union[CipherMode, str] = CipherMode.GCM,
    associated_data: bytes = b"",
) -> str:
    """
    Decrypt a base64-encoded AES-256 ciphertext.

    Args:
        ciphertext_b64: Base64-encoded ciphertext
        iv_b64: Base64-encoded IV/nonce
        key: 32-byte AES key
        mode: CipherMode.GCM or CipherMode.CBC
        associated_data: Must match what was passed to encrypt (GCM only)

    Returns:
        Decrypted plaintext string

    Raises:
        InvalidKeySizeError: If key length is not 32 bytes
        InvalidIVSizeError: If the IV length does not match the mode
        DecryptionFailedError: On authentication, padding or decoding failure
    """
    _validate_key(key)
    mode = CipherMode(mode)

    try:
        iv = b64decode(iv_b64)
    except ValueError as e:
        raise InvalidIVSizeError(f"IV is not valid base64: {e}")

    expected = iv_size(mode)
    if len(iv) != expected:
        raise InvalidIVSizeError(f"IV must be {expected} bytes for {mode.value.upper()}, got {len(iv)}")

    try:
        ciphertext = b64decode(ciphertext_b64)
    except ValueError as e:
        raise DecryptionFailedError(f"Decryption failed: {e}")

    plaintext = bytearray()
    try:
        if mode is CipherMode.GCM:
            plaintext = bytearray(AESGCM(bytes(key)).decrypt(iv, ciphertext, associated_data or None))
        else:
            decryptor = Cipher(algorithms.AES(bytes(key)), modes.CBC(iv)).decryptor()
            padded_plaintext = bytearray(decryptor.update(ciphertext) + decryptor.finalize())
            try:
                unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
                plaintext = bytearray(unpadder.update(bytes(padded_plaintext)) + unpadder.finalize())
            finally:
                zero_bytes(padded_plaintext)

        return plaintext.decode('utf-8')

    except InvalidTag:
        raise DecryptionFailedError("Decryption failed: authentication tag mismatch")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionFailedError(f"Decryption failed: {e}")

    finally:
        # Clear sensitive data from memory
        zero_bytes(plaintext)


# Test function for development
if __name__ == "__main__":
    test_key = generate_random_key()
    test_message = "Hello, SecureChat!"

    for test_mode in CipherMode:
        print(f"[{test_mode.value.upper()}] Original: {test_message}")

        ct, nonce = encrypt(test_message, test_key, test_mode)
        print(f"[{test_mode.value.upper()}] Encrypted (base64): {ct}")

        decrypted = decrypt(ct, nonce, test_key, test_mode)
        print(f"[{test_mode.value.upper()}] Decrypted: {decrypted}")

        assert decrypted == test_message, "Encryption/Decryption test failed!"

    print("\n[✓] AES encryption/decryption test passed!")
