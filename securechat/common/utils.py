"""
Utility functions for SecureChat.
"""

import base64
import binascii
import time
import uuid


def now_ms() -> int:
    """
    Get current Unix timestamp in milliseconds.

    Returns:
        Current timestamp in milliseconds
    """
    return int(time.time() * 1000)


def b64encode(data: bytes) -> str:
    """
    Base64 encode bytes to string.

    Args:
        data: Bytes to encode

    Returns:
        Base64-encoded string
    """
    return base64.b64encode(data).decode('ascii')


def b64decode(data: str) -> bytes:
    """
    Strictly base64 decode string to bytes.

    Args:
        data: Base64-encoded string

    Returns:
        Decoded bytes

    Raises:
        ValueError: If the input is not valid base64
    """
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 data: {e}")


def new_message_id() -> str:
    """Unique identifier for an outbound message."""
    return uuid.uuid4().hex


def zero_bytes(buf: bytearray) -> None:
    """
    Overwrite a mutable buffer with zeros in place.

    Args:
        buf: Buffer holding secret material
    """
    for i in range(len(buf)):
        buf[i] = 0
