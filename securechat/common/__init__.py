"""
Common utilities and protocol definitions for SecureChat.
"""

from .protocol import *
from .utils import now_ms, b64encode, b64decode, new_message_id, zero_bytes
from .exceptions import *
from .config import Settings, load_settings

__all__ = [
    'now_ms',
    'b64encode',
    'b64decode',
    'new_message_id',
    'zero_bytes',
    'Settings',
    'load_settings',
]
