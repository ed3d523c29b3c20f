"""
Storage modules for the SecureChat relay.

Includes:
- Database (MySQL) for user presence and ciphertext envelopes
"""

from .db import (
    init_db,
    set_user_online,
    set_user_offline,
    get_online_usernames,
    is_username_taken,
    save_message,
    mark_delivered,
    get_undelivered_messages,
    get_message_history,
    get_message,
)

__all__ = [
    'init_db',
    'set_user_online',
    'set_user_offline',
    'get_online_usernames',
    'is_username_taken',
    'save_message',
    'mark_delivered',
    'get_undelivered_messages',
    'get_message_history',
    'get_message',
]
