"""
Per-partner secure sessions.

Includes:
- Session state machine (NONE / INITIATED / ESTABLISHED)
- Session registry binding key exchange and message encryption per partner
"""

from .state import SessionState, SessionEvent, SessionEntry, StateChange
from .registry import SessionRegistry

__all__ = [
    'SessionState',
    'SessionEvent',
    'SessionEntry',
    'StateChange',
    'SessionRegistry',
]
