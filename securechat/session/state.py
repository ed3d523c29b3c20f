"""
Per-partner key exchange state.

    NONE --begin_session--> INITIATED --response/offer--> ESTABLISHED
    NONE --offer-----------------------------------------> ESTABLISHED
    any  --reset (partner left)--------------------------> NONE
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from securechat.common.utils import zero_bytes


class SessionState(str, Enum):
    NONE = "none"
    INITIATED = "initiated"
    ESTABLISHED = "established"


class SessionEvent(str, Enum):
    """Notifications emitted by the registry on every transition."""
    INITIATED = "initiated"
    ESTABLISHED = "established"
    RESET = "reset"


@dataclass(frozen=True)
class StateChange:
    partner_id: str
    event: SessionEvent
    state: SessionState


@dataclass
class SessionEntry:
    """
    Session with one partner.

    The DH key pair is held by the KeyExchangeEngine under the same
    partner id; the entry only owns the derived key.
    """
    partner_id: str
    state: SessionState = SessionState.NONE
    derived_key: Optional[bytearray] = None

    @property
    def is_established(self) -> bool:
        return self.state is SessionState.ESTABLISHED and self.derived_key is not None

    def mark_initiated(self):
        self._wipe_key()
        self.state = SessionState.INITIATED

    def establish(self, key: bytes):
        """Store the derived key, then move to ESTABLISHED."""
        self._wipe_key()
        self.derived_key = bytearray(key)
        self.state = SessionState.ESTABLISHED

    def wipe(self):
        """Zero the derived key and return to NONE."""
        self._wipe_key()
        self.state = SessionState.NONE

    def _wipe_key(self):
        if self.derived_key is not None:
            zero_bytes(self.derived_key)
            self.derived_key = None
