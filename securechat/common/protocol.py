"""
Protocol message definitions using Pydantic.

All messages are serialized to/from JSON, one message per line, for
transmission between clients and the relay over TCP.
"""

from typing import Annotated, List, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .exceptions import ProtocolError
from .utils import now_ms


class JoinMessage(BaseModel):
    """Client asks the relay to register it under a username."""
    type: Literal["join"] = "join"
    username: str


class JoinConfirmedMessage(BaseModel):
    """Relay accepted the join."""
    type: Literal["join_confirmed"] = "join_confirmed"
    username: str
    online_users: List[str] = Field(default_factory=list)


class GetOnlineUsersMessage(BaseModel):
    """Client asks for the current user list."""
    type: Literal["get_users"] = "get_users"


class UserListMessage(BaseModel):
    """Current online users."""
    type: Literal["user_list"] = "user_list"
    users: List[str] = Field(default_factory=list)


class UserJoinedMessage(BaseModel):
    """Presence notice: a user came online."""
    type: Literal["user_joined"] = "user_joined"
    username: str


class UserLeftMessage(BaseModel):
    """Presence notice: a user went offline."""
    type: Literal["user_left"] = "user_left"
    username: str


class KeyExchangeEnvelope(BaseModel):
    """Diffie-Hellman public value relayed between two peers."""
    type: Literal["key_exchange"] = "key_exchange"
    kind: Literal["offer", "response"] = Field(..., description="offer starts a handshake, response completes one")
    sender_id: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    public_value: str = Field(..., min_length=1, description="Base64-encoded big-endian public value")
    timestamp: int = Field(default_factory=now_ms, description="Unix timestamp in milliseconds")


class CipherEnvelope(BaseModel):
    """Encrypted chat payload. The relay cannot read it."""
    type: Literal["cipher"] = "cipher"
    message_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    ciphertext: str = Field(..., description="Base64-encoded ciphertext (with GCM tag when authenticated)")
    iv: str = Field(..., description="Base64-encoded IV or nonce")
    timestamp: int = Field(default_factory=now_ms, description="Unix timestamp in milliseconds")


class CipherBatchMessage(BaseModel):
    """Several cipher envelopes, one per recipient, relayed in one request."""
    type: Literal["cipher_batch"] = "cipher_batch"
    envelopes: List[CipherEnvelope] = Field(default_factory=list)


class DeliveredMessage(BaseModel):
    """Relay confirms a cipher envelope reached its recipient."""
    type: Literal["delivered"] = "delivered"
    message_id: str


class LeaveMessage(BaseModel):
    """Client is disconnecting."""
    type: Literal["leave"] = "leave"


class ErrorMessage(BaseModel):
    """Error message."""
    type: Literal["error"] = "error"
    code: str = Field(..., description="Error code (e.g., BAD_USERNAME, NOT_ONLINE, BAD_MESSAGE)")
    message: str = Field(..., description="Human-readable error message")


class PlaintextMessage(BaseModel):
    """Decrypted or outbound chat message as seen by the local user. Never sent."""
    message_id: str
    sender_id: str
    content: str
    timestamp: int
    is_own_message: bool = False
    delivered: bool = False


WireMessage = Annotated[
    Union[
        JoinMessage,
        JoinConfirmedMessage,
        GetOnlineUsersMessage,
        UserListMessage,
        UserJoinedMessage,
        UserLeftMessage,
        KeyExchangeEnvelope,
        CipherEnvelope,
        CipherBatchMessage,
        DeliveredMessage,
        LeaveMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_wire_adapter = TypeAdapter(WireMessage)


# Helper functions for serialization

def serialize_message(msg: BaseModel) -> bytes:
    """Serialize Pydantic message to a newline-terminated JSON line."""
    return msg.model_dump_json().encode('utf-8') + b"\n"


def deserialize_message(line: Union[str, bytes]) -> BaseModel:
    """
    Parse one JSON line into the matching message model.

    Args:
        line: JSON text, with or without the trailing newline

    Returns:
        Message model selected by its "type" field

    Raises:
        ProtocolError: If the line is not a known, well-formed message
    """
    try:
        return _wire_adapter.validate_json(line)
    except ValidationError as e:
        raise ProtocolError(f"Malformed message: {e.error_count()} validation error(s)") from e
