"""
WebSocket protocol message types for CallHub.

Defines all client and server message types using Pydantic models
for validation and serialization.
"""

from __future__ import annotations

import json as _json
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, JsonValue, field_validator

# Maximum lengths for string fields to prevent DoS
MAX_ID_LENGTH = 256
MAX_NAME_LENGTH = 512
MAX_CHAT_LENGTH = 4000
MAX_SIGNAL_PAYLOAD_SIZE = 1024 * 64  # 64KB, a complete non-trickle SDP fits easily


def _estimate_size(v: Any) -> int:
    """Estimate the serialized size of a value."""
    try:
        return len(_json.dumps(v))
    except (TypeError, ValueError):
        return 0


# =============================================================================
# Enumerations
# =============================================================================


class ParticipantRole(str, Enum):
    """Role a participant claims when joining a room."""

    ADMIN = "admin"
    USER = "user"


class Channel(str, Enum):
    """
    Logical signaling channels.

    Each media link kind has an admin-side channel and a user-side channel.
    User-side channels always resolve to the room's admin.
    """

    USER_AUDIO = "user-audio"
    ADMIN_AUDIO = "admin-audio"
    CAMERA = "camera"
    USER_CAMERA = "user-camera"
    ADMIN_SCREEN = "admin-screen"
    USER_SCREEN = "user-screen"


class ErrorCode(str, Enum):
    """Standard error codes for the protocol."""

    INVALID_REQUEST = "invalid_request"
    ADMIN_CONFLICT = "admin_conflict"
    UNAUTHORIZED = "unauthorized"
    NOT_IN_ROOM = "not_in_room"
    BUSY = "busy"
    INVALID_MESSAGE = "invalid_message"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


# =============================================================================
# Participant Model
# =============================================================================


class ParticipantInfo(BaseModel):
    """Public snapshot of one participant, as seen by other clients."""

    id: str
    name: str
    role: ParticipantRole
    is_mic_on: bool
    is_screen_sharing: bool = False


# =============================================================================
# Client Message Types
# =============================================================================


class JoinRoomMessage(BaseModel):
    """
    Client requests to join a room.

    Field contents are checked by the room registry so that a bad join
    is answered with a join result rather than a generic error. Length and
    type violations fail here; the gateway answers those with a join
    result as well.
    """

    type: Literal["join-room"] = "join-room"
    room_id: str = Field("", max_length=MAX_ID_LENGTH)
    display_name: str = Field("", max_length=MAX_NAME_LENGTH)
    role: str = Field("", max_length=MAX_ID_LENGTH)
    request_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)


class LeaveRoomMessage(BaseModel):
    """Client leaves its current room."""

    type: Literal["leave-room"] = "leave-room"


class ChatMessage(BaseModel):
    """Client sends a chat line to its room."""

    type: Literal["chat-message"] = "chat-message"
    text: str = Field(..., min_length=1, max_length=MAX_CHAT_LENGTH)

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Chat text must not be blank")
        return v


class SignalMessage(BaseModel):
    """Client sends an opaque signaling payload on a channel."""

    type: Literal["signal"] = "signal"
    channel: Channel
    target_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)
    payload: JsonValue

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: Any) -> Any:
        size = _estimate_size(v)
        if size > MAX_SIGNAL_PAYLOAD_SIZE:
            raise ValueError(f"Payload too large ({size} bytes, max {MAX_SIGNAL_PAYLOAD_SIZE})")
        return v


class SetOwnMicMessage(BaseModel):
    """Admin switches its own microphone."""

    type: Literal["set-own-mic"] = "set-own-mic"
    enabled: bool


class SetUserMicMessage(BaseModel):
    """Admin mutes or unmutes another participant."""

    type: Literal["set-user-mic"] = "set-user-mic"
    target_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    enabled: bool


class MicStateMessage(BaseModel):
    """Client reports its actual local microphone state."""

    type: Literal["mic-state"] = "mic-state"
    enabled: bool


class RequestScreenShareMessage(BaseModel):
    """Admin asks a user to share their screen."""

    type: Literal["request-screen-share"] = "request-screen-share"
    target_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)


class AcceptScreenShareMessage(BaseModel):
    """Target user accepts a pending screen share request."""

    type: Literal["accept-screen-share"] = "accept-screen-share"


class RejectScreenShareMessage(BaseModel):
    """Target user rejects a pending screen share request."""

    type: Literal["reject-screen-share"] = "reject-screen-share"


class StopScreenShareMessage(BaseModel):
    """Either party stops a screen share."""

    type: Literal["stop-screen-share"] = "stop-screen-share"
    target_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)


class GetParticipantsMessage(BaseModel):
    """Client asks for a fresh participant snapshot."""

    type: Literal["get-participants"] = "get-participants"
    request_id: Optional[str] = Field(None, max_length=MAX_ID_LENGTH)


class PingMessage(BaseModel):
    """Client sends ping to keep connection alive."""

    type: Literal["ping"] = "ping"
    timestamp: Optional[float] = None


# Union of all client message types
ClientMessage = Union[
    JoinRoomMessage,
    LeaveRoomMessage,
    ChatMessage,
    SignalMessage,
    SetOwnMicMessage,
    SetUserMicMessage,
    MicStateMessage,
    RequestScreenShareMessage,
    AcceptScreenShareMessage,
    RejectScreenShareMessage,
    StopScreenShareMessage,
    GetParticipantsMessage,
    PingMessage,
]


# =============================================================================
# Server Message Types
# =============================================================================


class JoinRoomResultMessage(BaseModel):
    """Server answers a join request."""

    type: Literal["join-room-result"] = "join-room-result"
    request_id: Optional[str] = None
    ok: bool
    participant_id: Optional[str] = None
    room_id: Optional[str] = None
    participants: List[ParticipantInfo] = Field(default_factory=list)
    admin_id: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ParticipantsMessage(BaseModel):
    """Server sends a participant snapshot for reconciliation."""

    type: Literal["participants"] = "participants"
    request_id: Optional[str] = None
    room_id: str
    participants: List[ParticipantInfo]
    admin_id: Optional[str] = None


class ParticipantJoinedMessage(BaseModel):
    """Server notifies that a participant joined the room."""

    type: Literal["participant-joined"] = "participant-joined"
    id: str
    name: str
    role: ParticipantRole
    is_mic_on: bool


class ParticipantLeftMessage(BaseModel):
    """Server notifies that a participant left the room."""

    type: Literal["participant-left"] = "participant-left"
    id: str


class ParticipantMicChangedMessage(BaseModel):
    """Server broadcasts a participant's authoritative mic flag."""

    type: Literal["participant-mic-changed"] = "participant-mic-changed"
    id: str
    is_mic_on: bool


class ParticipantScreenShareChangedMessage(BaseModel):
    """Server broadcasts a participant's screen-sharing flag."""

    type: Literal["participant-screen-share-changed"] = "participant-screen-share-changed"
    id: str
    is_screen_sharing: bool


class MicCommandMessage(BaseModel):
    """Server orders a client to mute or unmute its outbound audio."""

    type: Literal["mic-command"] = "mic-command"
    enabled: bool


class ChatBroadcast(BaseModel):
    """Server broadcasts a stamped chat line."""

    type: Literal["chat-message"] = "chat-message"
    from_id: str
    name: str
    text: str
    timestamp: int


class SignalBroadcast(BaseModel):
    """Server delivers a relayed signaling payload."""

    type: Literal["signal"] = "signal"
    channel: Channel
    from_id: str
    payload: JsonValue


class ScreenShareRequestedMessage(BaseModel):
    """Server asks the target user to share their screen."""

    type: Literal["screen-share-requested"] = "screen-share-requested"
    from_id: str


class ScreenShareAcceptedMessage(BaseModel):
    """Server tells the admin the target accepted."""

    type: Literal["screen-share-accepted"] = "screen-share-accepted"
    target_id: str


class ScreenShareRejectedMessage(BaseModel):
    """Server tells the admin the target rejected."""

    type: Literal["screen-share-rejected"] = "screen-share-rejected"
    target_id: str


class ScreenShareStoppedMessage(BaseModel):
    """Server tells both parties a screen share session ended."""

    type: Literal["screen-share-stopped"] = "screen-share-stopped"
    target_id: str
    stopped_by: str


class ErrorMessage(BaseModel):
    """Server sends an error message."""

    type: Literal["error"] = "error"
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class PongMessage(BaseModel):
    """Server responds to ping."""

    type: Literal["pong"] = "pong"
    timestamp: float


# Union of all server message types
ServerMessage = Union[
    JoinRoomResultMessage,
    ParticipantsMessage,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
    ParticipantMicChangedMessage,
    ParticipantScreenShareChangedMessage,
    MicCommandMessage,
    ChatBroadcast,
    SignalBroadcast,
    ScreenShareRequestedMessage,
    ScreenShareAcceptedMessage,
    ScreenShareRejectedMessage,
    ScreenShareStoppedMessage,
    ErrorMessage,
    PongMessage,
]


# =============================================================================
# Message Parsing
# =============================================================================


_CLIENT_TYPES = {
    "join-room": JoinRoomMessage,
    "leave-room": LeaveRoomMessage,
    "chat-message": ChatMessage,
    "signal": SignalMessage,
    "set-own-mic": SetOwnMicMessage,
    "set-user-mic": SetUserMicMessage,
    "mic-state": MicStateMessage,
    "request-screen-share": RequestScreenShareMessage,
    "accept-screen-share": AcceptScreenShareMessage,
    "reject-screen-share": RejectScreenShareMessage,
    "stop-screen-share": StopScreenShareMessage,
    "get-participants": GetParticipantsMessage,
    "ping": PingMessage,
}

_SERVER_TYPES = {
    "join-room-result": JoinRoomResultMessage,
    "participants": ParticipantsMessage,
    "participant-joined": ParticipantJoinedMessage,
    "participant-left": ParticipantLeftMessage,
    "participant-mic-changed": ParticipantMicChangedMessage,
    "participant-screen-share-changed": ParticipantScreenShareChangedMessage,
    "mic-command": MicCommandMessage,
    "chat-message": ChatBroadcast,
    "signal": SignalBroadcast,
    "screen-share-requested": ScreenShareRequestedMessage,
    "screen-share-accepted": ScreenShareAcceptedMessage,
    "screen-share-rejected": ScreenShareRejectedMessage,
    "screen-share-stopped": ScreenShareStoppedMessage,
    "error": ErrorMessage,
    "pong": PongMessage,
}


def parse_client_message(data: Dict[str, Any]) -> ClientMessage:
    """
    Parse a raw dictionary into a typed client message.

    Raises:
        ValueError: If the message type is unknown or invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("Message must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or msg_type not in _CLIENT_TYPES:
        raise ValueError(f"Unknown message type: {msg_type}")

    return _CLIENT_TYPES[msg_type](**data)


def parse_server_message(data: Dict[str, Any]) -> ServerMessage:
    """
    Parse a raw dictionary into a typed server message.

    Raises:
        ValueError: If the message type is unknown or invalid.
    """
    if not isinstance(data, dict):
        raise ValueError("Message must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or msg_type not in _SERVER_TYPES:
        raise ValueError(f"Unknown message type: {msg_type}")

    return _SERVER_TYPES[msg_type](**data)


__all__ = [
    # Enumerations
    "ParticipantRole",
    "Channel",
    "ErrorCode",
    # Participant model
    "ParticipantInfo",
    # Client messages
    "JoinRoomMessage",
    "LeaveRoomMessage",
    "ChatMessage",
    "SignalMessage",
    "SetOwnMicMessage",
    "SetUserMicMessage",
    "MicStateMessage",
    "RequestScreenShareMessage",
    "AcceptScreenShareMessage",
    "RejectScreenShareMessage",
    "StopScreenShareMessage",
    "GetParticipantsMessage",
    "PingMessage",
    "ClientMessage",
    # Server messages
    "JoinRoomResultMessage",
    "ParticipantsMessage",
    "ParticipantJoinedMessage",
    "ParticipantLeftMessage",
    "ParticipantMicChangedMessage",
    "ParticipantScreenShareChangedMessage",
    "MicCommandMessage",
    "ChatBroadcast",
    "SignalBroadcast",
    "ScreenShareRequestedMessage",
    "ScreenShareAcceptedMessage",
    "ScreenShareRejectedMessage",
    "ScreenShareStoppedMessage",
    "ErrorMessage",
    "PongMessage",
    "ServerMessage",
    # Parsing functions
    "parse_client_message",
    "parse_server_message",
    # Limits
    "MAX_ID_LENGTH",
    "MAX_NAME_LENGTH",
    "MAX_CHAT_LENGTH",
    "MAX_SIGNAL_PAYLOAD_SIZE",
]
