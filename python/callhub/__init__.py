"""
CallHub - Signaling and room coordination for small admin-led calls.
"""

from callhub.errors import (
    CallhubError,
    InvalidRequest,
    AdminConflict,
    Unauthorized,
    NotInRoom,
    Busy,
    JoinTimeout,
    error_for_code,
)
from callhub.permissions import Permission, Role, ROLES

# Protocol message types
from callhub.protocol import (
    ParticipantRole,
    Channel,
    ErrorCode,
    ParticipantInfo,
    # Client messages
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
    ClientMessage,
    # Server messages
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
    ServerMessage,
    parse_client_message,
    parse_server_message,
)

# Room management
from callhub.room import (
    Participant,
    JoinResult,
    Room,
    RoomRegistry,
)

# Core state machines
from callhub.relay import SignalEnvelope, SignalRelay, CHANNEL_RULES
from callhub.media import MediaControl
from callhub.screenshare import ScreenShareState, ScreenShareSession, ScreenShareNegotiator

# Client side
from callhub.peer import MediaKind, MediaConnection, PeerConnectionManager
from callhub.client import CallhubClient

# Server
from callhub.server import CallhubServer

__version__ = "0.1.0"

__all__ = [
    # Errors
    "CallhubError",
    "InvalidRequest",
    "AdminConflict",
    "Unauthorized",
    "NotInRoom",
    "Busy",
    "JoinTimeout",
    "error_for_code",
    # Permissions
    "Permission",
    "Role",
    "ROLES",
    # Protocol - enumerations and snapshot
    "ParticipantRole",
    "Channel",
    "ErrorCode",
    "ParticipantInfo",
    # Protocol - Client messages
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
    # Protocol - Server messages
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
    "parse_client_message",
    "parse_server_message",
    # Rooms
    "Participant",
    "JoinResult",
    "Room",
    "RoomRegistry",
    # Core
    "SignalEnvelope",
    "SignalRelay",
    "CHANNEL_RULES",
    "MediaControl",
    "ScreenShareState",
    "ScreenShareSession",
    "ScreenShareNegotiator",
    # Client
    "MediaKind",
    "MediaConnection",
    "PeerConnectionManager",
    "CallhubClient",
    # Server
    "CallhubServer",
]
