"""
Screen share negotiation for CallHub.

The admin asks a user to share; the user accepts or rejects; either side
may stop an active share. The target is the initiator of the media link
because it owns the captured screen.

    Idle -> Requested -> Active -> Idle
                 \\-> Idle (rejected / withdrawn)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from . import permissions
from .errors import Busy, InvalidRequest, Unauthorized
from .permissions import Permission
from .protocol import (
    ParticipantScreenShareChangedMessage,
    ScreenShareAcceptedMessage,
    ScreenShareRejectedMessage,
    ScreenShareRequestedMessage,
    ScreenShareStoppedMessage,
)
from .room import Participant, RoomRegistry

logger = logging.getLogger(__name__)


class ScreenShareState(str, Enum):
    """Negotiation state of a screen share session."""

    IDLE = "idle"
    REQUESTED = "requested"
    ACTIVE = "active"


@dataclass
class ScreenShareSession:
    """Negotiation state for one admin-requests-user screen share."""

    requester_id: str
    target_id: str
    room_id: str
    state: ScreenShareState = ScreenShareState.REQUESTED
    created_at: float = field(default_factory=time.time)


class ScreenShareNegotiator:
    """
    Sole mutator of participants' screen-sharing flags.

    Keeps at most one session per target user. A session exists only
    while Requested or Active; Idle means no session.
    """

    def __init__(self, registry: RoomRegistry):
        self._registry = registry
        # target_id -> session
        self._sessions: dict[str, ScreenShareSession] = {}
        registry.on_participant_left(self._handle_participant_left)

    @property
    def session_count(self) -> int:
        """Get the number of pending or active sessions."""
        return len(self._sessions)

    def state_of(self, target_id: str) -> ScreenShareState:
        """Get the negotiation state for a target user."""
        session = self._sessions.get(target_id)
        return session.state if session else ScreenShareState.IDLE

    def sessions_for(self, requester_id: str) -> list[ScreenShareSession]:
        """Get all sessions opened by a requester."""
        return [s for s in self._sessions.values() if s.requester_id == requester_id]

    async def request(self, sender_id: str, target_id: str) -> ScreenShareSession | None:
        """
        Ask a user to share their screen.

        Returns:
            The new session, or None if the target is not in the room.

        Raises:
            NotInRoom: If the sender has no room.
            Unauthorized: If the sender is not the room's admin.
            InvalidRequest: If the admin names itself.
            Busy: If the target already has a pending or active session.
        """
        room = self._registry.require_room(sender_id)
        permissions.require(room, sender_id, Permission.REQUEST_SCREEN_SHARE)

        if target_id == sender_id:
            raise InvalidRequest("Cannot request a screen share from yourself.")
        if not room.has(target_id):
            logger.debug(f"Screen share request for absent participant {target_id} ignored")
            return None
        if target_id in self._sessions:
            raise Busy()

        session = ScreenShareSession(requester_id=sender_id, target_id=target_id, room_id=room.room_id)
        self._sessions[target_id] = session
        logger.info(f"Admin {sender_id} requested screen share from {target_id} in room {room.room_id}")

        await room.send_to(target_id, ScreenShareRequestedMessage(from_id=sender_id))
        return session

    async def accept(self, sender_id: str) -> ScreenShareSession:
        """
        Accept the pending request addressed to the sender.

        Raises:
            NotInRoom: If the sender has no room.
            InvalidRequest: If there is no pending request for the sender.
        """
        room = self._registry.require_room(sender_id)
        session = self._sessions.get(sender_id)
        if session is None or session.state != ScreenShareState.REQUESTED:
            raise InvalidRequest("No pending screen share request.")

        session.state = ScreenShareState.ACTIVE
        participant = room.get(sender_id)
        participant.is_screen_sharing = True
        logger.info(f"Participant {sender_id} accepted screen share for {session.requester_id}")

        await room.broadcast(ParticipantScreenShareChangedMessage(id=sender_id, is_screen_sharing=True))
        # Target now sends its offer to the admin on the user-screen channel
        await room.send_to(session.requester_id, ScreenShareAcceptedMessage(target_id=sender_id))
        return session

    async def reject(self, sender_id: str) -> ScreenShareSession:
        """
        Reject the pending request addressed to the sender.

        Raises:
            NotInRoom: If the sender has no room.
            InvalidRequest: If there is no pending request for the sender.
        """
        room = self._registry.require_room(sender_id)
        session = self._sessions.get(sender_id)
        if session is None or session.state != ScreenShareState.REQUESTED:
            raise InvalidRequest("No pending screen share request.")

        del self._sessions[sender_id]
        logger.info(f"Participant {sender_id} rejected screen share for {session.requester_id}")

        await room.send_to(session.requester_id, ScreenShareRejectedMessage(target_id=sender_id))
        return session

    async def stop(self, sender_id: str, target_id: str | None = None) -> ScreenShareSession | None:
        """
        Stop a screen share. Callable by the target or the admin.

        An admin may also withdraw a request that is still pending.

        Returns:
            The ended session, or None if there was nothing to stop.

        Raises:
            NotInRoom: If the sender has no room.
            Unauthorized: If a user names someone else's session.
            InvalidRequest: If the admin has several sessions and names none.
        """
        room = self._registry.require_room(sender_id)

        if target_id is None or target_id == sender_id:
            session = self._sessions.get(sender_id)
            if session is not None:
                if session.state != ScreenShareState.ACTIVE:
                    # A target declines a pending request with reject()
                    return None
                await self._end(session, stopped_by=sender_id)
                return session

        if not permissions.check(room, sender_id, Permission.REQUEST_SCREEN_SHARE):
            if target_id is not None and target_id != sender_id:
                raise Unauthorized("Only the admin can stop another participant's screen share.")
            return None

        if target_id is None:
            owned = self.sessions_for(sender_id)
            if not owned:
                return None
            if len(owned) > 1:
                raise InvalidRequest("Several screen shares are open; name the target.")
            session = owned[0]
        else:
            session = self._sessions.get(target_id)
            if session is None or session.requester_id != sender_id:
                return None

        await self._end(session, stopped_by=sender_id)
        return session

    async def _end(self, session: ScreenShareSession, stopped_by: str) -> None:
        """Move a session to Idle and notify whoever is still present."""
        if self._sessions.get(session.target_id) is not session:
            return
        del self._sessions[session.target_id]
        was_active = session.state == ScreenShareState.ACTIVE
        session.state = ScreenShareState.IDLE

        logger.info(
            f"Screen share of {session.target_id} for {session.requester_id} ended by {stopped_by}"
        )

        room = self._registry.get_room(session.room_id)
        if room is None:
            return

        if was_active:
            target = room.get(session.target_id)
            if target is not None:
                target.is_screen_sharing = False
            await room.broadcast(
                ParticipantScreenShareChangedMessage(id=session.target_id, is_screen_sharing=False)
            )

        stopped = ScreenShareStoppedMessage(target_id=session.target_id, stopped_by=stopped_by)
        await room.send_to(session.requester_id, stopped)
        await room.send_to(session.target_id, stopped)

    async def _handle_participant_left(self, room_id: str, participant: Participant) -> None:
        """Force every session the departed participant was part of to Idle."""
        if participant.is_screen_sharing:
            participant.is_screen_sharing = False
        affected = [
            s for s in self._sessions.values()
            if s.room_id == room_id and participant.id in (s.target_id, s.requester_id)
        ]
        for session in affected:
            await self._end(session, stopped_by=participant.id)


__all__ = [
    "ScreenShareState",
    "ScreenShareSession",
    "ScreenShareNegotiator",
]
