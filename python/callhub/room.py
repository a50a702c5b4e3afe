"""
Room management for CallHub.

Provides Room for tracking the participants of one call and
RoomRegistry for creating, joining, leaving and deleting rooms.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .errors import AdminConflict, InvalidRequest, NotInRoom
from .protocol import (
    ParticipantInfo,
    ParticipantJoinedMessage,
    ParticipantLeftMessage,
    ParticipantRole,
)

logger = logging.getLogger(__name__)


# Called after a participant is removed, before participant-left is broadcast
ParticipantLeftCallback = Callable[[str, "Participant"], Awaitable[None]]


@dataclass
class Participant:
    """One live connection's membership record within a room."""

    id: str
    name: str
    role: ParticipantRole
    is_mic_on: bool
    is_screen_sharing: bool = False
    websocket: Any = field(default=None, repr=False, compare=False)
    joined_at: float = field(default_factory=time.time)

    def to_info(self) -> ParticipantInfo:
        """Convert to the public snapshot sent to clients."""
        return ParticipantInfo(
            id=self.id,
            name=self.name,
            role=self.role,
            is_mic_on=self.is_mic_on,
            is_screen_sharing=self.is_screen_sharing,
        )


@dataclass
class JoinResult:
    """Outcome of a successful join."""

    participant_id: str
    room_id: str
    participants: list[ParticipantInfo]
    admin_id: str | None


class Room:
    """
    Represents one call room.

    Manages:
    - Participants and their WebSocket connections
    - The admin binding
    - Message delivery to one participant or the whole room
    """

    def __init__(self, room_id: str):
        self.room_id = room_id
        self.admin_id: str | None = None
        self.created_at = time.time()

        # Participants in insertion order: participant_id -> Participant
        self._participants: dict[str, Participant] = {}

    @property
    def participants(self) -> list[Participant]:
        """Get participants in join order."""
        return list(self._participants.values())

    @property
    def participant_count(self) -> int:
        """Get number of participants."""
        return len(self._participants)

    @property
    def is_empty(self) -> bool:
        """Check if room has no participants."""
        return len(self._participants) == 0

    def get(self, participant_id: str) -> Participant | None:
        """Get a participant by ID."""
        return self._participants.get(participant_id)

    def has(self, participant_id: str) -> bool:
        """Check if a participant is in the room."""
        return participant_id in self._participants

    def is_admin(self, participant_id: str) -> bool:
        """Check if a participant is the room's bound admin."""
        return self.admin_id is not None and self.admin_id == participant_id

    def snapshot(self) -> list[ParticipantInfo]:
        """Get the public participant list."""
        return [p.to_info() for p in self._participants.values()]

    def _add(self, participant: Participant) -> None:
        self._participants[participant.id] = participant
        if participant.role == ParticipantRole.ADMIN:
            self.admin_id = participant.id

    def _remove(self, participant_id: str) -> Participant | None:
        participant = self._participants.pop(participant_id, None)
        if participant is not None and self.admin_id == participant_id:
            self.admin_id = None
        return participant

    async def send_to(self, participant_id: str, message: Any) -> bool:
        """
        Send a message to a single participant.

        Returns:
            True if the participant was present and the send succeeded.
        """
        participant = self._participants.get(participant_id)
        if participant is None or participant.websocket is None:
            return False
        try:
            await participant.websocket.send_json(_to_data(message))
        except Exception as e:
            logger.warning(f"Failed to send to participant {participant_id}: {e}")
            return False
        return True

    async def broadcast(self, message: Any, exclude: str | None = None) -> None:
        """
        Broadcast a message to all participants.

        Args:
            message: The message to send (will be JSON serialized).
            exclude: Optional participant ID to skip.
        """
        data = _to_data(message)

        targets = [
            p for p in self._participants.values()
            if p.id != exclude and p.websocket is not None
        ]
        if not targets:
            return

        results = await asyncio.gather(
            *(p.websocket.send_json(data) for p in targets),
            return_exceptions=True,
        )
        for participant, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to send to participant {participant.id}: {result}")


def _to_data(message: Any) -> Any:
    if hasattr(message, "model_dump"):
        return message.model_dump(mode="json")
    return message


class RoomRegistry:
    """
    Owns every Room and Participant record.

    Provides:
    - Join with first-come admin election
    - Idempotent leave / connection loss
    - Lazy room creation and deletion of empty rooms
    - Participant -> room lookups for the relay and state machines
    """

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}
        self._participant_rooms: dict[str, str] = {}
        self._lock = asyncio.Lock()

        self._on_participant_left: list[ParticipantLeftCallback] = []

    @property
    def room_count(self) -> int:
        """Get the number of active rooms."""
        return len(self._rooms)

    def has_room(self, room_id: str) -> bool:
        """Check if a room exists."""
        return room_id in self._rooms

    def get_room(self, room_id: str) -> Room | None:
        """Get a room by ID."""
        return self._rooms.get(room_id)

    def room_of(self, participant_id: str) -> Room | None:
        """Get the room a participant is in, if any."""
        room_id = self._participant_rooms.get(participant_id)
        return self._rooms.get(room_id) if room_id else None

    def require_room(self, participant_id: str) -> Room:
        """
        Get the room a participant is in.

        Raises:
            NotInRoom: If the participant has no membership.
        """
        room = self.room_of(participant_id)
        if room is None:
            raise NotInRoom()
        return room

    def get_participant(self, participant_id: str) -> Participant | None:
        """Get a participant record by ID."""
        room = self.room_of(participant_id)
        return room.get(participant_id) if room else None

    def list_participants(self, room_id: str) -> list[ParticipantInfo]:
        """Get a read-only participant snapshot in join order."""
        room = self._rooms.get(room_id)
        return room.snapshot() if room else []

    async def join(
        self,
        participant_id: str,
        websocket: Any,
        room_id: str,
        display_name: str,
        role: str | ParticipantRole,
    ) -> JoinResult:
        """
        Add a participant to a room, creating the room if needed.

        Args:
            participant_id: The joining connection's identifier.
            websocket: Connection used to deliver messages to the participant.
            room_id: The room to join.
            display_name: Free-text name shown to others.
            role: "admin" or "user".

        Returns:
            The new participant's ID with the room's participants and admin.

        Raises:
            InvalidRequest: If a field is empty or malformed, or the
                connection is already in a room.
            AdminConflict: If another live admin holds the room.
        """
        room_id = (room_id or "").strip()
        display_name = (display_name or "").strip()
        if not participant_id or not room_id or not display_name:
            raise InvalidRequest("Room ID and display name are required.")
        try:
            role = ParticipantRole(role)
        except ValueError:
            raise InvalidRequest(f"Unknown role: {role!r}") from None

        created = False
        async with self._lock:
            if participant_id in self._participant_rooms:
                raise InvalidRequest("Already in a room; leave it first.")

            room = self._rooms.get(room_id)
            if role == ParticipantRole.ADMIN and room is not None and room.admin_id is not None:
                raise AdminConflict()

            if room is None:
                room = Room(room_id)
                self._rooms[room_id] = room
                created = True

            participant = Participant(
                id=participant_id,
                name=display_name,
                role=role,
                # Users start ready to speak, admins start muted
                is_mic_on=role == ParticipantRole.USER,
                websocket=websocket,
            )
            room._add(participant)
            self._participant_rooms[participant_id] = room_id

            result = JoinResult(
                participant_id=participant_id,
                room_id=room_id,
                participants=room.snapshot(),
                admin_id=room.admin_id,
            )

        if created:
            logger.info(f"Room {room_id} created")

        logger.info(f"Participant {participant_id} ({role.value}) joined room {room_id}")

        await room.broadcast(
            ParticipantJoinedMessage(
                id=participant.id,
                name=participant.name,
                role=participant.role,
                is_mic_on=participant.is_mic_on,
            ),
            exclude=participant_id,
        )
        return result

    async def leave(self, participant_id: str) -> Participant | None:
        """
        Remove a participant from its room.

        Safe to call for a participant that is already gone.

        Returns:
            The removed participant, or None if it was not in a room.
        """
        async with self._lock:
            room_id = self._participant_rooms.pop(participant_id, None)
            room = self._rooms.get(room_id) if room_id else None
            if room is None:
                return None

            participant = room._remove(participant_id)
            deleted = room.is_empty
            if deleted:
                del self._rooms[room_id]

        if participant is None:
            return None

        logger.info(f"Participant {participant_id} left room {room_id}")

        for callback in self._on_participant_left:
            await callback(room_id, participant)

        if deleted:
            logger.info(f"Room {room_id} deleted")
        else:
            await room.broadcast(ParticipantLeftMessage(id=participant_id))

        return participant

    async def connection_lost(self, participant_id: str) -> Participant | None:
        """
        Handle a dropped connection.

        Same observable effects as leave().
        """
        if participant_id in self._participant_rooms:
            logger.info(f"Connection lost for participant {participant_id}")
        return await self.leave(participant_id)

    def on_participant_left(self, callback: ParticipantLeftCallback) -> None:
        """Register a callback run after a participant is removed."""
        self._on_participant_left.append(callback)


__all__ = [
    "Participant",
    "JoinResult",
    "Room",
    "RoomRegistry",
    "ParticipantLeftCallback",
]
