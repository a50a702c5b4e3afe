"""
Microphone control for CallHub.

The server holds each participant's mic flag and is the single source
of truth for it. Clients treat their local toggle as provisional until
the server's broadcast confirms it.
"""

from __future__ import annotations

import logging

from . import permissions
from .permissions import Permission
from .protocol import MicCommandMessage, ParticipantMicChangedMessage
from .room import RoomRegistry

logger = logging.getLogger(__name__)


class MediaControl:
    """
    Sole mutator of participants' microphone flags.

    Handles:
    - Admin switching its own mic
    - Admin muting / unmuting a user
    - Reconciling a client whose local state drifted from the server's
    """

    def __init__(self, registry: RoomRegistry):
        self._registry = registry

    async def set_own_mic(self, sender_id: str, enabled: bool) -> bool:
        """
        Set the admin's own mic flag and broadcast it.

        Returns:
            True if the flag changed.

        Raises:
            NotInRoom: If the sender has no room.
            Unauthorized: If the sender is not the room's admin.
        """
        room = self._registry.require_room(sender_id)
        permissions.require(room, sender_id, Permission.CONTROL_MIC)

        participant = room.get(sender_id)
        changed = participant.is_mic_on != enabled
        participant.is_mic_on = enabled

        if changed:
            logger.info(f"Admin {sender_id} turned own mic {'on' if enabled else 'off'} in room {room.room_id}")
            await room.broadcast(ParticipantMicChangedMessage(id=sender_id, is_mic_on=enabled))
        return changed

    async def set_user_mic(self, sender_id: str, target_id: str, enabled: bool) -> bool:
        """
        Set another participant's mic flag.

        The change is broadcast to the room for display, and the target
        separately receives an imperative mic command it must apply.

        Returns:
            True if the flag changed.

        Raises:
            NotInRoom: If the sender has no room.
            Unauthorized: If the sender is not the room's admin.
        """
        room = self._registry.require_room(sender_id)
        permissions.require(room, sender_id, Permission.CONTROL_MIC)

        if target_id == sender_id:
            changed = await self.set_own_mic(sender_id, enabled)
            await room.send_to(sender_id, MicCommandMessage(enabled=enabled))
            return changed

        target = room.get(target_id)
        if target is None:
            logger.debug(f"Mic change for absent participant {target_id} ignored")
            return False

        changed = target.is_mic_on != enabled
        target.is_mic_on = enabled

        if changed:
            logger.info(
                f"Admin {sender_id} turned mic of {target_id} {'on' if enabled else 'off'} in room {room.room_id}"
            )
            await room.broadcast(ParticipantMicChangedMessage(id=target_id, is_mic_on=enabled))

        # Always sent, so a client that drifted is forced back in line
        await room.send_to(target_id, MicCommandMessage(enabled=enabled))
        return changed

    async def report_mic_state(self, participant_id: str, enabled: bool) -> bool:
        """
        Reconcile a client's reported local mic state with the server flag.

        The server flag never changes here. On mismatch the authoritative
        value is re-sent to the reporting client.

        Returns:
            True if a corrective command was sent.

        Raises:
            NotInRoom: If the participant has no room.
        """
        room = self._registry.require_room(participant_id)
        participant = room.get(participant_id)

        if participant.is_mic_on == enabled:
            return False

        logger.info(
            f"Participant {participant_id} reported mic {'on' if enabled else 'off'}, "
            f"server has {'on' if participant.is_mic_on else 'off'}; re-sending command"
        )
        await room.send_to(participant_id, MicCommandMessage(enabled=participant.is_mic_on))
        return True


__all__ = ["MediaControl"]
