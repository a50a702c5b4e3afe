"""
Signal relay for CallHub.

Routes opaque signaling payloads between participants of the same room.
The relay owns no state; every decision is a lookup against the room
registry and the channel table below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import JsonValue

from . import permissions
from .errors import InvalidRequest, Unauthorized
from .permissions import Permission
from .protocol import Channel, SignalBroadcast
from .room import RoomRegistry

logger = logging.getLogger(__name__)


class Routing(Enum):
    """How a channel resolves its recipients."""

    TO_ADMIN = "to_admin"                        # always the room's admin
    TARGET_REQUIRED = "target_required"          # explicit target only
    TARGET_OR_BROADCAST = "target_or_broadcast"  # target, else everyone else


@dataclass(frozen=True)
class ChannelRule:
    """Authorization and routing for one channel."""

    permission: Permission
    routing: Routing


CHANNEL_RULES: dict[Channel, ChannelRule] = {
    Channel.USER_AUDIO: ChannelRule(Permission.SIGNAL, Routing.TO_ADMIN),
    Channel.USER_CAMERA: ChannelRule(Permission.SIGNAL, Routing.TO_ADMIN),
    Channel.USER_SCREEN: ChannelRule(Permission.SIGNAL, Routing.TO_ADMIN),
    Channel.ADMIN_AUDIO: ChannelRule(Permission.SIGNAL_PEER, Routing.TARGET_REQUIRED),
    Channel.CAMERA: ChannelRule(Permission.BROADCAST_MEDIA, Routing.TARGET_OR_BROADCAST),
    Channel.ADMIN_SCREEN: ChannelRule(Permission.BROADCAST_MEDIA, Routing.TARGET_OR_BROADCAST),
}


@dataclass(frozen=True)
class SignalEnvelope:
    """
    A signaling payload plus routing metadata.

    The payload is any JSON value and is never inspected by the relay.
    """

    sender_id: str
    channel: Channel
    payload: JsonValue
    target_id: Optional[str] = None

    def to_broadcast(self) -> SignalBroadcast:
        """Build the message delivered to recipients."""
        return SignalBroadcast(channel=self.channel, from_id=self.sender_id, payload=self.payload)


class SignalRelay:
    """
    Forwards signal envelopes to the right participants.

    Delivery is at-most-once and fire-and-forget: nothing is buffered,
    queued or retried. A target that is no longer present is not an error.
    """

    def __init__(self, registry: RoomRegistry):
        self._registry = registry

    async def route(
        self,
        sender_id: str,
        channel: Channel,
        payload: JsonValue,
        target_id: Optional[str] = None,
    ) -> list[str]:
        """
        Route a payload from a sender on a channel.

        Args:
            sender_id: The sending participant.
            channel: The channel tag.
            payload: Opaque JSON payload.
            target_id: Optional explicit recipient.

        Returns:
            The participant IDs the payload was delivered to.

        Raises:
            NotInRoom: If the sender has no room.
            Unauthorized: If the sender may not use the channel.
            InvalidRequest: If the channel needs a target and none was given.
        """
        envelope = SignalEnvelope(
            sender_id=sender_id,
            channel=Channel(channel),
            payload=payload,
            target_id=target_id,
        )
        return await self.route_envelope(envelope)

    async def route_envelope(self, envelope: SignalEnvelope) -> list[str]:
        """Route a prepared envelope. See route()."""
        room = self._registry.require_room(envelope.sender_id)
        rule = CHANNEL_RULES[envelope.channel]

        if not permissions.check(room, envelope.sender_id, rule.permission):
            logger.warning(
                f"Rejected {envelope.channel.value} signal from non-admin {envelope.sender_id} "
                f"in room {room.room_id}"
            )
            raise Unauthorized(f"Channel '{envelope.channel.value}' is reserved for the admin.")

        if rule.routing is Routing.TO_ADMIN:
            recipients = [room.admin_id] if room.admin_id else []
        elif envelope.target_id is not None:
            recipients = [envelope.target_id] if room.has(envelope.target_id) else []
        elif rule.routing is Routing.TARGET_REQUIRED:
            raise InvalidRequest(f"Channel '{envelope.channel.value}' requires a target.")
        else:
            recipients = [p.id for p in room.participants]

        recipients = [r for r in recipients if r != envelope.sender_id]
        if not recipients:
            logger.debug(f"No recipients for {envelope.channel.value} signal from {envelope.sender_id}")
            return []

        message = envelope.to_broadcast()
        delivered = []
        for recipient_id in recipients:
            if await room.send_to(recipient_id, message):
                delivered.append(recipient_id)

        logger.debug(
            f"Relayed {envelope.channel.value} signal from {envelope.sender_id} to {len(delivered)} recipient(s)"
        )
        return delivered


__all__ = [
    "Routing",
    "ChannelRule",
    "CHANNEL_RULES",
    "SignalEnvelope",
    "SignalRelay",
]
