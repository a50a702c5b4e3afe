"""
Peer connection lifecycle for CallHub clients.

Tracks one media connection per (remote participant, link) and maps links
onto signaling channels. Signaling is non-trickle: each side emits a single
complete description per connection establishment.

The two screen links travel over the same channel pair in opposite
directions, so every outbound description is wrapped as
``{"link": <kind>, "description": <description>}``. The server relays the
wrapper untouched; the receiving manager uses it to find the link.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import JsonValue

from .protocol import Channel

logger = logging.getLogger(__name__)


class MediaKind(str, Enum):
    """
    Kinds of media link between two participants.

    Each kind has a fixed initiating side: users open AUDIO and
    SCREEN_SHARE, the admin opens CAMERA and SCREEN.
    """

    AUDIO = "audio"
    CAMERA = "camera"
    SCREEN = "screen"
    SCREEN_SHARE = "screen-share"


# (kind, local side is admin) -> outbound channel
OUTBOUND_CHANNELS: Dict[Tuple[MediaKind, bool], Channel] = {
    (MediaKind.AUDIO, True): Channel.ADMIN_AUDIO,
    (MediaKind.AUDIO, False): Channel.USER_AUDIO,
    (MediaKind.CAMERA, True): Channel.CAMERA,
    (MediaKind.CAMERA, False): Channel.USER_CAMERA,
    (MediaKind.SCREEN, True): Channel.ADMIN_SCREEN,
    (MediaKind.SCREEN, False): Channel.USER_SCREEN,
    (MediaKind.SCREEN_SHARE, True): Channel.ADMIN_SCREEN,
    (MediaKind.SCREEN_SHARE, False): Channel.USER_SCREEN,
}

# Link assumed for an untagged description: the one whose offers use the channel
KIND_BY_CHANNEL: Dict[Channel, MediaKind] = {
    Channel.USER_AUDIO: MediaKind.AUDIO,
    Channel.ADMIN_AUDIO: MediaKind.AUDIO,
    Channel.CAMERA: MediaKind.CAMERA,
    Channel.USER_CAMERA: MediaKind.CAMERA,
    Channel.ADMIN_SCREEN: MediaKind.SCREEN,
    Channel.USER_SCREEN: MediaKind.SCREEN_SHARE,
}

LinkKey = Tuple[str, MediaKind]


def wrap_description(kind: MediaKind, description: JsonValue) -> JsonValue:
    """Tag a description with the link it belongs to."""
    return {"link": kind.value, "description": description}


def unwrap_description(channel: Channel, payload: JsonValue) -> Tuple[MediaKind, JsonValue]:
    """
    Find the link an inbound payload belongs to.

    Raises:
        ValueError: If the tagged link cannot travel on the channel.
    """
    if isinstance(payload, dict) and "link" in payload and "description" in payload:
        kind = MediaKind(payload["link"])
        if channel not in (OUTBOUND_CHANNELS[(kind, True)], OUTBOUND_CHANNELS[(kind, False)]):
            raise ValueError(f"{kind.value} link does not use channel {channel.value}")
        return kind, payload["description"]
    return KIND_BY_CHANNEL[channel], payload


class MediaConnection(ABC):
    """
    One underlying media connection to a remote participant.

    Implementations wrap a real peer connection (see callhub.rtc).
    Descriptions are opaque JSON values the signaling layer never reads.
    """

    def __init__(self, remote_id: str, kind: MediaKind, initiator: bool):
        self.remote_id = remote_id
        self.kind = kind
        self.initiator = initiator

    @abstractmethod
    async def start(self) -> Optional[JsonValue]:
        """
        Prepare the connection.

        Returns:
            The complete local offer for an initiator, else None.
        """
        ...

    @abstractmethod
    async def apply_remote(self, payload: JsonValue) -> Optional[JsonValue]:
        """
        Apply the remote side's description.

        Returns:
            A description to send back (an answer), or None.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        ...


# (remote_id, kind, initiator) -> MediaConnection
MediaConnectionFactory = Callable[[str, MediaKind, bool], MediaConnection]

# (channel, target_id, payload) -> None
SendSignal = Callable[[Channel, Optional[str], JsonValue], Awaitable[None]]


class PeerConnectionManager:
    """
    Owns the client's media connections.

    Features:
    - At most one connection per (remote, kind)
    - Initiator and answerer setup from a single description each
    - Per-link serialisation: a signal that arrives mid-open is applied after
    - Idempotent tear-down; each connection is closed exactly once
    """

    def __init__(
        self,
        send_signal: SendSignal,
        media_factory: MediaConnectionFactory,
        is_admin: bool = False,
    ):
        self._send_signal = send_signal
        self._media_factory = media_factory
        self.is_admin = is_admin

        self._connections: Dict[LinkKey, MediaConnection] = {}
        self._locks: Dict[LinkKey, asyncio.Lock] = {}
        self._lock_users: Dict[LinkKey, int] = {}

    @property
    def connection_count(self) -> int:
        """Get the number of open connections."""
        return len(self._connections)

    def get(self, remote_id: str, kind: MediaKind) -> Optional[MediaConnection]:
        """Get the connection for a link, if any."""
        return self._connections.get((remote_id, kind))

    def links(self) -> List[LinkKey]:
        """Get all open (remote, kind) links."""
        return list(self._connections.keys())

    def channel_for(self, kind: MediaKind) -> Channel:
        """Get the outbound channel for a link kind on this side."""
        return OUTBOUND_CHANNELS[(kind, self.is_admin)]

    @asynccontextmanager
    async def _link(self, key: LinkKey) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                if key not in self._connections:
                    del self._locks[key]

    async def _send(self, kind: MediaKind, remote_id: str, description: JsonValue) -> None:
        await self._send_signal(self.channel_for(kind), remote_id, wrap_description(kind, description))

    async def open(self, remote_id: str, kind: MediaKind) -> MediaConnection:
        """
        Open a link as initiator and send its offer.

        Returns the existing connection if the link is already open.
        """
        key = (remote_id, kind)
        async with self._link(key):
            existing = self._connections.get(key)
            if existing is not None:
                return existing

            connection = self._media_factory(remote_id, kind, True)
            self._connections[key] = connection
            try:
                offer = await connection.start()
                if offer is not None:
                    await self._send(kind, remote_id, offer)
            except Exception:
                logger.exception(f"Failed to open {kind.value} link to {remote_id}")
                await self._discard(key)
                raise

            logger.info(f"Opened {kind.value} link to {remote_id}")
            return connection

    async def handle_signal(self, remote_id: str, channel: Channel, payload: JsonValue) -> None:
        """
        Apply an inbound signal, creating an answerer if the link is new.

        Errors tear the link down and are not raised.
        """
        channel = Channel(channel)
        try:
            kind, description = unwrap_description(channel, payload)
        except ValueError as e:
            logger.warning(f"Dropping {channel.value} signal from {remote_id}: {e}")
            return

        key = (remote_id, kind)
        async with self._link(key):
            try:
                connection = self._connections.get(key)
                if connection is None:
                    connection = self._media_factory(remote_id, kind, False)
                    self._connections[key] = connection
                    logger.info(f"Answering {kind.value} link from {remote_id}")
                    await connection.start()

                reply = await connection.apply_remote(description)
                if reply is not None:
                    await self._send(kind, remote_id, reply)
            except Exception:
                logger.exception(f"Failed to apply {kind.value} signal from {remote_id}")
                await self._discard(key)

    async def close(self, remote_id: str, kind: MediaKind) -> bool:
        """
        Tear down one link.

        Returns:
            True if a connection was closed.
        """
        key = (remote_id, kind)
        async with self._link(key):
            return await self._discard(key)

    async def close_remote(self, remote_id: str) -> int:
        """Tear down every link to a remote participant."""
        closed = 0
        for kind in MediaKind:
            if await self.close(remote_id, kind):
                closed += 1
        return closed

    async def close_all(self) -> int:
        """Tear down every link."""
        closed = 0
        for remote_id, kind in self.links():
            if await self.close(remote_id, kind):
                closed += 1
        return closed

    async def _discard(self, key: LinkKey) -> bool:
        connection = self._connections.pop(key, None)
        if connection is None:
            return False
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing {key[1].value} link to {key[0]}: {e}")
        logger.info(f"Closed {key[1].value} link to {key[0]}")
        return True


__all__ = [
    "MediaKind",
    "MediaConnection",
    "MediaConnectionFactory",
    "SendSignal",
    "OUTBOUND_CHANNELS",
    "KIND_BY_CHANNEL",
    "wrap_description",
    "unwrap_description",
    "PeerConnectionManager",
]
