"""
aiortc-backed media connections.

Requires: pip install callhub[rtc]

aiortc gathers all ICE candidates inside setLocalDescription, so the
descriptions produced here are complete and need no trickle exchange.

Example:
    from callhub.rtc import aiortc_factory

    client = await CallhubClient.connect(
        "ws://localhost:8000/ws",
        media_factory=aiortc_factory(tracks_for=lambda remote, kind: [mic_track]),
    )
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from pydantic import JsonValue

from .peer import MediaConnection, MediaConnectionFactory, MediaKind

logger = logging.getLogger(__name__)

# (remote_id, kind) -> local tracks to send on that link
TracksFor = Callable[[str, MediaKind], List[Any]]
# (remote_id, kind, track) -> None
OnTrack = Callable[[str, MediaKind, Any], None]


def _transceiver_kind(kind: MediaKind) -> str:
    return "audio" if kind == MediaKind.AUDIO else "video"


class AiortcConnection(MediaConnection):
    """
    MediaConnection on top of aiortc's RTCPeerConnection.

    Example:
        conn = AiortcConnection("peer-1", MediaKind.AUDIO, initiator=True, tracks=[mic])
        offer = await conn.start()
    """

    def __init__(
        self,
        remote_id: str,
        kind: MediaKind,
        initiator: bool,
        tracks: Optional[List[Any]] = None,
        on_track: Optional[OnTrack] = None,
        configuration: Optional[Any] = None,
    ):
        super().__init__(remote_id, kind, initiator)
        self._tracks = tracks or []
        self._on_track = on_track
        self._configuration = configuration
        self._pc: Optional[Any] = None

    @property
    def peer_connection(self) -> Optional[Any]:
        """Get the underlying RTCPeerConnection, once started."""
        return self._pc

    async def start(self) -> Optional[JsonValue]:
        try:
            from aiortc import RTCPeerConnection
        except ImportError:
            raise ImportError(
                "aiortc is required for media connections. Install with: pip install callhub[rtc]"
            )

        self._pc = RTCPeerConnection(configuration=self._configuration)

        @self._pc.on("track")
        def on_track(track):
            logger.debug(f"Received {track.kind} track on {self.kind.value} link from {self.remote_id}")
            if self._on_track:
                self._on_track(self.remote_id, self.kind, track)

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"{self.kind.value} link to {self.remote_id}: {self._pc.connectionState}")

        for track in self._tracks:
            self._pc.addTrack(track)

        if not self.initiator:
            return None

        if not self._tracks:
            self._pc.addTransceiver(_transceiver_kind(self.kind), direction="recvonly")

        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def apply_remote(self, payload: JsonValue) -> Optional[JsonValue]:
        from aiortc import RTCSessionDescription

        if not isinstance(payload, dict) or "sdp" not in payload or "type" not in payload:
            raise ValueError("Signal payload is not a session description")

        description = RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])
        await self._pc.setRemoteDescription(description)

        if description.type != "offer":
            return None

        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def close(self) -> None:
        if self._pc is not None:
            await self._pc.close()
            self._pc = None

    def _local_description(self) -> JsonValue:
        description = self._pc.localDescription
        return {"type": description.type, "sdp": description.sdp}


def aiortc_factory(
    tracks_for: Optional[TracksFor] = None,
    on_track: Optional[OnTrack] = None,
    configuration: Optional[Any] = None,
) -> MediaConnectionFactory:
    """
    Build a MediaConnectionFactory producing AiortcConnections.

    Args:
        tracks_for: Returns the local tracks to send on a link.
        on_track: Called with every remote track received.
        configuration: Optional aiortc RTCConfiguration (ICE servers).
    """
    def factory(remote_id: str, kind: MediaKind, initiator: bool) -> MediaConnection:
        tracks = tracks_for(remote_id, kind) if tracks_for else []
        return AiortcConnection(
            remote_id,
            kind,
            initiator,
            tracks=tracks,
            on_track=on_track,
            configuration=configuration,
        )

    return factory


__all__ = ["AiortcConnection", "aiortc_factory"]
