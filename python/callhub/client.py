"""
Client session for CallHub.

CallhubClient speaks the WebSocket protocol for one participant, keeps a
local mirror of the room, and drives the peer connection manager.

Example:
    client = await CallhubClient.connect("ws://localhost:8000/ws")
    await client.join("standup", "Ann", role="user")
    await client.send_chat("hello")
    await client.leave()
    await client.close()
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, JsonValue, ValidationError

from .errors import InvalidRequest, JoinTimeout, error_for_code
from .peer import MediaConnectionFactory, MediaKind, PeerConnectionManager
from .protocol import (
    AcceptScreenShareMessage,
    Channel,
    ChatMessage,
    GetParticipantsMessage,
    JoinRoomMessage,
    JoinRoomResultMessage,
    LeaveRoomMessage,
    MicStateMessage,
    ParticipantInfo,
    ParticipantRole,
    ParticipantsMessage,
    PingMessage,
    RejectScreenShareMessage,
    RequestScreenShareMessage,
    SetOwnMicMessage,
    SetUserMicMessage,
    SignalMessage,
    StopScreenShareMessage,
    parse_server_message,
)

logger = logging.getLogger(__name__)

DEFAULT_JOIN_TIMEOUT = 10.0  # seconds

EventHandler = Callable[[Any], Union[Awaitable[None], None]]
# requester_id -> accept?
ScreenShareDecider = Callable[[str], Awaitable[bool]]
# enabled -> None; applies the mic state to the local capture device
MicHandler = Callable[[bool], Union[Awaitable[None], None]]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class CallhubClient:
    """
    One participant's connection to a CallHub server.

    Handles:
    - Join with a bounded wait for the server's answer
    - Mirroring the participant list from server broadcasts
    - Applying mic commands and echoing the local mic state
    - Answering screen share requests
    - Opening and tearing down media links
    """

    def __init__(
        self,
        websocket: Any,
        media_factory: Optional[MediaConnectionFactory] = None,
        join_timeout: float = DEFAULT_JOIN_TIMEOUT,
        screen_share_decider: Optional[ScreenShareDecider] = None,
        mic_handler: Optional[MicHandler] = None,
    ):
        if media_factory is None:
            from .rtc import aiortc_factory
            media_factory = aiortc_factory()

        self._ws = websocket
        self._join_timeout = join_timeout
        self._screen_share_decider = screen_share_decider
        self._mic_handler = mic_handler
        self.peers = PeerConnectionManager(self._send_signal, media_factory)

        self.participant_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.role: Optional[ParticipantRole] = None
        self.admin_id: Optional[str] = None
        self.participants: Dict[str, ParticipantInfo] = {}
        self.mic_on = False
        self.screen_share_requester: Optional[str] = None

        self._pending: Dict[str, asyncio.Future] = {}
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()
        self._reader: Optional[asyncio.Task] = None

    @classmethod
    async def connect(cls, url: str, **kwargs: Any) -> "CallhubClient":
        """Open a WebSocket to a CallHub server and start reading from it."""
        import websockets

        websocket = await websockets.connect(url)
        client = cls(websocket, **kwargs)
        client.start()
        return client

    @property
    def in_room(self) -> bool:
        return self.room_id is not None

    @property
    def is_admin(self) -> bool:
        return self.role == ParticipantRole.ADMIN

    def start(self) -> None:
        """Start the background reader."""
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    def on(self, message_type: str, handler: EventHandler) -> None:
        """Register a callback for a server message type."""
        self._handlers[message_type].append(handler)

    async def settle(self) -> None:
        """Wait for in-flight link and screen share work to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Tear down every link and close the WebSocket."""
        await self.peers.close_all()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        await self._ws.close()

    # -------------------------------------------------------------------------
    # Room membership
    # -------------------------------------------------------------------------

    async def join(
        self,
        room_id: str,
        display_name: str,
        role: Union[str, ParticipantRole] = ParticipantRole.USER,
    ) -> JoinRoomResultMessage:
        """
        Join a room.

        Raises:
            JoinTimeout: If the server does not answer in time.
            CallhubError: The error matching the server's refusal.
        """
        role_value = role.value if isinstance(role, ParticipantRole) else role
        request_id = uuid.uuid4().hex
        result = await self._request(
            JoinRoomMessage(
                room_id=room_id,
                display_name=display_name,
                role=role_value,
                request_id=request_id,
            ),
            request_id,
        )
        if result is None:
            raise JoinTimeout()
        if not result.ok:
            raise error_for_code(result.error, result.message)

        logger.info(f"Joined room {result.room_id} as {result.participant_id} ({role_value})")

        # A user always calls the admin
        if not self.is_admin and self.admin_id:
            await self.peers.open(self.admin_id, MediaKind.AUDIO)
        return result

    async def leave(self) -> None:
        """Leave the current room and tear down every link."""
        if not self.in_room:
            return
        await self._send(LeaveRoomMessage())
        await self.peers.close_all()
        logger.info(f"Left room {self.room_id}")
        self._reset_room_state()

    async def get_participants(self) -> List[ParticipantInfo]:
        """Fetch a fresh participant snapshot and resync the local mirror."""
        request_id = uuid.uuid4().hex
        result = await self._request(GetParticipantsMessage(request_id=request_id), request_id)
        if result is None:
            raise asyncio.TimeoutError("Timed out waiting for participants")
        return result.participants

    # -------------------------------------------------------------------------
    # Chat and mic
    # -------------------------------------------------------------------------

    async def send_chat(self, text: str) -> None:
        await self._send(ChatMessage(text=text))

    async def set_own_mic(self, enabled: bool) -> None:
        """Switch the admin's own mic. Local state is provisional until confirmed."""
        await self._apply_mic(enabled)
        await self._send(SetOwnMicMessage(enabled=enabled))

    async def set_user_mic(self, target_id: str, enabled: bool) -> None:
        await self._send(SetUserMicMessage(target_id=target_id, enabled=enabled))

    async def report_mic_state(self) -> None:
        """Tell the server the actual local mic state."""
        await self._send(MicStateMessage(enabled=self.mic_on))

    async def ping(self) -> None:
        await self._send(PingMessage())

    # -------------------------------------------------------------------------
    # Media links
    # -------------------------------------------------------------------------

    async def open_camera(self, target_id: Optional[str] = None) -> None:
        """Admin: offer the camera to one user, or to every user."""
        targets = [target_id] if target_id else [pid for pid in self.participants if pid != self.participant_id]
        for remote_id in targets:
            await self.peers.open(remote_id, MediaKind.CAMERA)

    async def open_screen(self, target_id: Optional[str] = None) -> None:
        """Admin: offer the admin's own screen to one user, or to every user."""
        targets = [target_id] if target_id else [pid for pid in self.participants if pid != self.participant_id]
        for remote_id in targets:
            await self.peers.open(remote_id, MediaKind.SCREEN)

    # -------------------------------------------------------------------------
    # Screen share
    # -------------------------------------------------------------------------

    async def request_screen_share(self, target_id: str) -> None:
        await self._send(RequestScreenShareMessage(target_id=target_id))

    async def accept_screen_share(self) -> None:
        """Accept the pending request and offer the screen to the admin."""
        requester = self.screen_share_requester
        if requester is None:
            raise InvalidRequest("No screen share request to accept.")
        await self._send(AcceptScreenShareMessage())
        await self.peers.open(requester, MediaKind.SCREEN_SHARE)

    async def reject_screen_share(self) -> None:
        await self._send(RejectScreenShareMessage())
        self.screen_share_requester = None

    async def stop_screen_share(self, target_id: Optional[str] = None) -> None:
        await self._send(StopScreenShareMessage(target_id=target_id))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _send(self, message: BaseModel) -> None:
        await self._ws.send(message.model_dump_json())

    async def _send_signal(self, channel: Channel, target_id: Optional[str], payload: JsonValue) -> None:
        # User-side channels always reach the admin; the target is ignored there
        await self._send(SignalMessage(channel=channel, target_id=target_id, payload=payload))

    async def _request(self, message: BaseModel, request_id: str) -> Optional[Any]:
        """Send a message and wait for the reply carrying its request_id."""
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(message)
            return await asyncio.wait_for(future, timeout=self._join_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No answer to {message.type} within {self._join_timeout}s")
            return None
        finally:
            self._pending.pop(request_id, None)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _reset_room_state(self) -> None:
        self.participant_id = None
        self.room_id = None
        self.role = None
        self.admin_id = None
        self.participants.clear()
        self.screen_share_requester = None
        self.peers.is_admin = False

    async def _apply_mic(self, enabled: bool) -> bool:
        """Apply a mic state locally. Returns the previous state."""
        previous = self.mic_on
        self.mic_on = enabled
        if self._mic_handler:
            await _maybe_await(self._mic_handler(enabled))
        return previous

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON frame from server")
                    continue

                if isinstance(data, dict) and data.get("type") == "ping":
                    # Server liveness probe
                    continue

                try:
                    message = parse_server_message(data)
                except (ValueError, ValidationError) as e:
                    logger.warning(f"Ignoring invalid server message: {e}")
                    continue

                try:
                    await self._dispatch(message)
                except Exception:
                    logger.exception(f"Error handling {message.type} message")
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Connection closed"))

    async def _dispatch(self, message: Any) -> None:
        handlers = {
            "join-room-result": self._on_join_result,
            "participants": self._on_participants,
            "participant-joined": self._on_participant_joined,
            "participant-left": self._on_participant_left,
            "participant-mic-changed": self._on_mic_changed,
            "participant-screen-share-changed": self._on_screen_share_changed,
            "mic-command": self._on_mic_command,
            "signal": self._on_signal,
            "screen-share-requested": self._on_screen_share_requested,
            "screen-share-rejected": self._on_screen_share_rejected,
            "screen-share-stopped": self._on_screen_share_stopped,
            "error": self._on_error,
        }
        handler = handlers.get(message.type)
        if handler:
            await handler(message)

        for callback in self._handlers.get(message.type, []):
            await _maybe_await(callback(message))

    def _resolve(self, request_id: Optional[str], message: Any) -> None:
        future = self._pending.get(request_id or "")
        if future is not None and not future.done():
            future.set_result(message)

    async def _on_join_result(self, message: JoinRoomResultMessage) -> None:
        # Room state is applied here so later frames see it immediately
        if message.ok and self._pending.get(message.request_id or "") is not None:
            self.participant_id = message.participant_id
            self.room_id = message.room_id
            self.admin_id = message.admin_id
            self.role = ParticipantRole.ADMIN if message.admin_id == message.participant_id else ParticipantRole.USER
            self.participants = {p.id: p for p in message.participants}
            self.peers.is_admin = self.is_admin
            me = self.participants.get(self.participant_id)
            if me is not None:
                await self._apply_mic(me.is_mic_on)
        self._resolve(message.request_id, message)

    async def _on_participants(self, message: ParticipantsMessage) -> None:
        if message.room_id == self.room_id:
            self.participants = {p.id: p for p in message.participants}
            self.admin_id = message.admin_id
        self._resolve(message.request_id, message)

    async def _on_participant_joined(self, message: Any) -> None:
        self.participants[message.id] = ParticipantInfo(
            id=message.id,
            name=message.name,
            role=message.role,
            is_mic_on=message.is_mic_on,
        )
        if message.role == ParticipantRole.ADMIN:
            self.admin_id = message.id
            if self.in_room and not self.is_admin:
                self._spawn(self.peers.open(message.id, MediaKind.AUDIO))

    async def _on_participant_left(self, message: Any) -> None:
        self.participants.pop(message.id, None)
        if self.admin_id == message.id:
            self.admin_id = None
        if self.screen_share_requester == message.id:
            self.screen_share_requester = None
        await self.peers.close_remote(message.id)

    async def _on_mic_changed(self, message: Any) -> None:
        participant = self.participants.get(message.id)
        if participant is not None:
            participant.is_mic_on = message.is_mic_on
        if message.id == self.participant_id and self.mic_on != message.is_mic_on:
            # Server confirmation wins over the provisional local toggle
            await self._apply_mic(message.is_mic_on)

    async def _on_screen_share_changed(self, message: Any) -> None:
        participant = self.participants.get(message.id)
        if participant is not None:
            participant.is_screen_sharing = message.is_screen_sharing

    async def _on_mic_command(self, message: Any) -> None:
        previous = await self._apply_mic(message.enabled)
        if previous != message.enabled:
            await self._send(MicStateMessage(enabled=message.enabled))

    async def _on_signal(self, message: Any) -> None:
        self._spawn(self.peers.handle_signal(message.from_id, message.channel, message.payload))

    async def _on_screen_share_requested(self, message: Any) -> None:
        self.screen_share_requester = message.from_id
        if self._screen_share_decider is not None:
            self._spawn(self._decide_screen_share(message.from_id))

    async def _decide_screen_share(self, requester_id: str) -> None:
        accepted = await self._screen_share_decider(requester_id)
        if self.screen_share_requester != requester_id:
            return
        if accepted:
            await self.accept_screen_share()
        else:
            await self.reject_screen_share()

    async def _on_screen_share_rejected(self, message: Any) -> None:
        logger.info(f"Screen share rejected by {message.target_id}")

    async def _on_screen_share_stopped(self, message: Any) -> None:
        if message.target_id == self.participant_id:
            remote_id = self.screen_share_requester or self.admin_id
            self.screen_share_requester = None
        else:
            remote_id = message.target_id
        if remote_id:
            await self.peers.close(remote_id, MediaKind.SCREEN_SHARE)

    async def _on_error(self, message: Any) -> None:
        logger.warning(f"Server error {message.code}: {message.message}")


__all__ = ["CallhubClient", "DEFAULT_JOIN_TIMEOUT"]
