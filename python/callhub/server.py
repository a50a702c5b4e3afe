"""
FastAPI WebSocket server for CallHub.

Provides CallhubServer, the connection gateway that authenticates nothing,
identifies each socket, and dispatches client messages to the room
registry, signal relay, mic control and screen share negotiator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.routing import APIRouter
from pydantic import ValidationError

from . import permissions
from .errors import CallhubError
from .media import MediaControl
from .permissions import Permission
from .protocol import (
    MAX_ID_LENGTH,
    AcceptScreenShareMessage,
    ChatBroadcast,
    ChatMessage,
    ErrorCode,
    ErrorMessage,
    GetParticipantsMessage,
    JoinRoomMessage,
    JoinRoomResultMessage,
    LeaveRoomMessage,
    MicStateMessage,
    ParticipantsMessage,
    PingMessage,
    PongMessage,
    RejectScreenShareMessage,
    RequestScreenShareMessage,
    SetOwnMicMessage,
    SetUserMicMessage,
    SignalMessage,
    StopScreenShareMessage,
    parse_client_message,
)
from .relay import SignalRelay
from .room import RoomRegistry
from .screenshare import ScreenShareNegotiator

logger = logging.getLogger(__name__)

# Security constants
MAX_MESSAGE_SIZE = 1024 * 1024  # 1MB max message size
DEFAULT_RATE_LIMIT = 100  # messages per second
DEFAULT_RATE_WINDOW = 1.0  # seconds
DEFAULT_MESSAGE_TIMEOUT = 60.0  # seconds


class RateLimiter:
    """Simple token bucket rate limiter per connection."""

    def __init__(self, rate: float = DEFAULT_RATE_LIMIT, window: float = DEFAULT_RATE_WINDOW):
        self.rate = rate
        self.window = window
        self._tokens: Dict[str, float] = defaultdict(lambda: rate)
        self._last_update: Dict[str, float] = defaultdict(time.monotonic)

    def is_allowed(self, key: str) -> bool:
        """Check if a request is allowed and consume a token."""
        now = time.monotonic()
        elapsed = now - self._last_update[key]
        self._last_update[key] = now

        self._tokens[key] = min(
            self.rate, self._tokens[key] + elapsed * (self.rate / self.window)
        )

        if self._tokens[key] >= 1:
            self._tokens[key] -= 1
            return True
        return False

    def cleanup(self, key: str) -> None:
        """Clean up state for a disconnected connection."""
        self._tokens.pop(key, None)
        self._last_update.pop(key, None)


class CallhubServer:
    """
    FastAPI WebSocket server for small admin-led calls.

    Handles:
    - WebSocket connections and message routing
    - Room membership (join/leave/connection loss)
    - Signal relay between participants
    - Mic control and screen share negotiation
    - Chat
    """

    def __init__(
        self,
        registry: Optional[RoomRegistry] = None,
        path: str = "/ws",
        health_path: Optional[str] = "/health",
        rate_limit: float = DEFAULT_RATE_LIMIT,
        max_message_size: int = MAX_MESSAGE_SIZE,
        message_timeout: float = DEFAULT_MESSAGE_TIMEOUT,
    ):
        self._registry = registry or RoomRegistry()
        self._relay = SignalRelay(self._registry)
        self._media = MediaControl(self._registry)
        self._screen_share = ScreenShareNegotiator(self._registry)

        self._path = path
        self._health_path = health_path
        self._max_message_size = max_message_size
        self._message_timeout = message_timeout

        self._router = APIRouter()
        self._app: Optional[FastAPI] = None
        self._rate_limiter = RateLimiter(rate=rate_limit)

        # Live connections: participant_id -> WebSocket
        self._connections: Dict[str, WebSocket] = {}

        self._setup_routes()

    @property
    def app(self) -> FastAPI:
        """Get the FastAPI application with WebSocket routes configured."""
        if self._app is None:
            self._app = FastAPI(lifespan=self._lifespan)
            self._app.include_router(self._router)
        return self._app

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Lifespan handler for startup/shutdown events."""
        logger.info(f"CallHub server listening on {self._path}")

        yield

        # Shutdown: treat every live connection as lost
        for participant_id in list(self._connections):
            await self._registry.connection_lost(participant_id)
        logger.info("CallHub server stopped")

    @property
    def registry(self) -> RoomRegistry:
        """Get the room registry."""
        return self._registry

    @property
    def relay(self) -> SignalRelay:
        """Get the signal relay."""
        return self._relay

    @property
    def media(self) -> MediaControl:
        """Get the mic controller."""
        return self._media

    @property
    def screen_share(self) -> ScreenShareNegotiator:
        """Get the screen share negotiator."""
        return self._screen_share

    @property
    def connection_count(self) -> int:
        """Get the number of open connections."""
        return len(self._connections)

    def _setup_routes(self) -> None:
        """Setup WebSocket and health routes."""
        @self._router.websocket(self._path)
        async def websocket_endpoint(websocket: WebSocket):
            await self._handle_connection(websocket)

        if self._health_path:
            @self._router.get(self._health_path)
            async def health() -> Dict[str, Any]:
                return {"status": "ok", "rooms": self._registry.room_count}

    def mount(self, app: FastAPI, prefix: str = "") -> None:
        """Mount the CallHub server on a FastAPI application."""
        self._app = app
        app.include_router(self._router, prefix=prefix)

    async def _handle_connection(self, websocket: WebSocket) -> None:
        """Handle a new WebSocket connection."""
        await websocket.accept()

        participant_id = uuid.uuid4().hex
        self._connections[participant_id] = websocket
        logger.debug(f"Connection {participant_id} opened")

        try:
            while True:
                try:
                    raw_data = await asyncio.wait_for(
                        websocket.receive_text(), timeout=self._message_timeout
                    )
                except asyncio.TimeoutError:
                    # Send a ping to check if the connection is still alive
                    try:
                        await websocket.send_json({"type": "ping"})
                    except Exception:
                        break
                    continue

                if not self._rate_limiter.is_allowed(participant_id):
                    await self._send_error(websocket, ErrorCode.RATE_LIMITED, "Rate limit exceeded.")
                    continue

                if len(raw_data) > self._max_message_size:
                    await self._send_error(websocket, ErrorCode.INVALID_MESSAGE, "Message too large.")
                    continue

                try:
                    data = json.loads(raw_data)
                except json.JSONDecodeError:
                    await self._send_error(websocket, ErrorCode.INVALID_MESSAGE, "Invalid JSON.")
                    continue

                try:
                    await self._handle_message(participant_id, websocket, data)
                except WebSocketDisconnect:
                    raise
                except Exception:
                    logger.exception(f"Error handling message from {participant_id}")
                    await self._send_error(websocket, ErrorCode.INTERNAL_ERROR, "Internal error.")

        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WebSocket error")
        finally:
            self._rate_limiter.cleanup(participant_id)
            self._connections.pop(participant_id, None)
            await self._registry.connection_lost(participant_id)
            logger.debug(f"Connection {participant_id} closed")

    async def _handle_message(self, participant_id: str, websocket: WebSocket, data: Any) -> None:
        """Handle an incoming message."""
        try:
            message = parse_client_message(data)
        except (ValueError, ValidationError) as e:
            if isinstance(data, dict) and data.get("type") == "join-room":
                await self._refuse_malformed_join(participant_id, websocket, data, e)
            else:
                await self._send_error(websocket, ErrorCode.INVALID_MESSAGE, "Invalid message format.")
            return

        handlers = {
            "join-room": self._handle_join,
            "leave-room": self._handle_leave,
            "chat-message": self._handle_chat,
            "signal": self._handle_signal,
            "set-own-mic": self._handle_set_own_mic,
            "set-user-mic": self._handle_set_user_mic,
            "mic-state": self._handle_mic_state,
            "request-screen-share": self._handle_request_screen_share,
            "accept-screen-share": self._handle_accept_screen_share,
            "reject-screen-share": self._handle_reject_screen_share,
            "stop-screen-share": self._handle_stop_screen_share,
            "get-participants": self._handle_get_participants,
            "ping": self._handle_ping,
        }

        handler = handlers.get(message.type)
        if handler is None:
            await self._send_error(websocket, ErrorCode.INVALID_MESSAGE, f"Unknown message type: {message.type}")
            return

        try:
            await handler(participant_id, websocket, message)
        except CallhubError as e:
            logger.debug(f"{message.type} from {participant_id} failed: {e.code.value}: {e.message}")
            await self._send_error(websocket, e.code, e.message)

    async def _handle_join(self, participant_id: str, websocket: WebSocket, message: JoinRoomMessage) -> None:
        """Handle join room request. Failures are answered with a join result."""
        try:
            result = await self._registry.join(
                participant_id,
                websocket,
                message.room_id,
                message.display_name,
                message.role,
            )
        except CallhubError as e:
            logger.info(f"Join of {participant_id} to room {message.room_id!r} refused: {e.code.value}")
            await self._send(
                websocket,
                JoinRoomResultMessage(
                    request_id=message.request_id,
                    ok=False,
                    error=e.code.value,
                    message=e.message,
                ),
            )
            return

        await self._send(
            websocket,
            JoinRoomResultMessage(
                request_id=message.request_id,
                ok=True,
                participant_id=result.participant_id,
                room_id=result.room_id,
                participants=result.participants,
                admin_id=result.admin_id,
            ),
        )

    async def _refuse_malformed_join(
        self, participant_id: str, websocket: WebSocket, data: Dict[str, Any], error: Exception
    ) -> None:
        """Answer a join that failed validation with a join result, echoing a usable request id."""
        logger.info(f"Malformed join from {participant_id} refused: {error}")
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or len(request_id) > MAX_ID_LENGTH:
            request_id = None
        await self._send(
            websocket,
            JoinRoomResultMessage(
                request_id=request_id,
                ok=False,
                error=ErrorCode.INVALID_REQUEST.value,
                message="Invalid join request.",
            ),
        )

    async def _handle_leave(self, participant_id: str, websocket: WebSocket, message: LeaveRoomMessage) -> None:
        """Handle leave room request."""
        await self._registry.leave(participant_id)

    async def _handle_chat(self, participant_id: str, websocket: WebSocket, message: ChatMessage) -> None:
        """Stamp a chat line and broadcast it to the whole room, sender included."""
        room = self._registry.require_room(participant_id)
        permissions.require(room, participant_id, Permission.CHAT)
        sender = room.get(participant_id)

        await room.broadcast(
            ChatBroadcast(
                from_id=participant_id,
                name=sender.name,
                text=message.text,
                timestamp=int(time.time() * 1000),
            )
        )

    async def _handle_signal(self, participant_id: str, websocket: WebSocket, message: SignalMessage) -> None:
        """Handle a signaling payload."""
        await self._relay.route(participant_id, message.channel, message.payload, message.target_id)

    async def _handle_set_own_mic(self, participant_id: str, websocket: WebSocket, message: SetOwnMicMessage) -> None:
        await self._media.set_own_mic(participant_id, message.enabled)

    async def _handle_set_user_mic(self, participant_id: str, websocket: WebSocket, message: SetUserMicMessage) -> None:
        await self._media.set_user_mic(participant_id, message.target_id, message.enabled)

    async def _handle_mic_state(self, participant_id: str, websocket: WebSocket, message: MicStateMessage) -> None:
        await self._media.report_mic_state(participant_id, message.enabled)

    async def _handle_request_screen_share(
        self, participant_id: str, websocket: WebSocket, message: RequestScreenShareMessage
    ) -> None:
        await self._screen_share.request(participant_id, message.target_id)

    async def _handle_accept_screen_share(
        self, participant_id: str, websocket: WebSocket, message: AcceptScreenShareMessage
    ) -> None:
        await self._screen_share.accept(participant_id)

    async def _handle_reject_screen_share(
        self, participant_id: str, websocket: WebSocket, message: RejectScreenShareMessage
    ) -> None:
        await self._screen_share.reject(participant_id)

    async def _handle_stop_screen_share(
        self, participant_id: str, websocket: WebSocket, message: StopScreenShareMessage
    ) -> None:
        await self._screen_share.stop(participant_id, message.target_id)

    async def _handle_get_participants(
        self, participant_id: str, websocket: WebSocket, message: GetParticipantsMessage
    ) -> None:
        """Send a fresh participant snapshot to the requester."""
        room = self._registry.require_room(participant_id)
        await self._send(
            websocket,
            ParticipantsMessage(
                request_id=message.request_id,
                room_id=room.room_id,
                participants=room.snapshot(),
                admin_id=room.admin_id,
            ),
        )

    async def _handle_ping(self, participant_id: str, websocket: WebSocket, message: PingMessage) -> None:
        """Handle ping message."""
        await self._send(websocket, PongMessage(timestamp=time.time()))

    async def _send(self, websocket: WebSocket, message: Any) -> None:
        await websocket.send_json(message.model_dump(mode="json"))

    async def _send_error(
        self, websocket: WebSocket, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Send an error message to a WebSocket."""
        try:
            await websocket.send_json(ErrorMessage(code=code.value, message=message, details=details).model_dump())
        except Exception:
            logger.debug("Failed to send error message to WebSocket")


__all__ = ["CallhubServer", "RateLimiter"]
