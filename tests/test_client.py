"""Tests for the client session."""

import asyncio
import json

import pytest

from callhub.client import CallhubClient
from callhub.errors import AdminConflict, JoinTimeout
from callhub.peer import MediaKind
from test_peer import FakeConnection


class FakeServerSocket:
    """Client-side socket double: frames pushed by the test are read by the client."""

    def __init__(self, on_send=None):
        self.sent = []
        self.on_send = on_send
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, raw):
        data = json.loads(raw)
        self.sent.append(data)
        if self.on_send:
            for reply in self.on_send(data) or []:
                self.push(reply)

    def push(self, data):
        self._incoming.put_nowait(json.dumps(data))

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    def of_type(self, message_type):
        return [m for m in self.sent if m.get("type") == message_type]


def participant(pid, name, role, is_mic_on):
    return {"id": pid, "name": name, "role": role, "is_mic_on": is_mic_on, "is_screen_sharing": False}


def answer_join(admin_present=True, role="user"):
    """Build an on_send hook that accepts every join."""
    def on_send(data):
        if data["type"] != "join-room":
            return []
        me = "admin" if role == "admin" else "ann"
        participants = []
        if admin_present or role == "admin":
            participants.append(participant("admin", "Host", "admin", False))
        if role == "user":
            participants.append(participant("ann", "Ann", "user", True))
        return [{
            "type": "join-room-result",
            "request_id": data["request_id"],
            "ok": True,
            "participant_id": me,
            "room_id": data["room_id"],
            "participants": participants,
            "admin_id": "admin" if participants and participants[0]["role"] == "admin" else None,
        }]
    return on_send


@pytest.fixture
def connections():
    return []


@pytest.fixture
def factory(connections):
    def make(remote_id, kind, initiator):
        connection = FakeConnection(remote_id, kind, initiator)
        connections.append(connection)
        return connection
    return make


async def make_client(factory, on_send=None, **kwargs):
    ws = FakeServerSocket(on_send)
    client = CallhubClient(ws, media_factory=factory, **kwargs)
    client.start()
    return client, ws


async def test_user_join_opens_audio_to_admin(factory, connections):
    client, ws = await make_client(factory, answer_join())
    result = await client.join("r1", "Ann")

    assert result.ok
    assert client.participant_id == "ann"
    assert client.admin_id == "admin"
    assert client.is_admin is False
    assert client.mic_on is True
    assert set(client.participants) == {"admin", "ann"}
    assert ws.of_type("join-room")[0]["role"] == "user"

    assert [(c.remote_id, c.kind, c.initiator) for c in connections] == [("admin", MediaKind.AUDIO, True)]
    assert ws.of_type("signal") == [
        {
            "type": "signal", "channel": "user-audio", "target_id": "admin",
            "payload": {"link": "audio", "description": {"type": "offer", "sdp": "offer-audio"}},
        }
    ]
    await client.close()


async def test_user_calls_admin_that_joins_later(factory, connections):
    client, ws = await make_client(factory, answer_join(admin_present=False))
    await client.join("r1", "Ann")
    assert connections == []

    ws.push({"type": "participant-joined", "id": "admin", "name": "Host", "role": "admin", "is_mic_on": False})
    await asyncio.sleep(0.01)
    await client.settle()

    assert client.admin_id == "admin"
    assert [(c.remote_id, c.kind) for c in connections] == [("admin", MediaKind.AUDIO)]
    await client.close()


async def test_admin_join_opens_nothing(factory, connections):
    client, ws = await make_client(factory, answer_join(role="admin"))
    await client.join("r1", "Host", role="admin")

    assert client.is_admin is True
    assert client.peers.is_admin is True
    assert client.mic_on is False
    assert connections == []
    await client.close()


async def test_join_refused_raises_matching_error(factory):
    def refuse(data):
        return [{"type": "join-room-result", "request_id": data["request_id"], "ok": False,
                 "error": "admin_conflict", "message": "Admin already present."}]

    client, ws = await make_client(factory, refuse)
    with pytest.raises(AdminConflict):
        await client.join("r1", "Impostor", role="admin")
    assert client.in_room is False
    await client.close()


async def test_join_timeout(factory):
    client, ws = await make_client(factory, join_timeout=0.05)
    with pytest.raises(JoinTimeout):
        await client.join("r1", "Ann")
    assert client.in_room is False
    await client.close()


async def test_mic_command_is_applied_and_echoed(factory):
    applied = []
    client, ws = await make_client(factory, answer_join(), mic_handler=applied.append)
    await client.join("r1", "Ann")

    ws.push({"type": "mic-command", "enabled": False})
    ws.push({"type": "mic-command", "enabled": False})
    await asyncio.sleep(0.01)

    assert client.mic_on is False
    assert applied[-2:] == [False, False]
    assert ws.of_type("mic-state") == [{"type": "mic-state", "enabled": False}]
    await client.close()


async def test_participant_updates_and_departure(factory, connections):
    client, ws = await make_client(factory, answer_join())
    await client.join("r1", "Ann")

    ws.push({"type": "participant-mic-changed", "id": "admin", "is_mic_on": True})
    ws.push({"type": "participant-screen-share-changed", "id": "ann", "is_screen_sharing": True})
    ws.push({"type": "participant-left", "id": "admin"})
    await asyncio.sleep(0.01)

    assert "admin" not in client.participants
    assert client.admin_id is None
    assert client.participants["ann"].is_screen_sharing is True
    assert connections[0].close_calls == 1
    assert client.peers.connection_count == 0
    await client.close()


async def test_inbound_signal_is_answered(factory, connections):
    client, ws = await make_client(factory, answer_join())
    await client.join("r1", "Ann")

    ws.push({"type": "signal", "channel": "camera", "from_id": "admin", "payload": {"type": "offer", "sdp": "cam"}})
    await asyncio.sleep(0.01)
    await client.settle()

    camera = client.peers.get("admin", MediaKind.CAMERA)
    assert camera is not None and camera.initiator is False
    assert ws.of_type("signal")[-1] == {
        "type": "signal", "channel": "user-camera", "target_id": "admin",
        "payload": {"link": "camera", "description": {"type": "answer", "sdp": "answer"}},
    }
    await client.close()


async def test_screen_share_decider_accepts_and_offers(factory, connections):
    async def decide(requester_id):
        return requester_id == "admin"

    client, ws = await make_client(factory, answer_join(), screen_share_decider=decide)
    await client.join("r1", "Ann")

    # The admin is already showing its own screen to us.
    ws.push({"type": "signal", "channel": "admin-screen", "from_id": "admin", "payload": {"type": "offer", "sdp": "s"}})
    ws.push({"type": "screen-share-requested", "from_id": "admin"})
    await asyncio.sleep(0.01)
    await client.settle()

    assert ws.of_type("accept-screen-share") == [{"type": "accept-screen-share"}]
    broadcast = client.peers.get("admin", MediaKind.SCREEN)
    shared = client.peers.get("admin", MediaKind.SCREEN_SHARE)
    assert broadcast is not None and broadcast.initiator is False
    assert shared is not None and shared.initiator is True
    screen_signals = [s for s in ws.of_type("signal") if s["channel"] == "user-screen"]
    assert sorted(s["payload"]["link"] for s in screen_signals) == ["screen", "screen-share"]

    ws.push({"type": "screen-share-stopped", "target_id": "ann", "stopped_by": "admin"})
    await asyncio.sleep(0.01)
    assert client.peers.get("admin", MediaKind.SCREEN_SHARE) is None
    assert shared.close_calls == 1
    assert client.peers.get("admin", MediaKind.SCREEN) is broadcast
    assert broadcast.close_calls == 0
    await client.close()


async def test_manual_reject(factory):
    client, ws = await make_client(factory, answer_join())
    await client.join("r1", "Ann")

    ws.push({"type": "screen-share-requested", "from_id": "admin"})
    await asyncio.sleep(0.01)
    assert client.screen_share_requester == "admin"

    await client.reject_screen_share()
    assert ws.of_type("reject-screen-share") == [{"type": "reject-screen-share"}]
    assert client.screen_share_requester is None
    await client.close()


async def test_leave_tears_down_and_resets(factory, connections):
    client, ws = await make_client(factory, answer_join())
    await client.join("r1", "Ann")
    await client.leave()

    assert ws.of_type("leave-room") == [{"type": "leave-room"}]
    assert client.in_room is False
    assert client.participants == {}
    assert connections[0].close_calls == 1
    await client.close()
    assert ws.closed is True


async def test_event_callbacks(factory):
    seen = []
    client, ws = await make_client(factory, answer_join())
    client.on("chat-message", lambda m: seen.append(m.text))
    await client.join("r1", "Ann")

    ws.push({"type": "chat-message", "from_id": "admin", "name": "Host", "text": "hello", "timestamp": 1})
    ws.push({"type": "ping"})
    await asyncio.sleep(0.01)

    assert seen == ["hello"]
    await client.close()


async def test_admin_camera_reaches_every_user_and_takes_answers(factory, connections):
    def on_send(data):
        if data["type"] != "join-room":
            return []
        return [{
            "type": "join-room-result", "request_id": data["request_id"], "ok": True,
            "participant_id": "admin", "room_id": data["room_id"], "admin_id": "admin",
            "participants": [
                participant("admin", "Host", "admin", False),
                participant("ann", "Ann", "user", True),
                participant("bob", "Bob", "user", True),
            ],
        }]

    client, ws = await make_client(factory, on_send)
    await client.join("r1", "Host", role="admin")
    await client.open_camera()

    assert [(c.remote_id, c.kind, c.initiator) for c in connections] == [
        ("ann", MediaKind.CAMERA, True),
        ("bob", MediaKind.CAMERA, True),
    ]
    assert [(s["channel"], s["target_id"]) for s in ws.of_type("signal")] == [("camera", "ann"), ("camera", "bob")]
    assert ws.of_type("signal")[0]["payload"] == {"link": "camera", "description": {"type": "offer", "sdp": "offer-camera"}}

    ws.push({
        "type": "signal", "channel": "user-camera", "from_id": "ann",
        "payload": {"link": "camera", "description": {"type": "answer", "sdp": "a"}},
    })
    await asyncio.sleep(0.01)
    await client.settle()

    assert connections[0].applied == [{"type": "answer", "sdp": "a"}]
    assert connections[1].applied == []
    assert len(connections) == 2
    assert len(ws.of_type("signal")) == 2
    await client.close()


async def test_admin_screen_and_user_share_are_separate_links(factory, connections):
    client, ws = await make_client(factory, answer_join(role="admin"))
    await client.join("r1", "Host", role="admin")
    await client.open_screen("ann")

    ws.push({
        "type": "signal", "channel": "user-screen", "from_id": "ann",
        "payload": {"link": "screen-share", "description": {"type": "offer", "sdp": "shared"}},
    })
    await asyncio.sleep(0.01)
    await client.settle()

    outbound = client.peers.get("ann", MediaKind.SCREEN)
    inbound = client.peers.get("ann", MediaKind.SCREEN_SHARE)
    assert outbound.initiator is True and outbound.applied == []
    assert inbound.initiator is False and inbound.applied == [{"type": "offer", "sdp": "shared"}]
    assert ws.of_type("signal")[-1] == {
        "type": "signal", "channel": "admin-screen", "target_id": "ann",
        "payload": {"link": "screen-share", "description": {"type": "answer", "sdp": "answer"}},
    }

    ws.push({"type": "screen-share-stopped", "target_id": "ann", "stopped_by": "ann"})
    await asyncio.sleep(0.01)
    assert client.peers.get("ann", MediaKind.SCREEN_SHARE) is None
    assert client.peers.get("ann", MediaKind.SCREEN) is outbound
    await client.close()


async def test_get_participants_resyncs_mirror(factory):
    def on_send(data):
        replies = answer_join()(data)
        if data["type"] == "get-participants":
            replies.append({
                "type": "participants", "request_id": data["request_id"], "room_id": "r1", "admin_id": "admin",
                "participants": [participant("admin", "Host", "admin", True), participant("ann", "Ann", "user", True),
                                 participant("bob", "Bob", "user", False)],
            })
        return replies

    client, ws = await make_client(factory, on_send)
    await client.join("r1", "Ann")
    snapshot = await client.get_participants()

    assert [p.id for p in snapshot] == ["admin", "ann", "bob"]
    assert set(client.participants) == {"admin", "ann", "bob"}
    assert client.participants["admin"].is_mic_on is True
    await client.close()


async def test_admin_actions_are_sent(factory):
    client, ws = await make_client(factory, answer_join(role="admin"))
    await client.join("r1", "Host", role="admin")

    await client.request_screen_share("ann")
    await client.stop_screen_share("ann")
    await client.send_chat("hello")

    assert ws.of_type("request-screen-share") == [{"type": "request-screen-share", "target_id": "ann"}]
    assert ws.of_type("stop-screen-share") == [{"type": "stop-screen-share", "target_id": "ann"}]
    assert ws.of_type("chat-message") == [{"type": "chat-message", "text": "hello"}]
    await client.close()
