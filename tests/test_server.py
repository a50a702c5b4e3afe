"""End-to-end tests for the WebSocket gateway."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from callhub import CallhubServer


@pytest.fixture
def server():
    return CallhubServer()


@pytest.fixture
def client(server):
    with TestClient(server.app) as client:
        yield client


def join(ws, room_id="r1", name="Ann", role="user", request_id="q1"):
    ws.send_json({"type": "join-room", "room_id": room_id, "display_name": name, "role": role, "request_id": request_id})
    return ws.receive_json()


def test_health(client, server):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "rooms": 0}


def test_join_scenario(client):
    with client.websocket_connect("/ws") as admin, client.websocket_connect("/ws") as ann:
        result = join(admin, name="Host", role="admin")
        assert result["type"] == "join-room-result"
        assert result["ok"] is True
        assert result["request_id"] == "q1"
        admin_id = result["participant_id"]
        assert result["admin_id"] == admin_id
        assert [p["id"] for p in result["participants"]] == [admin_id]

        result = join(ann)
        assert result["ok"] is True
        assert len(result["participants"]) == 2
        assert result["admin_id"] == admin_id

        joined = admin.receive_json()
        assert joined == {
            "type": "participant-joined",
            "id": result["participant_id"],
            "name": "Ann",
            "role": "user",
            "is_mic_on": True,
        }

        assert client.get("/health").json()["rooms"] == 1


def test_second_admin_is_refused(client):
    with client.websocket_connect("/ws") as admin, client.websocket_connect("/ws") as other:
        join(admin, name="Host", role="admin")
        result = join(other, name="Impostor", role="admin", request_id="q2")

        assert result["ok"] is False
        assert result["error"] == "admin_conflict"
        assert result["request_id"] == "q2"

        other.send_json({"type": "get-participants"})
        assert other.receive_json()["code"] == "not_in_room"


def test_malformed_join_is_answered_with_result(client):
    with client.websocket_connect("/ws") as ws:
        result = join(ws, room_id="   ")
        assert result["ok"] is False
        assert result["error"] == "invalid_request"


def test_invalid_frames(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "teleport"})
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "chat-message", "text": ""})
        assert ws.receive_json()["code"] == "invalid_message"


def test_action_outside_room(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "chat-message", "text": "hello"})
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "not_in_room"


def test_chat_is_stamped_and_echoed(client):
    with client.websocket_connect("/ws") as admin, client.websocket_connect("/ws") as ann:
        join(admin, name="Host", role="admin")
        ann_id = join(ann)["participant_id"]
        admin.receive_json()  # participant-joined

        ann.send_json({"type": "chat-message", "text": "hi all"})
        for ws in (ann, admin):
            message = ws.receive_json()
            assert message["type"] == "chat-message"
            assert message["from_id"] == ann_id
            assert message["name"] == "Ann"
            assert message["text"] == "hi all"
            assert isinstance(message["timestamp"], int)


def test_signal_and_mic_flow(client):
    with client.websocket_connect("/ws") as admin, client.websocket_connect("/ws") as ann:
        admin_id = join(admin, name="Host", role="admin")["participant_id"]
        ann_id = join(ann)["participant_id"]
        admin.receive_json()  # participant-joined

        ann.send_json({"type": "signal", "channel": "user-audio", "payload": {"type": "offer", "sdp": "o"}})
        assert admin.receive_json() == {
            "type": "signal",
            "channel": "user-audio",
            "from_id": ann_id,
            "payload": {"type": "offer", "sdp": "o"},
        }

        admin.send_json(
            {"type": "signal", "channel": "admin-audio", "target_id": ann_id, "payload": {"type": "answer", "sdp": "a"}}
        )
        assert ann.receive_json()["from_id"] == admin_id

        admin.send_json({"type": "set-user-mic", "target_id": ann_id, "enabled": False})
        changed = {"type": "participant-mic-changed", "id": ann_id, "is_mic_on": False}
        assert admin.receive_json() == changed
        received = [ann.receive_json(), ann.receive_json()]
        assert changed in received
        assert {"type": "mic-command", "enabled": False} in received

        ann.send_json({"type": "set-user-mic", "target_id": admin_id, "enabled": True})
        assert ann.receive_json()["code"] == "unauthorized"


def test_screen_share_flow(client):
    with client.websocket_connect("/ws") as admin, client.websocket_connect("/ws") as ann:
        join(admin, name="Host", role="admin")
        ann_id = join(ann)["participant_id"]
        admin.receive_json()  # participant-joined

        admin.send_json({"type": "request-screen-share", "target_id": ann_id})
        assert ann.receive_json()["type"] == "screen-share-requested"

        admin.send_json({"type": "request-screen-share", "target_id": ann_id})
        assert admin.receive_json()["code"] == "busy"

        ann.send_json({"type": "reject-screen-share"})
        assert admin.receive_json() == {"type": "screen-share-rejected", "target_id": ann_id}

        admin.send_json({"type": "request-screen-share", "target_id": ann_id})
        assert ann.receive_json()["type"] == "screen-share-requested"


def test_disconnect_is_a_leave(client, server):
    with client.websocket_connect("/ws") as admin:
        join(admin, name="Host", role="admin")
        with client.websocket_connect("/ws") as ann:
            ann_id = join(ann)["participant_id"]
            admin.receive_json()  # participant-joined

        assert admin.receive_json() == {"type": "participant-left", "id": ann_id}
        admin.send_json({"type": "get-participants", "request_id": "p1"})
        snapshot = admin.receive_json()
        assert snapshot["type"] == "participants"
        assert snapshot["request_id"] == "p1"
        assert len(snapshot["participants"]) == 1


def test_rejoin_requires_leave(client):
    with client.websocket_connect("/ws") as ws:
        assert join(ws)["ok"] is True
        assert join(ws, room_id="r2")["error"] == "invalid_request"

        ws.send_json({"type": "leave-room"})
        assert join(ws, room_id="r2")["ok"] is True


def test_ping(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_rate_limit():
    server = CallhubServer(rate_limit=2)
    with TestClient(server.app) as client, client.websocket_connect("/ws") as ws:
        for _ in range(3):
            ws.send_json({"type": "ping"})
        codes = [ws.receive_json() for _ in range(3)]
        assert [m["type"] for m in codes].count("pong") == 2
        assert any(m.get("code") == "rate_limited" for m in codes)


def test_mount_on_existing_app():
    app = FastAPI()
    server = CallhubServer()
    server.mount(app, prefix="/call")

    with TestClient(app) as client:
        assert client.get("/call/health").json() == {"status": "ok", "rooms": 0}
        with client.websocket_connect("/call/ws") as ws:
            assert join(ws)["ok"] is True


def test_unhashable_type_keeps_connection(client):
    with client.websocket_connect("/ws") as ws:
        assert join(ws)["ok"] is True

        ws.send_json({"type": []})
        assert ws.receive_json()["code"] == "invalid_message"
        ws.send_json({"type": {"nested": True}})
        assert ws.receive_json()["code"] == "invalid_message"

        assert client.get("/health").json()["rooms"] == 1
        ws.send_json({"type": "get-participants", "request_id": "p1"})
        assert ws.receive_json()["type"] == "participants"


@pytest.mark.parametrize(
    "overrides",
    [
        {"room_id": "r" * 300},
        {"display_name": "n" * 600},
        {"role": None},
        {"room_id": 42},
    ],
)
def test_invalid_join_fields_are_answered_with_result(client, overrides):
    frame = {"type": "join-room", "room_id": "r1", "display_name": "Ann", "role": "user", "request_id": "q9"}
    frame.update(overrides)
    with client.websocket_connect("/ws") as ws:
        ws.send_json(frame)
        result = ws.receive_json()
        assert result["type"] == "join-room-result"
        assert result["ok"] is False
        assert result["error"] == "invalid_request"
        assert result["request_id"] == "q9"


def test_invalid_join_request_id_is_not_echoed(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "join-room", "room_id": "r1", "display_name": "Ann", "request_id": "q" * 300})
        result = ws.receive_json()
        assert result["type"] == "join-room-result"
        assert result["ok"] is False
        assert result["request_id"] is None


def test_handler_failure_keeps_connection(client, server, monkeypatch):
    async def broken(*args):
        raise RuntimeError("mic backend exploded")

    monkeypatch.setattr(server.media, "set_own_mic", broken)
    with client.websocket_connect("/ws") as admin:
        join(admin, name="Host", role="admin")

        admin.send_json({"type": "set-own-mic", "enabled": True})
        error = admin.receive_json()
        assert error["type"] == "error"
        assert error["code"] == "internal_error"

        admin.send_json({"type": "ping"})
        assert admin.receive_json()["type"] == "pong"
        assert client.get("/health").json()["rooms"] == 1
