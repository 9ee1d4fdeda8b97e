import asyncio

import pytest

from codesync.api import _pump
from codesync.coordinator import Channel, Coordinator
from main import create_app

from conftest import StubJudge


@pytest.fixture
def app_coordinator():
    return Coordinator(judge=StubJudge())


@pytest.fixture
async def client(aiohttp_client, app_coordinator):
    return await aiohttp_client(create_app(app_coordinator))


async def eventually(predicate, timeout=2.0):
    """Server-side cleanup runs after the close handshake; poll for it"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.01)


async def receive_until(ws, msg_type):
    """Read frames until one of `msg_type` arrives; return it and what came before"""
    seen = []
    while True:
        message = await ws.receive_json(timeout=2)
        seen.append(message)
        if message["type"] == msg_type:
            return message, seen


async def open_session(client, room_id, name, role):
    ws = await client.ws_connect("/ws")
    hello = await ws.receive_json(timeout=2)
    assert hello["type"] == "connected"
    await ws.send_json({"type": "join", "roomId": room_id, "displayName": name, "role": role})
    return ws, hello["connectionId"]


# ------------------------------------------------------------
# HTTP queries
# ------------------------------------------------------------

async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "ok"
    assert data["activeRooms"] == 0
    assert data["activeUsers"] == 0
    assert "timestamp" in data


async def test_room_lookup_404(client):
    resp = await client.get("/api/rooms/NOPE")
    assert resp.status == 404
    assert (await resp.json()) == {"error": "Room not found"}


async def test_create_session_allocates_code_only(client, app_coordinator):
    resp = await client.post("/api/create-session", json={"userName": "Ann Lee"})
    assert resp.status == 200
    data = await resp.json()
    assert len(data["roomId"]) == 8
    assert data["roomId"] == data["roomId"].upper()
    assert data["joinUrl"].endswith(f"/room/{data['roomId']}?name=Ann%20Lee&role=host")
    assert len(app_coordinator.rooms) == 0


async def test_create_session_requires_name(client):
    resp = await client.post("/api/create-session", json={})
    assert resp.status == 400
    resp = await client.post("/api/create-session", data="not json")
    assert resp.status == 400


async def test_join_session(client):
    resp = await client.post("/api/join-session/ABCD", json={"userName": "Gus"})
    assert resp.status == 404

    ws, _ = await open_session(client, "ABCD", "Hana", "host")
    await receive_until(ws, "roster-changed")

    resp = await client.post("/api/join-session/ABCD", json={"userName": "Gus"})
    assert resp.status == 200
    data = await resp.json()
    assert data["roomId"] == "ABCD"
    assert data["joinUrl"].endswith("/room/ABCD?name=Gus&role=guest")

    resp = await client.get("/api/rooms/ABCD")
    meta = await resp.json()
    assert meta["userCount"] == 1
    assert meta["language"] == "javascript"
    await ws.close()


async def test_rate_limit(aiohttp_client, app_coordinator):
    client = await aiohttp_client(create_app(app_coordinator, rate_limit=2))
    assert (await client.get("/api/health")).status == 200
    assert (await client.get("/api/health")).status == 200
    resp = await client.get("/api/health")
    assert resp.status == 429
    assert (await resp.json()) == {"error": "Rate limit exceeded"}


# ------------------------------------------------------------
# WebSocket session
# ------------------------------------------------------------

async def test_collaboration_over_websocket(client, app_coordinator):
    host, host_id = await open_session(client, "ABCD", "Hana", "host")
    await receive_until(host, "roster-changed")
    await host.send_json({"type": "change-language", "roomId": "ABCD", "language": "python"})
    await receive_until(host, "language-changed")

    guest, guest_id = await open_session(client, "ABCD", "Gus", "guest")
    snapshot, _ = await receive_until(guest, "room-snapshot")
    assert snapshot["language"] == "python"
    await receive_until(guest, "roster-changed")
    await receive_until(host, "roster-changed")

    # Viewer edit is refused
    await guest.send_json({"type": "edit-document", "roomId": "ABCD", "text": "x = 1"})
    notice, _ = await receive_until(guest, "error")
    assert notice["code"] == "unauthorized"
    assert app_coordinator.rooms.get("ABCD").document == ""

    await host.send_json({
        "type": "set-permission", "roomId": "ABCD", "targetUserId": guest_id, "permission": "editor",
    })
    change, _ = await receive_until(guest, "permission-changed")
    assert change == {"type": "permission-changed", "userId": guest_id, "permission": "editor"}
    await receive_until(host, "permission-changed")

    await guest.send_json({"type": "edit-document", "roomId": "ABCD", "text": "print(1)"})
    edit, _ = await receive_until(host, "document-changed")
    assert edit["text"] == "print(1)"

    await guest.send_json({"type": "post-chat", "roomId": "ABCD", "text": "done"})
    for ws in (host, guest):
        chat, _ = await receive_until(ws, "chat-message")
        assert chat["message"]["text"] == "done"

    await guest.send_json({"type": "execute", "roomId": "ABCD", "text": "print(1)", "language": "python"})
    for ws in (host, guest):
        result, _ = await receive_until(ws, "execution-result")
        assert result["output"] == "ok\n"

    await guest.close()
    left, _ = await receive_until(host, "roster-changed")
    assert left["event"] == "left"
    assert left["userName"] == "Gus"

    await host.close()
    await eventually(lambda: app_coordinator.status() == {"activeRooms": 0, "activeUsers": 0})


async def test_guest_to_missing_room(client, app_coordinator):
    ws, _ = await open_session(client, "ZZZZ", "Gus", "guest")
    message = await ws.receive_json(timeout=2)
    assert message == {"type": "room-not-found", "roomId": "ZZZZ"}
    assert len(app_coordinator.rooms) == 0
    await ws.close()


async def test_auto_join_from_query(client):
    ws = await client.ws_connect("/ws?roomId=QWER&displayName=Hana&role=host")
    user, seen = await receive_until(ws, "current-user")
    assert seen[0]["type"] == "connected"
    assert user["user"]["name"] == "Hana"
    snapshot = await ws.receive_json(timeout=2)
    assert snapshot["type"] == "room-snapshot"
    assert snapshot["roomId"] == "QWER"
    await ws.close()


async def test_ping_and_malformed_frames(client):
    ws = await client.ws_connect("/ws")
    await ws.receive_json(timeout=2)

    await ws.send_str("ping")
    assert await ws.receive_str(timeout=2) == "pong"

    await ws.send_str("{not json")
    notice = await ws.receive_json(timeout=2)
    assert notice["type"] == "error"
    assert notice["code"] == "malformed-request"

    await ws.send_json({"type": "teleport"})
    notice = await ws.receive_json(timeout=2)
    assert notice["code"] == "malformed-request"
    await ws.close()


async def test_signal_relay_between_sockets(client):
    a, a_id = await open_session(client, "ROOM", "Ann", "host")
    await receive_until(a, "roster-changed")
    b, b_id = await open_session(client, "ROOM", "Bob", "guest")
    await receive_until(b, "roster-changed")

    await a.send_json({"type": "offer", "target": b_id, "payload": {"sdp": "v=0"}})
    offer, _ = await receive_until(b, "offer")
    assert offer == {"type": "offer", "offer": {"sdp": "v=0"}, "from": a_id}

    await a.close()
    await b.close()


async def test_session_routes_reject_non_string_names(client):
    resp = await client.post("/api/create-session", json={"userName": 123})
    assert resp.status == 400
    assert (await resp.json()) == {"error": "User name is required"}

    resp = await client.post("/api/join-session/ABCD", json={"userName": ["Gus"]})
    assert resp.status == 400


async def test_non_string_type_keeps_socket_open(client):
    ws, _ = await open_session(client, "ABCD", "Hana", "host")
    await receive_until(ws, "roster-changed")

    await ws.send_json({"type": ["join"], "roomId": "ABCD"})
    notice = await ws.receive_json(timeout=2)
    assert notice["type"] == "error"
    assert notice["code"] == "malformed-request"

    # Same socket keeps working
    await ws.send_json({"type": "post-chat", "roomId": "ABCD", "text": "still here"})
    chat, _ = await receive_until(ws, "chat-message")
    assert chat["message"]["text"] == "still here"
    await ws.close()


class BrokenSocket:
    def __init__(self):
        self.attempts = 0

    async def send_json(self, message):
        self.attempts += 1
        raise ConnectionResetError("peer went away")

    async def send_str(self, message):
        self.attempts += 1
        raise ConnectionResetError("peer went away")


async def test_failed_send_closes_channel():
    channel = Channel("conn_test")
    channel.send({"type": "connected"})
    ws = BrokenSocket()

    await _pump(ws, channel)

    assert ws.attempts == 1
    assert channel.closed
    # Further fan-out is not queued for a dead socket
    channel.send({"type": "chat-message"})
    assert channel.outbox.get_nowait() is None
    assert channel.outbox.empty()
