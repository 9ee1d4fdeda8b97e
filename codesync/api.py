"""
HTTP + WebSocket handlers for the collaborative editing server
One WebSocket per participant; JSON HTTP routes for the query surface
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from urllib.parse import quote

from aiohttp import web

from .coordinator import Channel, Coordinator
from .utils import generate_session_code

logger = logging.getLogger("codesync")

COORDINATOR = web.AppKey("coordinator", Coordinator)

# ============================================================
# WEBSOCKET SESSION
# ============================================================

async def _pump(ws: web.WebSocketResponse, channel: Channel):
    """Drain a connection's outbox to its socket, in order"""
    while True:
        message = await channel.outbox.get()
        if message is None:
            return
        try:
            if isinstance(message, str):
                await ws.send_str(message)
            else:
                await ws.send_json(message)
        except Exception as e:
            logger.debug(f"Failed to send to WebSocket {channel.id}: {e}")
            channel.close()
            return


async def ws_session(request: web.Request) -> web.WebSocketResponse:
    """WebSocket endpoint: one participant connection"""
    coordinator = request.app[COORDINATOR]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    channel = coordinator.connect()
    writer = asyncio.create_task(_pump(ws, channel))

    try:
        # Auto-join when the upgrade request already names the room
        query = request.query
        if query.get("roomId") and query.get("displayName") and query.get("role"):
            await coordinator.receive(channel.id, {
                "type": "join",
                "roomId": query["roomId"],
                "displayName": query["displayName"],
                "role": query["role"],
            })

        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                if msg.data == "ping":
                    channel.send("pong")
                    continue
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    frame = None
                await coordinator.receive(channel.id, frame)
            elif msg.type == web.WSMsgType.ERROR:
                logger.debug(f"WebSocket error on {channel.id}: {ws.exception()}")
    finally:
        await coordinator.disconnect(channel.id)
        await writer

    return ws

# ============================================================
# QUERIES
# ============================================================

async def _read_json(request: web.Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def api_health(request: web.Request) -> web.Response:
    """Room and connection counts"""
    coordinator = request.app[COORDINATOR]
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **coordinator.status(),
    })


async def api_room(request: web.Request) -> web.Response:
    """Room metadata by id"""
    room_id = request.match_info["room_id"]
    meta = request.app[COORDINATOR].room_metadata(room_id)
    if meta is None:
        return web.json_response({"error": "Room not found"}, status=404)
    return web.json_response(meta)


def _join_url(request: web.Request, room_id: str, user_name: str, role: str) -> str:
    return f"{request.scheme}://{request.host}/room/{room_id}?name={quote(user_name)}&role={role}"


async def api_create_session(request: web.Request) -> web.Response:
    """Allocate a fresh session code. The room itself is created by the host's join."""
    data = await _read_json(request)
    user_name = data.get("userName")
    if not isinstance(user_name, str) or not user_name:
        return web.json_response({"error": "User name is required"}, status=400)

    room_id = generate_session_code()
    logger.info("🎟️ Session code %s allocated for %s", room_id, user_name)
    return web.json_response({
        "roomId": room_id,
        "message": "Session created successfully",
        "joinUrl": _join_url(request, room_id, user_name, "host"),
    })


async def api_join_session(request: web.Request) -> web.Response:
    """Check that a session exists before a guest connects"""
    code = request.match_info["code"]
    data = await _read_json(request)
    user_name = data.get("userName")
    if not isinstance(user_name, str) or not user_name:
        return web.json_response({"error": "User name is required"}, status=400)

    if code not in request.app[COORDINATOR].rooms:
        return web.json_response({"error": "Room not found"}, status=404)

    return web.json_response({
        "roomId": code,
        "message": "Ready to join session",
        "joinUrl": _join_url(request, code, user_name, "guest"),
    })
