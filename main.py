#!/usr/bin/env python3
"""
Code Sync - collaborative editing server entry point
WebSocket session coordinator + query API + rate limiting
"""
import logging
import os
import time
from collections import defaultdict
from typing import Optional

from aiohttp import web

from codesync.api import (
    COORDINATOR, api_create_session, api_health, api_join_session, api_room, ws_session
)
from codesync.coordinator import Coordinator
from codesync.judge import is_judge_configured

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("codesync")

RATE_LIMIT = int(os.environ.get("CODESYNC_RATE_LIMIT", 100))


def rate_limit_middleware(limit: int = RATE_LIMIT):
    """Simple rate limiting: `limit` requests per minute per IP on /api routes"""
    store = defaultdict(list)

    @web.middleware
    async def middleware(request, handler):
        # The WebSocket upgrade is a single long-lived request
        if not request.path.startswith('/api'):
            return await handler(request)

        ip = request.remote
        now = time.time()

        # Clean old entries
        store[ip] = [t for t in store[ip] if now - t < 60]

        if len(store[ip]) >= limit:
            logger.warning(f"Rate limit exceeded for {ip}")
            return web.json_response(
                {"error": "Rate limit exceeded"},
                status=429
            )

        store[ip].append(now)
        return await handler(request)

    return middleware


async def close_coordinator(app: web.Application):
    await app[COORDINATOR].close()


def create_app(coordinator: Optional[Coordinator] = None, rate_limit: int = RATE_LIMIT) -> web.Application:
    """Create and configure the aiohttp application"""
    app = web.Application(middlewares=[rate_limit_middleware(rate_limit)])
    app[COORDINATOR] = coordinator if coordinator is not None else Coordinator()

    # Realtime session
    app.router.add_get("/ws", ws_session)

    # API routes
    app.router.add_get("/api/health", api_health)
    app.router.add_get("/api/rooms/{room_id}", api_room)
    app.router.add_post("/api/create-session", api_create_session)
    app.router.add_post("/api/join-session/{code}", api_join_session)

    app.on_cleanup.append(close_coordinator)
    logger.info("🚀 Code Sync server ready • WebSocket collaboration enabled")
    return app


def main():
    app = create_app()
    port = int(os.environ.get("PORT", 3001))
    host = os.environ.get("SERVER_HOST", "0.0.0.0")

    logger.info(f"📡 Starting server on {host}:{port}")
    if not is_judge_configured():
        logger.warning("JDOODLE_* env variables not configured; code execution will report an error")

    web.run_app(app, host=host, port=port)


if __name__ == "__main__":
    main()
