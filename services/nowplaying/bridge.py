"""
DisplayBridge — WebSocket + HTTP surface for the display.

Push (server -> display), one JSON frame per update:
    {"type": "media-update" | "system-volume-update" | "player-list-update",
     "data": ...}

Commands (display -> server), over the same socket or POST /media/command:
    {"command": "toggle-play-pause", "id": ":1.42"}   # id optional
    {"command": "next"} / {"command": "previous"} / {"command": "restart"}
    {"command": "set-system-volume", "volume": 40}
    {"command": "ready"}    # re-send everything

A new WebSocket client immediately gets the latest value of every channel.
Frames are sent from a single queue so every client sees updates in the
order they were published.
"""

import asyncio
import json
import logging

from aiohttp import WSMsgType, web

logger = logging.getLogger("nowplaying.bridge")


def _cors_headers():
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers.update(_cors_headers())
    return resp


class DisplayBridge:

    def __init__(self, aggregator=None):
        self.aggregator = aggregator
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._queue: asyncio.Queue | None = None
        self._sender_task: asyncio.Task | None = None

    @property
    def clients(self) -> int:
        return len(self._ws_clients)

    # ── Lifecycle ──

    async def start(self):
        self._queue = asyncio.Queue()
        self._sender_task = asyncio.ensure_future(self._sender())

    async def stop(self):
        if self._sender_task:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()

    # ── Publishing (aggregator sink) ──

    def publish(self, channel: str, data):
        if not self._ws_clients or self._queue is None:
            return
        self._queue.put_nowait(json.dumps({"type": channel, "data": data}))

    async def _sender(self):
        while True:
            message = await self._queue.get()
            await self._broadcast(message)

    async def _broadcast(self, message: str):
        disconnected = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)
        if disconnected:
            self._ws_clients -= disconnected
            logger.info("Dropped %d dead WebSocket client(s)", len(disconnected))

    # ── Command intake ──

    def dispatch(self, message) -> tuple[bool, str]:
        """Hand one decoded command message to the aggregator."""
        if not isinstance(message, dict) or not isinstance(message.get("command"), str):
            return False, "expected {\"command\": ...}"
        if self.aggregator is None:
            return False, "not ready"
        command = message["command"]
        if not self.aggregator.handle_command(command, message):
            return False, f"bad command: {command}"
        return True, command

    # ── HTTP + WebSocket handlers ──

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        logger.info("Display connected (%d total)", len(self._ws_clients))

        try:
            if self.aggregator is not None:
                for channel, data in self.aggregator.latest().items():
                    await ws.send_json({"type": channel, "data": data})

            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                try:
                    message = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON WebSocket message: %.80s", msg.data)
                    continue
                ok, detail = self.dispatch(message)
                if not ok:
                    logger.warning("Rejected WebSocket command: %s", detail)
        finally:
            self._ws_clients.discard(ws)
            logger.info("Display disconnected (%d remaining)", len(self._ws_clients))

        return ws

    async def _handle_command(self, request: web.Request) -> web.Response:
        try:
            message = await request.json()
        except (json.JSONDecodeError, Exception):
            return web.json_response({"error": "invalid json"}, status=400)
        ok, detail = self.dispatch(message)
        if not ok:
            return web.json_response({"error": detail}, status=400)
        return web.json_response({"status": "ok", "command": detail})

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = self.aggregator.snapshot() if self.aggregator else {}
        status["ws_clients"] = len(self._ws_clients)
        return web.json_response(status)

    def add_routes(self, app: web.Application):
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_post("/media/command", self._handle_command)
        app.router.add_get("/media/status", self._handle_status)
