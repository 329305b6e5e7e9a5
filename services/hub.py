#!/usr/bin/env python3
# Now Playing Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Now Playing Hub (nowplaying-hub)

Watches every MPRIS player on the session bus, picks the one worth showing,
and feeds the display over a local WebSocket.  Play/pause, next, previous,
restart and system volume come back the same way.

Port: 8780 (bridge.port in config.json)
"""

import asyncio
import logging
import os
import sys

from aiohttp import web

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from nowplaying.aggregator import MediaAggregator
from nowplaying.bridge import DisplayBridge, cors_middleware
from nowplaying.config import cfg
from nowplaying.watchdog import watchdog_loop

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("nowplaying")

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
BRIDGE_HOST = cfg("bridge", "host", default="127.0.0.1")
BRIDGE_PORT = int(cfg("bridge", "port", default=8780))

AGGREGATOR_KEY = web.AppKey("aggregator", MediaAggregator)
BRIDGE_KEY = web.AppKey("bridge", DisplayBridge)


# ---------------------------------------------------------------------------
# App lifecycle
# ---------------------------------------------------------------------------
def create_app(aggregator: MediaAggregator | None = None,
               bridge: DisplayBridge | None = None) -> web.Application:
    bridge = bridge or DisplayBridge()
    if aggregator is None:
        aggregator = MediaAggregator(publish=bridge.publish)
    bridge.aggregator = aggregator

    background: list[asyncio.Task] = []

    async def on_startup(app: web.Application):
        await bridge.start()
        await aggregator.start()
        background.append(asyncio.ensure_future(watchdog_loop(status=aggregator.status_line)))

    async def on_cleanup(app: web.Application):
        for task in background:
            task.cancel()
        background.clear()
        await aggregator.stop()
        await bridge.stop()

    app = web.Application(middlewares=[cors_middleware])
    bridge.add_routes(app)
    app[AGGREGATOR_KEY] = aggregator
    app[BRIDGE_KEY] = bridge
    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


def main():
    app = create_app()
    web.run_app(app, host=BRIDGE_HOST, port=BRIDGE_PORT, print=lambda msg: logger.info(msg))


if __name__ == "__main__":
    main()
