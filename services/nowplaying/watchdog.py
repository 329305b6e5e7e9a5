"""Systemd watchdog heartbeat and status line for the hub.

Sends WATCHDOG=1 to the systemd notify socket at regular intervals, plus a
STATUS= line describing what is currently playing so ``systemctl status``
shows it.  Silently no-ops when NOTIFY_SOCKET is unset (dev mode).

Usage:
    from nowplaying.watchdog import watchdog_loop
    asyncio.create_task(watchdog_loop(status=aggregator.status_line))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket.

    Returns True if a datagram was sent.
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
        return True
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()


async def watchdog_loop(interval: int = 20, status=None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    *status* is an optional zero-argument callable whose result is sent as
    STATUS= alongside each heartbeat.  READY=1 goes out on the first beat
    (requires Type=notify in the unit file).
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status is not None:
            msg += f"\nSTATUS={status()}"
        sd_notify(msg)
        await asyncio.sleep(interval)
