"""
Bus Command Executor — out-of-process busctl calls with bounded timeouts.

Every call spawns the tool, waits at most ``timeout`` seconds, and returns
either the decoded reply or None.  Nothing here raises across the boundary:
a missing tool, a timeout, a non-zero exit or unparseable output all come
back as None and are logged at debug level (the next poll retries).

Usage:
    bus = BusCommandExecutor(timeout=2.0)
    names = await bus.list_names()                 # ["org.mpris.MediaPlayer2.spotify", ...]
    owner = await bus.get_name_owner(names[0])      # ":1.42"
    props = await bus.get_player_properties(owner)  # {"PlaybackStatus": {...}, ...}
    ok    = await bus.invoke(owner, MPRIS_PATH, PLAYER_IFACE, "PlayPause")
"""

import asyncio
import json
import logging

from .mpris import (
    DBUS_IFACE,
    DBUS_NAME,
    DBUS_PATH,
    MPRIS_PATH,
    PLAYER_IFACE,
    PROPERTIES_IFACE,
)

logger = logging.getLogger("nowplaying.bus")

DEFAULT_TIMEOUT = 2.0

# Tools we already warned about, so a missing binary is logged once
_missing_tools: set[str] = set()


async def run_command(*cmd: str, timeout: float = DEFAULT_TIMEOUT) -> str | None:
    """Run *cmd* and return its stripped stdout, or None on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        if cmd[0] not in _missing_tools:
            _missing_tools.add(cmd[0])
            logger.warning("%s not found — calls will fail until it is installed", cmd[0])
        return None
    except OSError as e:
        logger.debug("Could not spawn %s: %s", cmd[0], e)
        return None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        logger.debug("Timed out after %.1fs: %s", timeout, " ".join(cmd[:5]))
        return None

    if proc.returncode != 0:
        logger.debug("%s failed (rc=%d): %s", " ".join(cmd[:5]), proc.returncode,
                     stderr.decode(errors="replace").strip())
        return None
    return stdout.decode(errors="replace").strip()


def _decode_reply(output: str | None):
    """Return the ``data`` member of a busctl --json=short reply, or None."""
    if not output:
        return None
    try:
        reply = json.loads(output)
    except json.JSONDecodeError as e:
        logger.debug("Unparseable busctl reply (%s): %.80s", e, output)
        return None
    if not isinstance(reply, dict):
        return None
    return reply.get("data")


class BusCommandExecutor:
    """Thin async wrapper over ``busctl --user``."""

    def __init__(self, busctl: str = "busctl", timeout: float = DEFAULT_TIMEOUT):
        self.busctl = busctl
        self.timeout = timeout

    def _base(self, verb: str) -> list[str]:
        return [self.busctl, "--user", verb]

    # ── Generic request shapes ──

    async def call(self, service: str, path: str, interface: str, member: str,
                   signature: str = "", *args):
        """Invoke a method and return its decoded reply values (a list), or None."""
        cmd = self._base("call") + [service, path, interface, member]
        if signature:
            cmd += [signature, *(str(a) for a in args)]
        cmd.append("--json=short")
        data = _decode_reply(await run_command(*cmd, timeout=self.timeout))
        return data if isinstance(data, list) else None

    async def get_property(self, service: str, path: str, interface: str, prop: str):
        """Read one property.  Returns the unwrapped value or None."""
        cmd = self._base("get-property") + [service, path, interface, prop, "--json=short"]
        return _decode_reply(await run_command(*cmd, timeout=self.timeout))

    async def invoke(self, service: str, path: str, interface: str, member: str,
                     signature: str = "", *args) -> bool:
        """Fire a control method whose reply we don't need.  True on success."""
        cmd = self._base("call") + [service, path, interface, member]
        if signature:
            cmd += [signature, *(str(a) for a in args)]
        return await run_command(*cmd, timeout=self.timeout) is not None

    # ── Introspection helpers ──

    async def list_names(self) -> list[str] | None:
        """All names on the bus.  None means the listing itself failed."""
        data = await self.call(DBUS_NAME, DBUS_PATH, DBUS_IFACE, "ListNames")
        if not data or not isinstance(data[0], list):
            return None
        return [str(n) for n in data[0]]

    async def get_name_owner(self, name: str) -> str | None:
        data = await self.call(DBUS_NAME, DBUS_PATH, DBUS_IFACE, "GetNameOwner", "s", name)
        if not data or not isinstance(data[0], str):
            return None
        return data[0]

    async def get_connection_pid(self, connection_id: str) -> int | None:
        data = await self.call(DBUS_NAME, DBUS_PATH, DBUS_IFACE,
                               "GetConnectionUnixProcessID", "s", connection_id)
        if not data:
            return None
        try:
            return int(data[0])
        except (TypeError, ValueError):
            return None

    async def get_player_properties(self, service: str) -> dict | None:
        """GetAll on the Player interface of *service*."""
        data = await self.call(service, MPRIS_PATH, PROPERTIES_IFACE, "GetAll",
                               "s", PLAYER_IFACE)
        if not data or not isinstance(data[0], dict):
            return None
        return data[0]
