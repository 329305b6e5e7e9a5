"""
Command Dispatcher — user actions out to players and the system mixer.

Player commands go to an explicit target (connection id or well-known name)
or, without one, to the current active selection.  Nothing here touches the
state table: the new state comes back through signals and the poll, which
is nudged a moment after each command so the display catches up quickly.

An explicit toggle on a player makes it the default target for later
commands without a target, until the selection itself switches.
"""

import logging

from .mpris import MPRIS_PATH, PLAYER_IFACE
from .volume_adapters import clamp_volume

logger = logging.getLogger("nowplaying.commands")

# MPRIS clamps seeks before the start of the track to position 0
SEEK_TO_START_OFFSET = -(2 ** 53)


class CommandDispatcher:

    def __init__(self, bus, table, selector, volume, repoll=None, repoll_delay: float = 0.1):
        self._bus = bus
        self._table = table
        self._selector = selector
        self._volume = volume
        self._repoll = repoll
        self._repoll_delay = repoll_delay
        # (preferred connection id, active id when it was chosen)
        self._preferred: tuple[str, str | None] | None = None

    # ── Target resolution ──

    def resolve_target(self, target: str | None = None):
        """The record a command should go to, or None (command is a no-op)."""
        if target:
            record = self._table.find(target)
            if record is None:
                logger.info("Command target %s is gone — ignoring", target)
            return record

        if self._preferred is not None:
            preferred_id, active_then = self._preferred
            record = self._table.get(preferred_id)
            if record is not None and self._selector.active_id == active_then:
                return record
            self._preferred = None

        if self._selector.active_id is None:
            return None
        return self._table.get(self._selector.active_id)

    # ── Player commands ──

    async def toggle_play_pause(self, target: str | None = None) -> bool:
        record = self.resolve_target(target)
        if record is not None and target:
            self._preferred = (record.connection_id, self._selector.active_id)
        return await self._player_method(record, "PlayPause")

    async def next(self, target: str | None = None) -> bool:
        return await self._player_method(self.resolve_target(target), "Next")

    async def previous(self, target: str | None = None) -> bool:
        return await self._player_method(self.resolve_target(target), "Previous")

    async def seek_to_start(self, target: str | None = None) -> bool:
        record = self.resolve_target(target)
        if record is None:
            return False
        if record.track_id:
            return await self._player_method(record, "SetPosition", "ox", record.track_id, 0)
        return await self._player_method(record, "Seek", "x", SEEK_TO_START_OFFSET)

    async def _player_method(self, record, member: str, signature: str = "", *args) -> bool:
        if record is None:
            logger.debug("No player to send %s to", member)
            return False
        logger.info("[Control] %s -> %s (%s)", member, record.display_name, record.target)
        ok = await self._bus.invoke(record.target, MPRIS_PATH, PLAYER_IFACE, member,
                                    signature, *args)
        if not ok:
            logger.warning("%s on %s failed", member, record.target)
        if self._repoll is not None:
            self._repoll(self._repoll_delay)
        return ok

    # ── System volume ──

    async def set_system_volume(self, volume) -> int:
        vol = clamp_volume(volume)
        logger.info("[Control] System volume -> %d%%", vol)
        await self._volume.set_volume(vol)
        return vol

    async def get_system_volume(self) -> int | None:
        return await self._volume.get_volume()
