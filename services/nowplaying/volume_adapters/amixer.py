"""
ALSA mixer volume adapter — system output volume via ``amixer``.

Defaults target the PulseAudio/PipeWire ALSA plugin (``-D pulse``) and the
``Master`` control.  Every write also sends ``unmute`` so dragging the
slider up from zero is always audible.

Rapid writes (a slider being dragged) are coalesced: only the last value
within ``debounce_ms`` is sent.  ``debounce_ms=0`` writes immediately.
"""

import asyncio
import logging
import re

from ..bus import run_command
from .base import VolumeAdapter, clamp_volume

logger = logging.getLogger("nowplaying.volume.amixer")

DEFAULT_DEVICE = "pulse"
DEFAULT_CONTROL = "Master"

_PERCENT = re.compile(r"\[(\d+)%\]")


class AmixerVolume(VolumeAdapter):
    """Volume control via ``amixer -D <device> sset <control>``."""

    def __init__(self, device: str | None = DEFAULT_DEVICE, control: str = DEFAULT_CONTROL,
                 debounce_ms: int = 50, timeout: float = 2.0):
        self._device = device
        self._control = control
        self._timeout = timeout
        # Debounce state
        self._pending_volume: int | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._debounce_ms = debounce_ms

    def _command(self, *args) -> list[str]:
        cmd = ["amixer"]
        if self._device:
            cmd += ["-D", self._device]
        return cmd + list(args)

    async def _amixer(self, *args) -> str | None:
        return await run_command(*self._command(*args), timeout=self._timeout)

    # -- public API --

    async def set_volume(self, volume: int) -> None:
        self._pending_volume = clamp_volume(volume)
        if self._debounce_ms <= 0:
            await self._flush()
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(
            self._debounce_ms / 1000, lambda: asyncio.ensure_future(self._flush())
        )

    async def get_volume(self) -> int | None:
        output = await self._amixer("sget", self._control)
        if not output:
            return None
        match = _PERCENT.search(output)
        if match is None:
            logger.debug("No percentage in amixer output: %.80s", output)
            return None
        return int(match.group(1))

    async def close(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        await self._flush()

    # -- internal --

    async def _flush(self) -> bool:
        vol = self._pending_volume
        if vol is None:
            return False
        self._pending_volume = None
        self._debounce_handle = None
        ok = await self._amixer("sset", self._control, f"{vol}%", "unmute") is not None
        if ok:
            logger.info("-> system volume: %d%%", vol)
        else:
            logger.warning("Setting system volume to %d%% failed", vol)
        return ok
