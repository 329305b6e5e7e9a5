"""
Pluggable system volume adapters.

The factory ``create_volume_adapter`` reads the "volume" section of
config.json and returns the matching adapter.

Supported types:
  - ``amixer`` – ALSA mixer via the amixer CLI (default)
  - ``none``   – no system volume control
"""

import logging

from ..config import cfg
from .amixer import AmixerVolume
from .base import VolumeAdapter, clamp_volume
from .none import NoVolume

logger = logging.getLogger("nowplaying.volume")

__all__ = [
    "VolumeAdapter",
    "AmixerVolume",
    "NoVolume",
    "clamp_volume",
    "create_volume_adapter",
]


def create_volume_adapter() -> VolumeAdapter:
    """Create the right volume adapter based on config.json.

    Reads from config.json "volume" section:
      type         – "amixer" (default) or "none"
      device       – amixer -D device (default "pulse"; "" for the default card)
      control      – simple mixer control (default "Master")
      debounce_ms  – coalescing window for rapid writes (default 50)
    """
    vol_type = str(cfg("volume", "type", default="amixer")).lower()
    if vol_type == "none":
        logger.info("Volume adapter: none (system volume disabled)")
        return NoVolume()

    device = cfg("volume", "device", default="pulse")
    control = cfg("volume", "control", default="Master")
    debounce_ms = int(cfg("volume", "debounce_ms", default=50))
    timeout = float(cfg("bus", "timeout", default=2.0))
    if vol_type != "amixer":
        logger.warning("Unknown volume.type '%s' — falling back to amixer", vol_type)
    logger.info("Volume adapter: amixer %s/%s (debounce %dms)",
                device or "default", control, debounce_ms)
    return AmixerVolume(device or None, control, debounce_ms, timeout)
