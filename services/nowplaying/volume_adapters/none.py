"""
No-op volume adapter for machines without a controllable mixer.
"""

from .base import VolumeAdapter


class NoVolume(VolumeAdapter):
    """Ignores writes and never reports a volume."""

    async def set_volume(self, volume: int) -> None:
        return None

    async def get_volume(self) -> int | None:
        return None
