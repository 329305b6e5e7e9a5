"""
Abstract base class for system volume adapters.

Volumes are integer percentages 0-100.  ``get_volume`` returns None when
the mixer couldn't be read, so a failed read never shows up as silence.
"""

from abc import ABC, abstractmethod


class VolumeAdapter(ABC):
    """Interface every system mixer must implement."""

    @abstractmethod
    async def set_volume(self, volume: int) -> None: ...

    @abstractmethod
    async def get_volume(self) -> int | None: ...

    async def close(self) -> None:
        pass  # nothing to release by default


def clamp_volume(volume) -> int:
    """Coerce *volume* to an int in 0..100."""
    return max(0, min(100, int(round(float(volume)))))
