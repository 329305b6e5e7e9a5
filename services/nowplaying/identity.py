"""
Identity Resolver — turns an MPRIS well-known name into a display name.

Signals, in order of trust:
  1. the player's own ``Identity`` property ("Spotify", "Mozilla Firefox")
  2. its ``DesktopEntry`` hint ("google-chrome-beta")
  3. the owning process's command line, via the bus owner's PID

When Identity is missing the well-known name itself is beautified
(``org.mpris.MediaPlayer2.chromium.instance4711`` -> ``Chromium``).  A
release-channel marker (beta / dev / canary) found in any signal is appended
if the name doesn't already carry it.

Results are cached per well-known name for the life of the process.  A
player relaunched under the same name keeps its first resolved name.
"""

import asyncio
import logging
import os
import re

from .mpris import MPRIS_PATH, MPRIS_PREFIX, ROOT_IFACE

logger = logging.getLogger("nowplaying.identity")

GENERIC_NAME = "Media Player"

# Lower-case token -> fixed spelling
PINNED_TOKENS = {
    "vlc": "VLC",
    "mpv": "mpv",
    "mpd": "MPD",
    "youtube": "YouTube",
    "kdeconnect": "KDE Connect",
    "smplayer": "SMPlayer",
    "spotify": "Spotify",
    "gnome": "GNOME",
    "kde": "KDE",
}

# Checked in this order; first hit wins
CHANNEL_MARKERS = (
    ("canary", "Canary"),
    ("beta", "Beta"),
    ("dev", "Dev"),
)

# Segments that identify an instance/session rather than the app
_INSTANCE_SEGMENT = re.compile(r"^(?:instance|mpris)?[_-]?\d[\d_]*$|^instance$", re.IGNORECASE)
_PUNCTUATION = re.compile(r"[-_.+:/]+")


def _marker_pattern(marker: str) -> re.Pattern:
    # Separator-delimited so "/dev/shm" or "device" never count as a channel
    return re.compile(rf"(?:^|[\s._-]){marker}(?=$|[\s._/-])", re.IGNORECASE)


_MARKER_PATTERNS = [(_marker_pattern(m), label) for m, label in CHANNEL_MARKERS]


def beautify_name(well_known_name: str) -> str:
    """Derive a readable name from a bus name.  Empty string if nothing is left."""
    name = well_known_name or ""
    if name.startswith(MPRIS_PREFIX):
        name = name[len(MPRIS_PREFIX):]

    segments = [s for s in name.split(".") if s and not _INSTANCE_SEGMENT.match(s)]
    words = []
    for segment in segments:
        for word in _PUNCTUATION.sub(" ", segment).split():
            pinned = PINNED_TOKENS.get(word.lower())
            words.append(pinned if pinned else word[:1].upper() + word[1:].lower())
    return " ".join(words)


def channel_suffix(*signals: str | None) -> str | None:
    """Return the channel label found in any of *signals*, or None."""
    for pattern, label in _MARKER_PATTERNS:
        for text in signals:
            if text and pattern.search(text):
                return label
    return None


def decorate(name: str, suffix: str | None) -> str:
    """Append *suffix* unless the name already mentions it."""
    if not suffix:
        return name
    if suffix.lower() in name.lower().split():
        return name
    return f"{name} {suffix}"


class IdentityResolver:
    """Resolves and caches display names for well-known bus names."""

    def __init__(self, bus, proc_root: str = "/proc"):
        self._bus = bus
        self._proc_root = proc_root
        self._cache: dict[str, str] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def cached(self, well_known_name: str) -> str | None:
        return self._cache.get(well_known_name)

    def __len__(self):
        return len(self._cache)

    async def resolve(self, well_known_name: str) -> str:
        """Return the display name for *well_known_name*, resolving once."""
        hit = self._cache.get(well_known_name)
        if hit is not None:
            return hit

        # Concurrent callers for the same name share one lookup
        task = self._pending.get(well_known_name)
        if task is None:
            task = asyncio.ensure_future(self._lookup(well_known_name))
            self._pending[well_known_name] = task
        try:
            name = await asyncio.shield(task)
        finally:
            if task.done():
                self._pending.pop(well_known_name, None)

        self._cache[well_known_name] = name
        return name

    async def _lookup(self, well_known_name: str) -> str:
        identity = await self._string_property(well_known_name, "Identity")
        desktop_entry = await self._string_property(well_known_name, "DesktopEntry")
        cmdline = await self._owner_cmdline(well_known_name)

        name = identity or beautify_name(well_known_name) or GENERIC_NAME
        name = decorate(name, channel_suffix(well_known_name, desktop_entry, cmdline))
        logger.info("Resolved %s -> %s (identity=%r, desktop=%r)",
                    well_known_name, name, identity, desktop_entry)
        return name

    async def _string_property(self, service: str, prop: str) -> str | None:
        value = await self._bus.get_property(service, MPRIS_PATH, ROOT_IFACE, prop)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    async def _owner_cmdline(self, well_known_name: str) -> str | None:
        owner = await self._bus.get_name_owner(well_known_name)
        if not owner:
            return None
        pid = await self._bus.get_connection_pid(owner)
        if pid is None:
            return None
        return self.read_cmdline(pid)

    def read_cmdline(self, pid: int) -> str | None:
        """Space-joined argv of *pid*, or None if the process is gone."""
        path = os.path.join(self._proc_root, str(pid), "cmdline")
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError:
            return None
        args = [a.decode(errors="replace") for a in raw.split(b"\0") if a]
        return " ".join(args) or None
