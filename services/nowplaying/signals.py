"""
Signal Stream Parser — dbus-monitor text -> owner / property events.

dbus-monitor prints each signal as a free-text block that starts with a
``signal time=... sender=... member=...`` header line.  Blocks arrive in
arbitrary chunks, so the parser keeps a buffer, splits it on the header
marker, and emits every block that is followed by another header.  The
trailing block is emitted early only when the completeness predicate for its
kind says it is whole; otherwise it waits for the next chunk.

Example property block (abridged):

    signal time=1700000000.1 sender=:1.42 -> destination=(null destination) serial=9 path=/org/mpris/MediaPlayer2; interface=org.freedesktop.DBus.Properties; member=PropertiesChanged
       string "org.mpris.MediaPlayer2.Player"
       array [
          dict entry(
             string "PlaybackStatus"
             variant             string "Playing"
          )
       ]
       array [
       ]

Predicates are looked up per member name and can be replaced by passing a
``predicates`` dict to the parser.
"""

import asyncio
import codecs
import logging
import re

from .mpris import MPRIS_PATH, PROPERTIES_IFACE, DBUS_IFACE, is_player_name, normalize_status

logger = logging.getLogger("nowplaying.signals")

OWNER_CHANGED = "NameOwnerChanged"
PROPERTIES_CHANGED = "PropertiesChanged"

MATCH_RULES = (
    f"type='signal',interface='{DBUS_IFACE}',member='{OWNER_CHANGED}',"
    f"arg0namespace='org.mpris.MediaPlayer2'",
    f"type='signal',interface='{PROPERTIES_IFACE}',member='{PROPERTIES_CHANGED}',"
    f"path='{MPRIS_PATH}'",
)

_RECORD_START = re.compile(r"^(?=signal )", re.MULTILINE)
_MEMBER = re.compile(r"\bmember=(\w+)")
_SENDER = re.compile(r"\bsender=(\S+)")
_QUOTED = re.compile(r'"([^"\n]*)"')


# ---------------------------------------------------------------------------
# Event records
# ---------------------------------------------------------------------------
class OwnerChange:
    """A well-known name moved between connections ('' = no owner)."""

    def __init__(self, name: str, old_owner: str, new_owner: str):
        self.name = name
        self.old_owner = old_owner
        self.new_owner = new_owner

    def __eq__(self, other):
        return (isinstance(other, OwnerChange)
                and (self.name, self.old_owner, self.new_owner)
                == (other.name, other.old_owner, other.new_owner))

    def __repr__(self):
        return f"OwnerChange({self.name!r}, {self.old_owner!r} -> {self.new_owner!r})"


class PropertiesChange:
    """Changed player properties from one sender connection."""

    def __init__(self, sender: str, fields: dict):
        self.sender = sender
        self.fields = fields

    def __eq__(self, other):
        return (isinstance(other, PropertiesChange)
                and self.sender == other.sender and self.fields == other.fields)

    def __repr__(self):
        return f"PropertiesChange({self.sender!r}, {self.fields!r})"


# ---------------------------------------------------------------------------
# Completeness predicates
# ---------------------------------------------------------------------------
def record_member(text: str) -> str | None:
    match = _MEMBER.search(text.split("\n", 1)[0])
    return match.group(1) if match else None


def _body(text: str) -> str:
    parts = text.split("\n", 1)
    return parts[1] if len(parts) > 1 else ""


def owner_change_complete(text: str) -> bool:
    """Three whole quoted arguments, and we stopped on a quote or newline."""
    if len(_QUOTED.findall(_body(text))) < 3:
        return False
    return text.endswith('"') or text.endswith("\n")


def properties_change_complete(text: str) -> bool:
    """Both top-level arrays closed and nothing left open."""
    stripped = text.rstrip()
    if not stripped.endswith(("]", ")")):
        return False

    depth = 0
    top_level_closes = 0
    for line in _body(stripped).split("\n"):
        quotes = line.count('"')
        if quotes == 1:
            return False  # string still open
        if quotes:
            line = line[:line.index('"')] + line[line.rindex('"') + 1:]
        for ch in line:
            if ch in "[(":
                depth += 1
            elif ch in "])":
                depth -= 1
                if depth == 0:
                    top_level_closes += 1
                elif depth < 0:
                    return False
    return depth == 0 and top_level_closes >= 2


DEFAULT_PREDICATES = {
    OWNER_CHANGED: owner_change_complete,
    PROPERTIES_CHANGED: properties_change_complete,
}


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------
def _string_value(key: str) -> re.Pattern:
    return re.compile(
        rf'string "{re.escape(key)}"\s+variant\s+(?:string|object path) "(.*)"[ \t]*$',
        re.MULTILINE)


def _first_of_array(key: str) -> re.Pattern:
    return re.compile(
        rf'string "{re.escape(key)}"\s+variant\s+array \[\s*string "(.*)"[ \t]*$',
        re.MULTILINE)


_FIELD_PATTERNS = {
    "status": [_string_value("PlaybackStatus")],
    "title": [_string_value("xesam:title")],
    "artist": [_string_value("xesam:artist"), _first_of_array("xesam:artist")],
    "album": [_string_value("xesam:album")],
    "art_url": [_string_value("mpris:artUrl")],
    "source_url": [_string_value("xesam:url")],
    "track_id": [_string_value("mpris:trackid")],
}
_VOLUME = re.compile(r'string "Volume"\s+variant\s+double ([-+\d.eE]+)')


def extract_fields(text: str) -> dict:
    """Pull every recognisable field out of a PropertiesChanged block.

    Fields that aren't present (or don't parse) are simply left out.
    """
    fields = {}
    for field, patterns in _FIELD_PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                fields[field] = match.group(1)
                break

    if "status" in fields:
        status = normalize_status(fields["status"])
        if status is None:
            del fields["status"]
        else:
            fields["status"] = status

    match = _VOLUME.search(text)
    if match:
        try:
            fields["volume"] = float(match.group(1))
        except ValueError:
            pass
    return fields


def parse_record(text: str):
    """Turn one signal block into an event record, or None if it's not ours."""
    member = record_member(text)
    if member == OWNER_CHANGED:
        args = _QUOTED.findall(_body(text))
        if len(args) < 3 or not is_player_name(args[0]):
            return None
        return OwnerChange(args[0], args[1], args[2])

    if member == PROPERTIES_CHANGED:
        match = _SENDER.search(text.split("\n", 1)[0])
        if not match:
            return None
        fields = extract_fields(text)
        if not fields:
            logger.debug("PropertiesChanged from %s carried nothing we track", match.group(1))
            return None
        return PropertiesChange(match.group(1), fields)

    return None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------
class SignalStreamParser:
    """Reassembles signal blocks from an arbitrarily chunked byte stream."""

    def __init__(self, predicates: dict | None = None):
        self.predicates = dict(DEFAULT_PREDICATES)
        if predicates:
            self.predicates.update(predicates)
        self.reset()

    def reset(self):
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list:
        """Add a chunk, return the events it completed (possibly none)."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        return [event for event in map(parse_record, self._take_records()) if event is not None]

    def _take_records(self) -> list[str]:
        parts = _RECORD_START.split(self._buffer)
        head = parts[0]
        records = [p for p in parts[1:] if p]

        if not records:
            # No header yet; only the current line can still become one
            self._buffer = head[head.rfind("\n") + 1:]
            return []
        if head.strip():
            logger.debug("Discarding %d chars before first signal header", len(head))

        *complete, last = records
        predicate = self.predicates.get(record_member(last))
        if predicate is not None and "\n" in last and predicate(last):
            complete.append(last)
            self._buffer = ""
        else:
            self._buffer = last
        return complete


# ---------------------------------------------------------------------------
# dbus-monitor subscription
# ---------------------------------------------------------------------------
class SignalMonitor:
    """Long-lived dbus-monitor child feeding a parser.

    Restarts the child with exponential backoff when it exits.  A missing
    binary stops the monitor for good; polling keeps the hub alive.
    """

    def __init__(self, handler, monitor: str = "dbus-monitor",
                 parser: SignalStreamParser | None = None,
                 max_backoff: float = 30):
        self._handler = handler
        self.monitor = monitor
        self.parser = parser or SignalStreamParser()
        self.max_backoff = max_backoff
        self.running = False
        self._proc: asyncio.subprocess.Process | None = None

    async def run(self):
        self.running = True
        backoff = 1
        while self.running:
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    self.monitor, "--session", *MATCH_RULES,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except FileNotFoundError:
                logger.warning("%s not found — running on polling only", self.monitor)
                self.running = False
                return
            except OSError as e:
                logger.warning("Could not start %s: %s", self.monitor, e)
            else:
                logger.info("Signal monitor started (pid %d)", self._proc.pid)
                self.parser.reset()
                try:
                    while True:
                        chunk = await self._proc.stdout.read(4096)
                        if not chunk:
                            break
                        backoff = 1
                        self.dispatch(self.parser.feed(chunk))
                finally:
                    await self._terminate()

            if not self.running:
                break
            logger.warning("Signal monitor exited, restarting in %ds", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    def dispatch(self, events: list):
        for event in events:
            try:
                self._handler(event)
            except Exception as e:
                logger.error("Signal handler error for %r: %s", event, e)

    async def stop(self):
        self.running = False
        await self._terminate()

    async def _terminate(self):
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), 2)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
