"""
State Reconciler — the per-player state table.

One PlayerRecord per live bus connection id (``:1.42``), never per
well-known name: a name can move between connections, a connection id
can't.  Both the signal stream and the poll write here through
``apply_update``, which only ever merges the fields it was given.

Rules enforced on every write:
  * status is always one of Playing / Paused / Stopped
  * display names only move from generic to specific, or get decorated
    ("Chrome" -> "Chrome Beta"); never back
  * a player with no title but a source url gets the url's basename
    (local files in VLC and friends)
"""

import logging
import time
from urllib.parse import unquote, urlsplit

from .identity import GENERIC_NAME
from .mpris import CLEARED, STOPPED, normalize_status

logger = logging.getLogger("nowplaying.state")

PLACEHOLDER_TITLE = "Unknown Title"
PLACEHOLDER_ARTIST = "Unknown Artist"
PLACEHOLDER_ALBUMS = ("", "unknown album")
LOCAL_MEDIA_ARTIST = "Local Media"
UNKNOWN_FILE = "Unknown File"

GENERIC_NAMES = {GENERIC_NAME.lower(), "player", "unknown", "unknown player", ""}

NO_PLAYER = {
    "id": None,
    "player": "No Player",
    "title": "No Media Playing",
    "artist": "",
    "album": "",
    "artUrl": "",
    "sourceUrl": "",
    "status": STOPPED,
}


def is_generic_name(name: str | None) -> bool:
    return name is None or name.strip().lower() in GENERIC_NAMES


def merge_display_name(current: str, candidate: str | None) -> str:
    """Apply the one-way naming rule and return the name to keep."""
    if is_generic_name(candidate):
        return current
    candidate = candidate.strip()
    if is_generic_name(current):
        return candidate
    current_words = current.lower().split()
    candidate_words = candidate.lower().split()
    # Upgrade only to a strictly more specific name that keeps every word
    if len(candidate_words) > len(current_words) and all(w in candidate_words for w in current_words):
        return candidate
    return current


def title_from_url(url: str) -> str:
    """Decoded basename of a (usually file://) url."""
    basename = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    try:
        return unquote(basename, errors="strict") or UNKNOWN_FILE
    except UnicodeDecodeError:
        return UNKNOWN_FILE


class PlayerRecord:
    """Everything we know about one player connection."""

    FIELDS = ("status", "title", "artist", "album", "art_url", "source_url",
              "track_id", "volume")

    def __init__(self, connection_id: str, well_known_name: str | None = None,
                 now: float = 0.0):
        self.connection_id = connection_id
        self.well_known_name = well_known_name
        self.display_name = GENERIC_NAME
        self.status = STOPPED
        self.title: str | None = None
        self.artist: str | None = None
        self.album: str | None = None
        self.art_url: str | None = None
        self.source_url: str | None = None
        self.track_id: str | None = None
        self.volume: float | None = None
        self.last_updated = now
        self.last_manual_refresh: float | None = None
        # Source url the current title was derived from, if it was
        self.title_from_url: str | None = None

    @property
    def has_title(self) -> bool:
        return bool(self.title) and self.title != PLACEHOLDER_TITLE

    @property
    def has_art(self) -> bool:
        return bool(self.art_url)

    @property
    def has_album(self) -> bool:
        return (self.album or "").strip().lower() not in PLACEHOLDER_ALBUMS

    @property
    def target(self) -> str:
        """Bus destination for control calls."""
        return self.well_known_name or self.connection_id

    def snapshot(self) -> tuple:
        return (self.display_name, self.well_known_name,
                *(getattr(self, key) for key in self.FIELDS))

    def media_payload(self) -> dict:
        return {
            "id": self.connection_id,
            "player": self.display_name,
            "title": self.title or PLACEHOLDER_TITLE,
            "artist": self.artist or PLACEHOLDER_ARTIST,
            "album": self.album or "",
            "artUrl": self.art_url or "",
            "sourceUrl": self.source_url or "",
            "status": self.status,
        }

    def __repr__(self):
        return (f"PlayerRecord({self.connection_id} {self.display_name!r} "
                f"{self.status} {self.title!r})")


class PlayerTable:
    """Owns the records and the well-known name -> connection id map.

    *on_change* is called with no arguments after every mutation; the
    aggregator hooks selection and publishing onto it.
    """

    def __init__(self, on_change=None, clock=time.monotonic):
        self._players: dict[str, PlayerRecord] = {}
        self._names: dict[str, str] = {}
        self._on_change = on_change
        self._clock = clock
        # Connection ids that came and went since the last clear_history()
        self.appeared: set[str] = set()
        self.removed: set[str] = set()

    # ── Read access ──

    def get(self, connection_id: str) -> PlayerRecord | None:
        return self._players.get(connection_id)

    def records(self) -> list[PlayerRecord]:
        return list(self._players.values())

    def connection_for(self, name: str) -> str | None:
        return self._names.get(name)

    def find(self, target: str | None) -> PlayerRecord | None:
        """Look up a record by connection id or well-known name."""
        if not target:
            return None
        record = self._players.get(target)
        if record is None and target in self._names:
            record = self._players.get(self._names[target])
        return record

    def __contains__(self, connection_id: str):
        return connection_id in self._players

    def __len__(self):
        return len(self._players)

    # ── Mutation ──

    def apply_update(self, connection_id: str, fields: dict,
                     well_known_name: str | None = None,
                     display_name: str | None = None) -> PlayerRecord:
        """Merge the non-None *fields* into the record, creating it if needed.

        A field given as CLEARED is emptied rather than kept.
        """
        record = self._players.get(connection_id)
        if record is None:
            record = PlayerRecord(connection_id, now=self._clock())
            self._players[connection_id] = record
            self.appeared.add(connection_id)
            logger.info("Player appeared: %s (%s)", connection_id,
                        well_known_name or "name unknown")

        before = record.snapshot()
        for key in PlayerRecord.FIELDS:
            value = fields.get(key)
            if value is None:
                continue
            if key == "status":
                value = normalize_status(value)
                if value is None:
                    continue
            else:
                if key == "title":
                    record.title_from_url = None
                if value == CLEARED:
                    value = None
            setattr(record, key, value)

        if well_known_name:
            record.well_known_name = well_known_name
            self._names[well_known_name] = connection_id
        record.display_name = merge_display_name(record.display_name, display_name)

        self._apply_local_file_fallback(record)
        # Re-reads of identical values don't count as activity
        if record.snapshot() != before:
            record.last_updated = self._clock()
        self._changed()
        return record

    def _apply_local_file_fallback(self, record: PlayerRecord):
        url = record.source_url
        if not url:
            return
        stale = record.title_from_url is not None and record.title_from_url != url
        if record.has_title and not stale:
            return
        record.title = title_from_url(url)
        record.title_from_url = url
        if not record.artist or record.artist == PLACEHOLDER_ARTIST:
            record.artist = LOCAL_MEDIA_ARTIST

    def remove_player(self, connection_id: str) -> bool:
        self.removed.add(connection_id)
        record = self._players.pop(connection_id, None)
        if record is None:
            return False
        for name in [n for n, cid in self._names.items() if cid == connection_id]:
            del self._names[name]
        logger.info("Player gone: %s (%s)", record.display_name, connection_id)
        self._changed()
        return True

    def handle_owner_change(self, name: str, old_owner: str, new_owner: str) -> str | None:
        """Apply a NameOwnerChanged.  Returns a connection id that needs a full fetch."""
        if not new_owner:
            connection_id = old_owner or self._names.get(name)
            self._names.pop(name, None)
            if connection_id:
                self.remove_player(connection_id)
            return None

        previous = self._names.get(name)
        self._names[name] = new_owner
        self.appeared.add(new_owner)
        if previous and previous != new_owner:
            self.remove_player(previous)
        record = self._players.get(new_owner)
        if record is not None:
            record.well_known_name = name
        return new_owner

    def purge(self, live_ids) -> list[str]:
        """Drop every record whose connection id isn't in *live_ids*."""
        live = set(live_ids)
        removed = [cid for cid in self._players if cid not in live]
        for cid in removed:
            self.remove_player(cid)
        return removed

    def clear_history(self):
        self.appeared.clear()
        self.removed.clear()

    def _changed(self):
        if self._on_change is not None:
            self._on_change()


def project_player_list(records: list[PlayerRecord], active_id: str | None) -> list[dict]:
    """Player chips for the display, display names de-duplicated."""
    used: set[str] = set()
    seen: dict[str, int] = {}
    items = []
    for record in records:
        base = record.display_name
        n = seen.get(base, 0) + 1
        seen[base] = n
        label = base if n == 1 else f"{base} {n}"
        while label in used:
            n += 1
            seen[base] = n
            label = f"{base} {n}"
        used.add(label)
        items.append({
            "displayName": label,
            "id": record.connection_id,
            "status": record.status,
            "isActive": record.connection_id == active_id,
        })
    return items
