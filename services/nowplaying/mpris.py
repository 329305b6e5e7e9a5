"""
MPRIS protocol constants and property-set decoding.

busctl ``--json=short`` replies wrap every value as ``{"type": sig, "data": v}``.
``fields_from_properties`` turns a ``GetAll org.mpris.MediaPlayer2.Player``
reply into the same flat field dict the signal parser produces, so both feed
the reconciler identically.
"""

MPRIS_PREFIX = "org.mpris.MediaPlayer2."
MPRIS_PATH = "/org/mpris/MediaPlayer2"
ROOT_IFACE = "org.mpris.MediaPlayer2"
PLAYER_IFACE = "org.mpris.MediaPlayer2.Player"
PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"

DBUS_NAME = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_IFACE = "org.freedesktop.DBus"

PLAYING = "Playing"
PAUSED = "Paused"
STOPPED = "Stopped"
STATUSES = (PLAYING, PAUSED, STOPPED)

# Metadata key -> reconciler field
METADATA_FIELDS = {
    "xesam:title": "title",
    "xesam:artist": "artist",
    "xesam:album": "album",
    "mpris:artUrl": "art_url",
    "xesam:url": "source_url",
    "mpris:trackid": "track_id",
}

# Value a complete read uses for a metadata key the player no longer reports
CLEARED = ""


def is_player_name(name: str) -> bool:
    return isinstance(name, str) and name.startswith(MPRIS_PREFIX)


def normalize_status(value) -> str | None:
    """Map a PlaybackStatus string onto Playing/Paused/Stopped.

    Returns None for anything unrecognisable so the caller can treat it as
    an absent field.
    """
    if not isinstance(value, str):
        return None
    for status in STATUSES:
        if value.strip().lower() == status.lower():
            return status
    return None


def _unwrap(value):
    """Strip one level of busctl ``{"type", "data"}`` wrapping."""
    if isinstance(value, dict) and "data" in value and "type" in value:
        return value["data"]
    return value


def _first_string(value) -> str | None:
    value = _unwrap(value)
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    return str(value)


def fields_from_properties(props: dict, full: bool = True) -> dict:
    """Decode a Player property dict into reconciler fields.

    With *full* set (a complete GetAll read) a missing PlaybackStatus
    becomes Stopped and every metadata key the player left out comes back
    as CLEARED, so stale values from the previous track are dropped.
    Otherwise absent values are simply left out.
    """
    fields = {}
    if not isinstance(props, dict):
        return fields

    status = normalize_status(_unwrap(props.get("PlaybackStatus")))
    if status is not None:
        fields["status"] = status
    elif full:
        fields["status"] = STOPPED

    metadata = _unwrap(props.get("Metadata"))
    if not isinstance(metadata, dict):
        metadata = {}
    for key, field in METADATA_FIELDS.items():
        text = _first_string(metadata.get(key))
        if text is not None:
            fields[field] = text
        elif full:
            fields[field] = CLEARED

    volume = _unwrap(props.get("Volume"))
    if isinstance(volume, (int, float)) and not isinstance(volume, bool):
        fields["volume"] = float(volume)

    return fields
