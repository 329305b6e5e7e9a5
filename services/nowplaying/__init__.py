"""
Now Playing Hub — one "now playing" view across every MPRIS player on the
session bus.

Players are discovered on the bus, named, tracked and ranked; the best one is
pushed to the display over the bridge, and user actions from the display are
routed back to the right player or to the system mixer.

Modules:
  bus.py         — out-of-process busctl calls with timeouts
  identity.py    — bus name -> human display name (cached)
  signals.py     — dbus-monitor stream -> owner / property events
  state.py       — per-player state table and display payloads
  selector.py    — picks the single player to surface
  commands.py    — play/pause/next/prev/restart + system volume
  poller.py      — non-overlapping periodic resync driver
  aggregator.py  — owns all of the above
  bridge.py      — WebSocket/HTTP feed for the display
"""
