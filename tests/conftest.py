"""Shared fixtures for the hub tests."""

import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "services"))


def wrap(sig, data):
    """busctl --json=short value wrapper."""
    return {"type": sig, "data": data}


def player_props(status="Playing", title=None, artist=None, album=None,
                 art_url=None, url=None, track_id=None):
    """A GetAll reply for org.mpris.MediaPlayer2.Player, as busctl decodes it."""
    metadata = {}
    if title is not None:
        metadata["xesam:title"] = wrap("s", title)
    if artist is not None:
        metadata["xesam:artist"] = wrap("as", [artist])
    if album is not None:
        metadata["xesam:album"] = wrap("s", album)
    if art_url is not None:
        metadata["mpris:artUrl"] = wrap("s", art_url)
    if url is not None:
        metadata["xesam:url"] = wrap("s", url)
    if track_id is not None:
        metadata["mpris:trackid"] = wrap("o", track_id)
    props = {"Metadata": wrap("a{sv}", metadata), "Volume": wrap("d", 1.0)}
    if status is not None:
        props["PlaybackStatus"] = wrap("s", status)
    return props


class FakeBus:
    """In-memory stand-in for BusCommandExecutor.

    names:      ListNames result (None = listing fails)
    owners:     well-known name -> connection id
    props:      connection id -> GetAll reply
    identities: well-known name -> {"Identity": ..., "DesktopEntry": ...}
    """

    def __init__(self):
        self.names = ["org.freedesktop.DBus"]
        self.owners = {}
        self.props = {}
        self.identities = {}
        self.pids = {}
        self.invoke = AsyncMock(return_value=True)
        self.fetches = []
        # Called with the connection id while a GetAll is "in flight"
        self.on_fetch = None

    def add_player(self, name, connection_id, props, identity=None):
        self.names.append(name)
        self.owners[name] = connection_id
        self.props[connection_id] = props
        if identity is not None:
            self.identities[name] = {"Identity": identity}

    def drop_player(self, name):
        self.names.remove(name)
        cid = self.owners.pop(name)
        self.props.pop(cid, None)

    async def list_names(self):
        return None if self.names is None else list(self.names)

    async def get_name_owner(self, name):
        return self.owners.get(name)

    async def get_connection_pid(self, connection_id):
        return self.pids.get(connection_id)

    async def get_property(self, service, path, interface, prop):
        return self.identities.get(service, {}).get(prop)

    async def get_player_properties(self, service):
        self.fetches.append(service)
        if self.on_fetch is not None:
            self.on_fetch(service)
        return self.props.get(service)


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def fake_bus():
    return FakeBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def volume():
    adapter = AsyncMock()
    adapter.get_volume.return_value = 40
    return adapter
