# Now Playing Hub
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MediaAggregator — the one object that owns all hub state.

Inputs:
  * the dbus-monitor signal stream (``handle_event``)
  * the metadata poll (``poll_cycle``) and the volume poll (``volume_cycle``)
  * user actions from the display (``handle_command``)

Output: three channels handed to ``publish(channel, data)``:
  media-update, system-volume-update, player-list-update

Every table mutation re-runs selection and re-projects the player list;
unchanged payloads are not re-sent unless a client asks (``ready``).
"""

import asyncio
import json
import logging
import math
import os
import time
from contextlib import contextmanager

from .bus import BusCommandExecutor
from .commands import CommandDispatcher
from .config import cfg
from .identity import IdentityResolver
from .mpris import fields_from_properties, is_player_name
from .poller import PollingLoop
from .selector import DEFAULT_BRANDS, BestPlayerSelector, rank_players
from .signals import OwnerChange, PropertiesChange, SignalMonitor
from .state import NO_PLAYER, PlayerTable, project_player_list
from .volume_adapters import create_volume_adapter

logger = logging.getLogger("nowplaying")

MEDIA_UPDATE = "media-update"
VOLUME_UPDATE = "system-volume-update"
PLAYER_LIST_UPDATE = "player-list-update"

PLAYER_COMMANDS = {
    "toggle-play-pause": "toggle_play_pause",
    "next": "next",
    "previous": "previous",
    "restart": "seek_to_start",
}


class MediaAggregator:

    def __init__(self, publish=None, bus=None, volume=None, clock=time.monotonic,
                 monitor: bool = True):
        self._publish = publish
        self._clock = clock
        self.device_name = cfg("device", default="Now Playing")

        self.bus = bus or BusCommandExecutor(
            busctl=cfg("bus", "busctl", default="busctl"),
            timeout=float(cfg("bus", "timeout", default=2.0)),
        )
        self.identity = IdentityResolver(self.bus)
        self.table = PlayerTable(on_change=self._on_table_change, clock=clock)
        brands = cfg("selection", "brands", default=None)
        self.selector = BestPlayerSelector(
            brands=brands if isinstance(brands, list) else DEFAULT_BRANDS,
            recency_window_ms=int(cfg("selection", "recency_window_ms", default=1000)),
            refresh_throttle=float(cfg("poll", "refresh_throttle", default=5.0)),
            clock=clock,
        )
        self.volume = volume or create_volume_adapter()

        self.stale_after = float(cfg("poll", "stale_after", default=15.0))
        self.poll = PollingLoop(
            "metadata", float(cfg("poll", "interval", default=1.0)), self.poll_cycle)
        self.volume_poll = PollingLoop(
            "volume", float(cfg("poll", "volume_interval", default=0.3)), self.volume_cycle)
        self.commands = CommandDispatcher(
            self.bus, self.table, self.selector, self.volume,
            repoll=self.poll.request_later,
            repoll_delay=float(cfg("poll", "command_repoll_delay", default=0.1)),
        )
        self.monitor = SignalMonitor(
            self.handle_event, cfg("bus", "monitor", default="dbus-monitor")) if monitor else None

        self.system_volume: int | None = None
        self._latest: dict[str, object] = {}
        self._last_sent: dict[str, str] = {}
        self._last_fetch: dict[str, float] = {}
        self._fetching: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._monitor_task: asyncio.Task | None = None
        self._hold = 0
        self._dirty = False

    # ── Lifecycle ──

    async def start(self):
        logger.info("Starting aggregator (session bus: %s)",
                    os.environ.get("DBUS_SESSION_BUS_ADDRESS", "unset"))
        if self.monitor is not None:
            self._monitor_task = asyncio.ensure_future(self.monitor.run())
        self.poll.start()
        self.volume_poll.start()

    async def stop(self):
        if self.monitor is not None:
            await self.monitor.stop()
        for task in [self._monitor_task, *self._tasks]:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in [self._monitor_task, *self._tasks] if t),
                             return_exceptions=True)
        self._monitor_task = None
        self._tasks.clear()
        await self.poll.stop()
        await self.volume_poll.stop()
        await self.volume.close()
        logger.info("Aggregator stopped")

    def _spawn(self, coro) -> asyncio.Task:
        """Fire-and-forget with failures logged."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed: %s", task.exception())

    # ── Publishing ──

    def publish(self, channel: str, data, force: bool = False) -> bool:
        encoded = json.dumps(data, sort_keys=True)
        if not force and self._last_sent.get(channel) == encoded:
            return False
        self._last_sent[channel] = encoded
        self._latest[channel] = data
        if self._publish is not None:
            self._publish(channel, data)
        return True

    def latest(self) -> dict:
        """Last payload of every channel that has published at least once."""
        return dict(self._latest)

    @contextmanager
    def _held(self):
        """Batch table mutations into a single selection pass."""
        self._hold += 1
        try:
            yield
        finally:
            self._hold -= 1
            if self._hold == 0 and self._dirty:
                self._dirty = False
                self.refresh_selection()

    def _on_table_change(self):
        if self._hold:
            self._dirty = True
            return
        self.refresh_selection()

    def refresh_selection(self, force: bool = False):
        records = self.table.records()
        winner, needs_refresh = self.selector.update(records)
        if needs_refresh:
            self.request_refresh(winner.connection_id)

        media = winner.media_payload() if winner else dict(NO_PLAYER)
        if self.publish(MEDIA_UPDATE, media, force) and winner:
            logger.info("[Media] Active: %s - %s (%s)", media["player"], media["title"],
                        media["status"])
        self.publish(PLAYER_LIST_UPDATE,
                     project_player_list(records, self.selector.active_id), force)

    # ── Signal stream ──

    def handle_event(self, event):
        if isinstance(event, OwnerChange):
            connection_id = self.table.handle_owner_change(
                event.name, event.old_owner, event.new_owner)
            if connection_id:
                logger.info("%s now owned by %s", event.name, connection_id)
                self.request_refresh(connection_id, event.name)
            else:
                self._last_fetch.pop(event.old_owner, None)
        elif isinstance(event, PropertiesChange):
            known = event.sender in self.table
            self.table.apply_update(event.sender, event.fields)
            if not known:
                # We don't know its name yet; the poll will tell us
                self.poll.request()

    # ── Full fetches ──

    def request_refresh(self, connection_id: str, name: str | None = None) -> asyncio.Task:
        """Schedule a full property read of one player (coalesced per player)."""
        task = self._fetching.get(connection_id)
        if task is None or task.done():
            task = self._spawn(self.refresh_player(connection_id, name))
            self._fetching[connection_id] = task
        return task

    async def refresh_player(self, connection_id: str, name: str | None = None):
        try:
            record = self.table.get(connection_id)
            name = name or (record.well_known_name if record else None)
            props = await self.bus.get_player_properties(connection_id)
            display = await self.identity.resolve(name) if name else None
            self._last_fetch[connection_id] = self._clock()

            # Gone while we were asking?
            if connection_id not in self.table and (
                    not name or self.table.connection_for(name) != connection_id):
                return
            fields = fields_from_properties(props) if props is not None else {}
            self.table.apply_update(connection_id, fields,
                                    well_known_name=name, display_name=display)
        finally:
            self._fetching.pop(connection_id, None)

    def _needs_fetch(self, connection_id: str, now: float) -> bool:
        record = self.table.get(connection_id)
        if record is None or not record.has_title:
            return True
        last = self._last_fetch.get(connection_id)
        return last is None or now - last > self.stale_after

    async def poll_cycle(self):
        """Re-list players, purge the dead, fetch the new and the stale.

        Signals keep arriving while we wait on the bus, so the listing is
        reconciled against what the table saw in the meantime: a connection
        that lost its owner stays gone, one announced after the listing stays.
        """
        self.table.clear_history()
        names = await self.bus.list_names()
        if names is None:
            logger.debug("Bus listing failed — keeping last known state")
            return

        players = [n for n in names if is_player_name(n)]
        owners = await asyncio.gather(*(self.bus.get_name_owner(n) for n in players))
        live: dict[str, str] = {}
        for name, owner in zip(players, owners):
            # A timed-out owner lookup keeps the mapping we already had
            owner = owner or self.table.connection_for(name)
            if owner:
                live[name] = owner

        displays = await asyncio.gather(*(self.identity.resolve(n) for n in live))
        now = self._clock()
        to_fetch = [cid for cid in live.values() if self._needs_fetch(cid, now)]
        results = await asyncio.gather(*(self.bus.get_player_properties(c) for c in to_fetch))
        props = dict(zip(to_fetch, results))

        with self._held():
            self.table.purge(set(live.values()) | self.table.appeared)
            for (name, cid), display in zip(live.items(), displays):
                mapped = self.table.connection_for(name)
                if cid in self.table.removed or (mapped is not None and mapped != cid):
                    logger.debug("%s (%s) changed owner during the poll, skipping", name, cid)
                    continue
                fields = {}
                if cid in props:
                    self._last_fetch[cid] = now
                    if props[cid] is not None:
                        fields = fields_from_properties(props[cid])
                self.table.apply_update(cid, fields, well_known_name=name, display_name=display)
            for cid in list(self._last_fetch):
                if cid not in self.table:
                    del self._last_fetch[cid]
            # Selection and projection run even if nothing changed
            self._dirty = True

    async def volume_cycle(self):
        volume = await self.commands.get_system_volume()
        if volume is None:
            return
        if volume != self.system_volume:
            logger.debug("System volume now %d%%", volume)
        self.system_volume = volume
        self.publish(VOLUME_UPDATE, volume)

    # ── Display commands ──

    def handle_command(self, command: str, payload: dict | None = None) -> bool:
        """Dispatch one user action.  False if the command is unknown or malformed."""
        payload = payload or {}
        if command == "ready":
            self.on_display_ready()
            return True

        if command == "set-system-volume":
            volume = payload.get("volume")
            if (isinstance(volume, bool) or not isinstance(volume, (int, float))
                    or not math.isfinite(volume)):
                logger.warning("set-system-volume without a numeric volume: %r", volume)
                return False
            self._spawn(self.commands.set_system_volume(volume))
            return True

        method = PLAYER_COMMANDS.get(command)
        if method is None:
            logger.warning("Unknown command: %s", command)
            return False
        target = payload.get("id")
        self._spawn(getattr(self.commands, method)(target if isinstance(target, str) else None))
        return True

    def on_display_ready(self):
        """Display (re)connected: push everything we have, fresh."""
        self.refresh_selection(force=True)
        if self.system_volume is not None:
            self.publish(VOLUME_UPDATE, self.system_volume, force=True)
        self.poll.request()

    # ── Diagnostics ──

    def status_line(self) -> str:
        record = self.table.get(self.selector.active_id) if self.selector.active_id else None
        if record is None:
            return f"{len(self.table)} players, nothing active"
        return f"{len(self.table)} players, active: {record.display_name} ({record.status})"

    def snapshot(self) -> dict:
        ranked = rank_players(self.table.records(), self.selector.brands,
                              self.selector.recency_window)
        return {
            "device": self.device_name,
            "active": self.selector.active_id,
            "players": [
                {**r.media_payload(), "name": r.well_known_name}
                for r in ranked
            ],
            "identities": len(self.identity),
            "volume": self.system_volume,
            "monitor": bool(self.monitor and self.monitor.running),
        }
