"""
Best-Player Selector — which of the tracked players to show.

Ranking, highest priority first:
  1. status: Playing > Paused > Stopped
  2. recency: a record updated more than ``recency_window`` seconds after
     the other wins
  3. brand: position in the configured brand list (substring match on the
     display name, case-insensitive); unlisted brands rank last
  4. metadata: artwork + a real album beat missing ones

``select_best`` is pure.  ``BestPlayerSelector`` wraps it with the only
state selection keeps: the last winner (to notice switches) and the
per-player forced-refresh throttle.
"""

import functools
import logging
import time

from .mpris import PAUSED, PLAYING, STOPPED

logger = logging.getLogger("nowplaying.selector")

STATUS_WEIGHT = {PLAYING: 3, PAUSED: 2, STOPPED: 1}

DEFAULT_BRANDS = ("spotify", "chrome", "chromium", "brave", "firefox", "vlc")


def brand_rank(display_name: str, brands) -> int:
    """Lower is better; unknown brands get len(brands)."""
    name = (display_name or "").lower()
    for index, brand in enumerate(brands):
        if brand and brand.lower() in name:
            return index
    return len(brands)


def richness(record) -> int:
    return int(record.has_art) + int(record.has_album)


def compare_players(a, b, brands=DEFAULT_BRANDS, recency_window: float = 1.0) -> int:
    """Positive if *a* should be shown over *b*, negative if *b*, else 0."""
    diff = STATUS_WEIGHT.get(a.status, 0) - STATUS_WEIGHT.get(b.status, 0)
    if diff:
        return diff

    age = a.last_updated - b.last_updated
    if abs(age) > recency_window:
        return 1 if age > 0 else -1

    diff = brand_rank(b.display_name, brands) - brand_rank(a.display_name, brands)
    if diff:
        return diff

    return richness(a) - richness(b)


def select_best(records, brands=DEFAULT_BRANDS, recency_window: float = 1.0):
    """Return the record to surface, or None when there are no players.

    Candidates are visited in connection-id order and a challenger must
    strictly beat the current best, so equal inputs give equal output.
    """
    best = None
    for record in sorted(records, key=lambda r: r.connection_id):
        if best is None or compare_players(record, best, brands, recency_window) > 0:
            best = record
    return best


def rank_players(records, brands=DEFAULT_BRANDS, recency_window: float = 1.0) -> list:
    """All records best-first (diagnostics only; pairwise recency isn't transitive)."""
    ordered = sorted(records, key=lambda r: r.connection_id)
    key = functools.cmp_to_key(lambda a, b: compare_players(b, a, brands, recency_window))
    return sorted(ordered, key=key)


class BestPlayerSelector:
    """Remembers the last winner and throttles forced re-queries."""

    def __init__(self, brands=DEFAULT_BRANDS, recency_window_ms: int = 1000,
                 refresh_throttle: float = 5.0, clock=time.monotonic):
        self.brands = tuple(brands)
        self.recency_window = recency_window_ms / 1000
        self.refresh_throttle = refresh_throttle
        self.active_id: str | None = None
        self._clock = clock

    def update(self, records):
        """Select a winner.  Returns ``(winner, needs_refresh)``."""
        winner = select_best(records, self.brands, self.recency_window)
        previous = self.active_id
        self.active_id = winner.connection_id if winner else None
        if winner is None:
            if previous is not None:
                logger.info("No players left")
            return None, False

        switched = winner.connection_id != previous
        if switched:
            logger.info("Active player: %s (%s, %s)", winner.display_name,
                        winner.connection_id, winner.status)
        return winner, self._claim_refresh(winner, switched)

    def _claim_refresh(self, winner, switched: bool) -> bool:
        if not switched and winner.has_title:
            return False
        now = self._clock()
        last = winner.last_manual_refresh
        if last is not None and now - last < self.refresh_throttle:
            logger.debug("Refresh of %s throttled (%.1fs ago)", winner.connection_id, now - last)
            return False
        winner.last_manual_refresh = now
        return True
