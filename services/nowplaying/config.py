"""
Shared configuration loader for the Now Playing hub.

Loads a single JSON config file.  Search order:
  0. $NOWPLAYING_CONFIG           (explicit override, if set)
  1. /etc/nowplaying/config.json   (system install)
  2. config.json                   (CWD — handy for local dev)
  3. ../config/default.json        (repo fallback)

Usage:
    from nowplaying.config import cfg

    interval  = cfg("poll", "interval", default=1.0)
    brands    = cfg("selection", "brands", default=[])
    bridge    = cfg("bridge")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/nowplaying/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

KNOWN_VOLUME_TYPES = ("amixer", "none")


def _search_paths() -> list[str]:
    override = os.environ.get("NOWPLAYING_CONFIG")
    return [override, *_SEARCH_PATHS] if override else list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    poll = config.get("poll") or {}
    for key in ("interval", "volume_interval"):
        val = poll.get(key)
        if val is not None and (not isinstance(val, (int, float)) or val <= 0):
            logger.warning("Config %s: poll.%s must be a positive number (got %r)", path, key, val)
    vol = config.get("volume") or {}
    vol_type = vol.get("type", "amixer")
    if vol_type not in KNOWN_VOLUME_TYPES:
        logger.warning("Config %s: unknown volume.type '%s'", path, vol_type)
    brands = (config.get("selection") or {}).get("brands")
    if brands is not None and not isinstance(brands, list):
        logger.warning("Config %s: selection.brands should be a list — ignoring", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using defaults")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("device")                          → config["device"]
    cfg("poll", "interval")                → config["poll"]["interval"]
    cfg("volume", "device", default="pulse") → config["volume"]["device"] or "pulse"
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
