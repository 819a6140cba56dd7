"""
Shared configuration loader for jukebox services.

Loads a single JSON config file per device.  Search order:
  1. $JUKEBOX_CONFIG              (explicit override)
  2. /etc/jukebox/config.json     (deployed install)
  3. config.json                  (CWD, handy for local dev)
  4. <repo>/config/default.json   (repo fallback)

Secrets stay in environment variables.

Usage:
    from jukebox.lib.config import cfg

    client_id = cfg("spotify", "client_id", default="")
    interval  = cfg("spotify", "status_interval", default=60)
    server    = cfg("data_server")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/jukebox/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _search_paths() -> list[str]:
    override = os.getenv("JUKEBOX_CONFIG")
    if override:
        return [override] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    spotify = config.get("spotify") or {}
    if not spotify.get("client_id"):
        logger.info("Config %s: no spotify.client_id — relying on the settings API", path)
    store = spotify.get("token_store", "http")
    if store not in ("http", "file"):
        logger.warning("Config %s: unknown spotify.token_store '%s'", path, store)
    interval = spotify.get("status_interval", 60)
    if not isinstance(interval, (int, float)) or interval <= 0:
        logger.warning("Config %s: spotify.status_interval must be a positive number", path)


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

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("data_server")                     → config["data_server"]
    cfg("spotify", "client_id")            → config["spotify"]["client_id"]
    cfg("spotify", "port", default=8773)   → config["spotify"]["port"] or 8773
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
