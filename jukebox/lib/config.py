"""
Shared configuration loader for the jukebox core.

Loads a single JSON config file.  Search order:
  1. $JUKEBOX_CONFIG                (explicit override)
  2. /etc/jukebox/config.json       (deployed install)
  3. config.json                    (CWD — handy for local dev)
  4. ../../config/default.json      (repo fallback)

Secrets (VLC_PASSWORD, MPD_PASSWORD) stay in environment variables.

Usage:
    from jukebox.lib.config import cfg

    vlc_port     = cfg("vlc", "port", default=8080)
    timeout      = cfg("playback", "command_timeout", default=20)
    data_dir     = cfg("data", "dir", default="data")
    playback     = cfg("playback")  # returns the whole dict
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

BACKEND_KINDS = ("vlc", "mpd")


def _search_paths() -> list[str]:
    override = os.environ.get("JUKEBOX_CONFIG")
    if override:
        return [override] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    playback = config.get("playback") or {}
    cmd_timeout = playback.get("command_timeout")
    req_timeout = playback.get("request_timeout")
    if cmd_timeout is not None and req_timeout is not None and cmd_timeout < req_timeout:
        logger.warning("Config %s: playback.command_timeout (%s) is shorter than "
                       "playback.request_timeout (%s) — commands will time out "
                       "before the player answers", path, cmd_timeout, req_timeout)
    attempts = playback.get("connect_attempts")
    if attempts is not None and attempts < 1:
        logger.warning("Config %s: playback.connect_attempts must be >= 1, got %s",
                       path, attempts)
    mpd = config.get("mpd") or {}
    music_dir = mpd.get("music_dir")
    if music_dir and not os.path.isdir(music_dir):
        logger.warning("Config %s: mpd.music_dir '%s' does not exist", path, music_dir)
    if not (config.get("data") or {}).get("dir"):
        logger.info("Config %s: no data.dir — using ./data", path)


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

    cfg("vlc")                          → config["vlc"]
    cfg("vlc", "port")                  → config["vlc"]["port"]
    cfg("playback", "poll_interval", default=1.0)  → value or 1.0
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def data_path(filename: str) -> str:
    """Absolute path of a document inside the configured data directory."""
    return os.path.abspath(os.path.join(cfg("data", "dir", default="data"), filename))


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
