"""
Players — adapters for the external media-player processes.

A player does NOT own the queue.  It only translates jukebox commands (play
this file, pause, seek, set volume) into one player's control protocol and
reports what the player is doing.  Exactly one adapter is live at a time; the
BackendSwitcher decides which.

Current players:
  vlc.py   — VLC over its HTTP control interface (``--intf http``)
  mpd.py   — Music Player Daemon over its TCP line protocol

The factory function ``create_player`` reads config.json and returns the
adapter for a backend kind.
"""

import logging
import os

from ..lib.config import BACKEND_KINDS, cfg
from .base import PlaybackStatus, PlayerAdapter
from .mpd import MpdPlayer
from .vlc import VlcPlayer

logger = logging.getLogger(__name__)

__all__ = [
    "PlaybackStatus",
    "PlayerAdapter",
    "MpdPlayer",
    "VlcPlayer",
    "create_player",
]


def create_player(kind: str, **overrides) -> PlayerAdapter:
    """Create the adapter for *kind* ("vlc" or "mpd") from config.json.

    Reads the matching config section:
      host, port   – where the player listens
      music_dir    – MPD's music directory (mpd only); tracks below it are
                     sent as relative URIs

    and ``playback.request_timeout`` for per-request bounds.  Passwords come
    from VLC_PASSWORD / MPD_PASSWORD, falling back to the config value.
    Keyword arguments override anything read from config.
    """
    if kind not in BACKEND_KINDS:
        raise ValueError(f"unknown backend kind: {kind}")

    request_timeout = cfg("playback", "request_timeout", default=4.0)

    if kind == "vlc":
        params = {
            "host": cfg("vlc", "host", default="localhost"),
            "port": cfg("vlc", "port", default=8080),
            "password": os.getenv("VLC_PASSWORD") or cfg("vlc", "password", default="jukebox"),
            "request_timeout": request_timeout,
        }
        params.update(overrides)
        logger.info("Player: VLC at %s:%s", params["host"], params["port"])
        return VlcPlayer(**params)

    params = {
        "host": cfg("mpd", "host", default="localhost"),
        "port": cfg("mpd", "port", default=6600),
        "password": os.getenv("MPD_PASSWORD") or cfg("mpd", "password", default=""),
        "music_dir": cfg("mpd", "music_dir"),
        "request_timeout": request_timeout,
    }
    params.update(overrides)
    logger.info("Player: MPD at %s:%s", params["host"], params["port"])
    return MpdPlayer(**params)
