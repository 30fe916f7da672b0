# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PlayerAdapter — uniform command surface over one external media player.

An adapter translates jukebox commands into the player's own control
protocol.  It does not own the queue and never retries: retry policy lives in
the PlaybackController.

Subclass contract:

    class MyPlayer(PlayerAdapter):
        kind = "vlc"
        name = "VLC"

        async def connect(self) -> None: ...          # PlayerConnectionError
        async def play(self, track_path) -> None: ... # PlaybackError
        async def pause(self) -> None: ...
        async def resume(self) -> None: ...
        async def stop(self) -> None: ...
        async def seek(self, seconds) -> None: ...
        async def set_volume(self, volume) -> None: ...   # 0.0 – 1.0
        async def _poll_status(self) -> PlaybackStatus: ...

Built-in (no override needed):
    get_status()   — bounded wrapper around _poll_status(); never raises,
                     reports a failed poll as stopped + degraded
    close()        — release sockets/sessions (override when holding any)
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace

from ..lib.errors import JukeboxError, PlaybackError

log = logging.getLogger(__name__)

STOPPED = "stopped"
PLAYING = "playing"
PAUSED = "paused"
TRANSITIONING = "transitioning"

STATUS_TIMEOUT = 2.0


@dataclass(frozen=True)
class PlaybackStatus:
    """Snapshot of what a player is doing.  Immutable; swap, don't mutate."""

    state: str = STOPPED
    position_seconds: float = 0.0
    duration_seconds: float = 0.0
    volume: float | None = None
    degraded: bool = False

    def evolve(self, **changes) -> "PlaybackStatus":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


def clamp_volume(volume: float) -> float:
    return max(0.0, min(1.0, float(volume)))


def check_track_file(track_path: str) -> None:
    """Reject obviously missing files before bothering the player."""
    if not track_path:
        raise PlaybackError("empty track path")
    if os.path.isabs(track_path) and not os.path.isfile(track_path):
        raise PlaybackError(f"file not found: {track_path}")


class PlayerAdapter(ABC):
    # ── Subclass must set these ──
    kind: str = ""
    name: str = ""

    def __init__(self, status_timeout: float = STATUS_TIMEOUT):
        self.status_timeout = status_timeout
        self._last_status = PlaybackStatus()

    # ── Abstract methods (subclass must implement) ──

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def play(self, track_path: str) -> None: ...

    @abstractmethod
    async def pause(self) -> None: ...

    @abstractmethod
    async def resume(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def seek(self, seconds: float) -> None: ...

    @abstractmethod
    async def set_volume(self, volume: float) -> None: ...

    @abstractmethod
    async def _poll_status(self) -> PlaybackStatus: ...

    # ── Built-in ──

    async def get_status(self) -> PlaybackStatus:
        """Poll the player, bounded by status_timeout.

        A failed or slow poll is reported as stopped with degraded=True so
        callers can keep polling.
        """
        try:
            status = await asyncio.wait_for(self._poll_status(), self.status_timeout)
        except asyncio.TimeoutError:
            log.debug("%s status poll timed out", self.name)
            return PlaybackStatus(degraded=True)
        except JukeboxError as e:
            log.debug("%s status poll failed: %s", self.name, e)
            return PlaybackStatus(degraded=True)
        self._last_status = status
        return status

    @property
    def last_status(self) -> PlaybackStatus:
        return self._last_status

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""

    def __repr__(self):
        return f"<{type(self).__name__} kind={self.kind}>"
