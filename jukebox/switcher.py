# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BackendSwitcher — owns the single live PlayerAdapter.

Exactly one adapter is live at any time.  Switching stops the outgoing
player, connects the incoming one (with retries), persists the choice as the
``audioPlayer`` preference and only then closes the outgoing adapter.  If the
incoming player can't be reached the outgoing adapter stays live.

Only one switch may be in flight; a second ``switch_to`` raises BusyError
immediately instead of queueing.
"""

import asyncio
import logging

from .lib.config import BACKEND_KINDS
from .lib.errors import (
    BusyError, CommandTimeout, JukeboxError, NotFoundError, PlayerConnectionError,
)
from .lib.settings import SettingsStore
from .players import create_player
from .players.base import PAUSED, PLAYING, PlayerAdapter

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF = 0.5


class BackendSwitcher:

    def __init__(self, settings: SettingsStore, player_factory=create_player, *,
                 connect_attempts: int = CONNECT_ATTEMPTS,
                 connect_backoff: float = CONNECT_BACKOFF):
        self._settings = settings
        self._factory = player_factory
        self.connect_attempts = max(1, connect_attempts)
        self.connect_backoff = connect_backoff
        self._active: PlayerAdapter | None = None
        self._switching = False

    @property
    def active(self) -> PlayerAdapter | None:
        return self._active

    @property
    def active_kind(self) -> str | None:
        return self._active.kind if self._active else None

    @property
    def switching(self) -> bool:
        return self._switching

    async def start(self) -> PlayerAdapter:
        """Install the adapter named by the stored preference.

        An unreachable player is still installed; its status reports degraded
        until it comes up.
        """
        kind = self._settings.backend_preference()
        player = self._factory(kind)
        try:
            await player.connect()
        except JukeboxError as e:
            logger.warning("%s unreachable at startup (%s) — status will be degraded",
                           player.name, e)
        self._active = player
        logger.info("Audio player: %s", player.name)
        return player

    async def _connect_with_retry(self, player: PlayerAdapter) -> None:
        delay = self.connect_backoff
        for attempt in range(1, self.connect_attempts + 1):
            try:
                await player.connect()
                return
            except (PlayerConnectionError, CommandTimeout) as e:
                if attempt == self.connect_attempts:
                    raise PlayerConnectionError(
                        f"{player.name} unreachable after {attempt} attempts: {e}") from e
                logger.warning("%s connect attempt %d/%d failed: %s — retrying in %.1fs",
                               player.name, attempt, self.connect_attempts, e, delay)
                await asyncio.sleep(delay)
                delay *= 2

    async def switch_to(self, kind: str, *, resume: bool = False,
                        track_path: str | None = None, persist: bool = True) -> dict:
        """Make *kind* the live backend.

        *track_path* is the file the outgoing player is working on (adapters
        only know positions).  With *resume* the captured track is restarted
        on the new player at the captured position.

        Returns {"switched", "backend", "previous", "captured", "resumed"}.
        """
        if kind not in BACKEND_KINDS:
            raise NotFoundError(f"unknown audio player: {kind}")
        if self._switching:
            raise BusyError("an audio player switch is already in progress")
        if self._active is not None and self._active.kind == kind:
            logger.info("Audio player already %s — nothing to switch", kind)
            return {"switched": False, "backend": kind, "previous": kind,
                    "captured": None, "resumed": False}

        self._switching = True
        try:
            return await self._switch(kind, resume, track_path, persist)
        finally:
            self._switching = False

    async def _switch(self, kind, resume, track_path, persist) -> dict:
        old = self._active
        captured = None

        if old is not None:
            status = await old.get_status()
            if track_path and status.state in (PLAYING, PAUSED):
                captured = {"trackPath": track_path,
                            "positionSeconds": status.position_seconds}
            try:
                await old.stop()
            except JukeboxError as e:
                logger.warning("Stopping %s failed (%s) — switching anyway", old.name, e)

        new = self._factory(kind)
        try:
            await self._connect_with_retry(new)
        except PlayerConnectionError as e:
            await new.close()
            logger.error("Switch to %s failed — staying on %s",
                         new.name, old.name if old else "nothing")
            # the outgoing player is already stopped; callers resume from this
            e.captured = captured
            raise
        except BaseException:
            await new.close()
            raise

        self._active = new
        if old is not None:
            await old.close()
        logger.info("Audio player switched: %s -> %s",
                    old.name if old else "none", new.name)

        if persist:
            try:
                self._settings.save_backend_preference(kind)
            except OSError as e:
                logger.warning("Could not persist audio player preference: %s", e)

        resumed = False
        if resume and captured:
            try:
                await new.play(captured["trackPath"])
                if captured["positionSeconds"] > 0:
                    await new.seek(captured["positionSeconds"])
                resumed = True
                logger.info("Resumed %s at %.1fs on %s", captured["trackPath"],
                            captured["positionSeconds"], new.name)
            except JukeboxError as e:
                logger.warning("Resume on %s failed: %s", new.name, e)

        return {"switched": True, "backend": kind,
                "previous": old.kind if old else None,
                "captured": captured, "resumed": resumed}

    def preference_changed(self) -> str | None:
        """Stored preference if it differs from the live kind, else None."""
        kind = self._settings.backend_preference()
        if kind == self.active_kind:
            return None
        return kind

    async def reload_preference(self) -> dict | None:
        """Switch (without resume) if the stored preference changed."""
        kind = self.preference_changed()
        if kind is None:
            return None
        logger.info("Audio player preference changed to %s", kind)
        return await self.switch_to(kind, persist=False)

    async def close(self) -> None:
        if self._active is not None:
            await self._active.close()
