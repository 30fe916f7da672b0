#!/usr/bin/env python3
# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Jukebox core service — owns the playback controller for the process.

Wires settings, queue, switcher, controller and playlists from config.json,
then keeps three background loops alive until SIGTERM/SIGINT:

  status monitor      — polls the live player (PlaybackController)
  preference watch    — re-reads settings.json ``audioPlayer`` every
                        playback.preference_reload_interval seconds
  systemd watchdog    — READY=1 / WATCHDOG=1 / STOPPING=1

Run:  python -m jukebox.service
"""

import asyncio
import logging
import signal

from .controller import PlaybackController
from .lib.config import cfg, data_path
from .lib.errors import BusyError, JukeboxError
from .lib.settings import SettingsStore
from .lib.store import JsonDocument
from .lib.watchdog import notify_stopping, watchdog_loop
from .playlists import PlaylistManager
from .queue_store import QueueStore
from .switcher import BackendSwitcher

logger = logging.getLogger("jukebox")

PREFERENCE_RELOAD_INTERVAL = 30


class JukeboxService:
    """Process-wide container; create one and call run()."""

    def __init__(self):
        self.settings = SettingsStore(JsonDocument(data_path("settings.json")))
        self.queue = QueueStore(
            JsonDocument(data_path("queue-state.json")),
            max_age_hours=cfg("queue", "restore_max_age_hours", default=24),
        )
        self.switcher = BackendSwitcher(
            self.settings,
            connect_attempts=cfg("playback", "connect_attempts", default=3),
            connect_backoff=cfg("playback", "connect_backoff", default=0.5),
        )
        self.controller = PlaybackController(
            self.queue, self.switcher, self.settings,
            command_timeout=cfg("playback", "command_timeout", default=20),
            max_play_retries=cfg("playback", "max_play_retries", default=2),
            poll_interval=cfg("playback", "poll_interval", default=1.0),
        )
        self.playlists = PlaylistManager(
            JsonDocument(data_path("playlists.json")), self.settings,
            run_exclusive=self.controller.run_serialized,
        )
        self.preference_interval = cfg("playback", "preference_reload_interval",
                                       default=PREFERENCE_RELOAD_INTERVAL)
        self._tasks: list[asyncio.Task] = []

    async def _preference_watch(self):
        while True:
            await asyncio.sleep(self.preference_interval)
            try:
                result = await self.controller.reload_audio_player_preference()
                if result.get("switched"):
                    logger.info("Switched to %s after preference change", result["backend"])
            except BusyError as e:
                logger.info("Preference reload deferred: %s", e)
            except JukeboxError as e:
                logger.warning("Preference reload failed: %s", e)

    async def start(self):
        self.queue.load()
        await self.controller.start()
        self._tasks.append(asyncio.create_task(self._preference_watch()))
        self._tasks.append(asyncio.create_task(
            watchdog_loop(status_fn=self.controller.status_line)))

    async def shutdown(self):
        notify_stopping()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.controller.shutdown()

    async def run(self):
        """Start, wait for SIGTERM/SIGINT, stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(JukeboxService().run())


if __name__ == "__main__":
    main()
