# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PlaybackController — the one place that changes what is playing.

Every browser client's command ends up here.  Commands that change playback
or queue state run one at a time, in arrival order, under a single
asyncio.Lock (its waiters are FIFO).  Each command is bounded by
``command_timeout``; a command that exceeds it raises CommandTimeout and the
next waiter proceeds.

Status reads never take the lock: the controller publishes an immutable
snapshot dict after every change and get_status() returns a copy of it, with
state "transitioning" while a player command or backend switch is in flight.
Queue bookkeeping and playlist writes share the lock (run_serialized) but do
not count as transitioning.

Failure handling for play:
  - the same entry is tried 1 + max_play_retries times
  - then the queue advances past it once and the next entry is tried
  - if that fails too the PlaybackError reaches the caller, queue already moved

A status monitor polls the live player every ``poll_interval`` seconds and,
when a track the controller started runs out on its own, advances the queue
per repeat/shuffle.
"""

import asyncio
import logging

from .lib.errors import (
    BusyError, CommandTimeout, JukeboxError, NotFoundError, PlaybackError,
    PlayerConnectionError,
)
from .lib.settings import SettingsStore
from .players.base import PAUSED, PLAYING, STOPPED, TRANSITIONING, clamp_volume
from .queue_store import QueueEntry, QueueStore
from .switcher import BackendSwitcher

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 20.0
MAX_PLAY_RETRIES = 2
POLL_INTERVAL = 1.0


class PlaybackController:

    def __init__(self, queue: QueueStore, switcher: BackendSwitcher,
                 settings: SettingsStore, *,
                 command_timeout: float = COMMAND_TIMEOUT,
                 max_play_retries: int = MAX_PLAY_RETRIES,
                 poll_interval: float = POLL_INTERVAL):
        self.queue = queue
        self.switcher = switcher
        self.settings = settings
        self.command_timeout = command_timeout
        self.max_play_retries = max(0, max_play_retries)
        self.poll_interval = poll_interval

        self._lock = asyncio.Lock()
        self._executing: str | None = None
        self._player_command: str | None = None
        self._switch_pending = False
        self._pending_volume: float | None = None
        self._expect_playing = False       # we started a track and haven't stopped it
        self._resume_point: dict | None = None
        self._monitor_task: asyncio.Task | None = None
        self._status: dict = {}
        self._publish(state=STOPPED, positionSeconds=0.0, durationSeconds=0.0,
                      degraded=False)

    @property
    def _player(self):
        return self.switcher.active

    # ── Status snapshot ──

    def _publish(self, **changes):
        """Build a fresh snapshot and swap it in.  Never mutates the old one."""
        status = dict(self._status)
        status.update(changes)
        entry = self.queue.current_entry
        status.update(
            currentEntry=entry.to_dict() if entry else None,
            currentIndex=self.queue.current_index,
            queueLength=len(self.queue),
            volume=self.queue.volume,
            muted=self.queue.muted,
            repeatMode=self.queue.repeat_mode,
            shuffle=self.queue.shuffle,
            backend=self.switcher.active_kind,
        )
        self._status = status

    @property
    def busy(self) -> bool:
        return (self._player_command is not None or self._switch_pending
                or self.switcher.switching)

    def get_status(self) -> dict:
        status = dict(self._status)
        status["transitioning"] = self.busy
        if status["transitioning"]:
            status["state"] = TRANSITIONING
        return status

    def status_line(self) -> str:
        """One-line summary for the systemd STATUS= field."""
        s = self._status
        entry = s["currentEntry"]
        title = entry["title"] if entry else "-"
        return f"{s['backend'] or 'none'} {s['state']}: {title}"

    def get_queue(self) -> dict:
        return {
            "entries": [e.to_dict() for e in self.queue.entries],
            "currentIndex": self.queue.current_index,
            "repeatMode": self.queue.repeat_mode,
            "shuffle": self.queue.shuffle,
        }

    def get_debug_info(self) -> dict:
        player = self._player
        return {
            "backend": self.switcher.active_kind,
            "player": repr(player),
            "playerStatus": player.last_status.to_dict() if player else None,
            "executing": self._executing,
            "playerCommand": self._player_command,
            "lockHeld": self._lock.locked(),
            "switchPending": self._switch_pending,
            "switching": self.switcher.switching,
            "pendingVolume": self._pending_volume,
            "expectPlaying": self._expect_playing,
            "resumePoint": self._resume_point,
            "monitorRunning": self._monitor_task is not None and not self._monitor_task.done(),
            "queueLength": len(self.queue),
            "status": self.get_status(),
        }

    # ── Serialization ──

    async def run_exclusive(self, name: str, fn, *, transitioning: bool = True):
        """Run coroutine function *fn* under the command lock and timeout.

        With *transitioning* (player commands) status reads report
        "transitioning" until *fn* finishes.
        """
        async with self._lock:
            self._executing = name
            if transitioning:
                self._player_command = name
            try:
                return await asyncio.wait_for(fn(), self.command_timeout)
            except asyncio.TimeoutError:
                logger.warning("Command '%s' timed out after %ss", name, self.command_timeout)
                raise CommandTimeout(
                    f"'{name}' did not finish within {self.command_timeout}s") from None
            finally:
                self._executing = None
                self._player_command = None
                self._publish()

    async def run_serialized(self, name: str, fn):
        """run_exclusive for work that never touches the player."""
        return await self.run_exclusive(name, fn, transitioning=False)

    def _check(self, action: str):
        self.settings.access_policy().check(action)

    # ── Playing entries ──

    async def _play_with_retry(self, entry: QueueEntry):
        player = self._player
        attempts = 1 + self.max_play_retries
        for attempt in range(1, attempts + 1):
            try:
                try:
                    await player.stop()
                except JukeboxError as e:
                    logger.debug("stop before play failed: %s", e)
                await player.play(entry.track_path)
                break
            except PlaybackError as e:
                logger.warning("Play '%s' failed (attempt %d/%d): %s",
                               entry.title, attempt, attempts, e)
                if attempt == attempts:
                    self._expect_playing = False
                    raise
        self._expect_playing = True
        self._resume_point = None
        self._publish(state=PLAYING, positionSeconds=0.0, durationSeconds=0.0,
                      degraded=False)
        logger.info("Now playing: %s (%d/%d)", entry.title,
                    self.queue.current_index + 1, len(self.queue))

    async def _halt(self):
        self._expect_playing = False
        self._resume_point = None
        try:
            await self._player.stop()
        except JukeboxError as e:
            logger.warning("Stop failed: %s", e)
        self._publish(state=STOPPED, positionSeconds=0.0, durationSeconds=0.0)

    async def _start_current(self) -> QueueEntry | None:
        """Play the current entry; on repeated failure advance once and try
        the next one."""
        entry = self.queue.current_entry
        if entry is None:
            await self._halt()
            return None
        try:
            await self._play_with_retry(entry)
            return entry
        except PlaybackError as e:
            failed = e
        logger.warning("Skipping '%s' — it could not be played", entry.title)
        self.queue.advance(is_skip=True)
        nxt = self.queue.current_entry
        if nxt is None or nxt.id == entry.id:
            await self._halt()
            raise failed
        try:
            await self._play_with_retry(nxt)
        except PlaybackError:
            self._publish(state=STOPPED, positionSeconds=0.0, durationSeconds=0.0)
            raise
        return nxt

    # ── Queue commands ──

    async def play_now(self, entry: QueueEntry) -> dict:
        """Insert *entry* right after the current one and play it."""
        self._check("play")

        async def _do():
            cur = self.queue.current_index
            index = self.queue.insert(len(self.queue) if cur is None else cur + 1, entry)
            self.queue.set_current_index(index)
            await self._start_current()

        await self.run_exclusive("play_now", _do)
        return self.get_status()

    async def enqueue(self, entry: QueueEntry) -> dict:
        """Append *entry*; if nothing is current it starts playing."""
        self._check("add_to_queue")

        async def _do():
            index = self.queue.append(entry)
            logger.info("Queued '%s' at %d", entry.title, index)
            if self.queue.current_index is None:
                self.queue.set_current_index(index)
                await self._start_current()
            return index

        index = await self.run_exclusive("enqueue", _do)
        return {"index": index, "entry": entry.to_dict(), "status": self.get_status()}

    async def enqueue_playlist(self, playlist) -> dict:
        """Append every track of *playlist* in position order."""
        self._check("add_to_queue")
        entries = [QueueEntry(track_path=t.track_path) for t in playlist.tracks]

        async def _do():
            first = None
            for entry in entries:
                index = self.queue.append(entry)
                if first is None:
                    first = index
            logger.info("Queued playlist '%s' (%d tracks)", playlist.name, len(entries))
            if first is not None and self.queue.current_index is None:
                self.queue.set_current_index(first)
                await self._start_current()

        await self.run_exclusive("enqueue_playlist", _do)
        return {"added": len(entries), "status": self.get_status()}

    async def play_index(self, index: int) -> dict:
        self._check("play")

        async def _do():
            self.queue.set_current_index(index)
            await self._start_current()

        await self.run_exclusive("play_index", _do)
        return self.get_status()

    async def skip_next(self) -> dict:
        self._check("next")

        async def _do():
            self.queue.advance(is_skip=True)
            await self._start_current()

        await self.run_exclusive("skip_next", _do)
        return self.get_status()

    async def skip_previous(self) -> dict:
        self._check("previous")

        async def _do():
            self.queue.previous()
            await self._start_current()

        await self.run_exclusive("skip_previous", _do)
        return self.get_status()

    async def track_finished(self) -> dict:
        """The player ran out of track on its own — advance per repeat/shuffle."""

        async def _do():
            if not self._expect_playing:
                return
            self.queue.advance(is_skip=False)
            if self.queue.current_entry is None:
                logger.info("End of queue")
            await self._start_current()

        await self.run_exclusive("track_finished", _do)
        return self.get_status()

    async def remove_from_queue(self, index: int) -> dict:
        self._check("remove_from_queue")

        async def _do():
            was_current = index == self.queue.current_index
            removed = self.queue.remove_at(index)
            logger.info("Removed '%s' from queue", removed.title)
            if was_current:
                await self._halt()
            return removed

        removed = await self.run_exclusive("remove_from_queue", _do)
        return {"removed": removed.to_dict(), "status": self.get_status()}

    async def move_in_queue(self, from_index: int, to_index: int) -> dict:
        self._check("remove_from_queue")

        async def _do():
            self.queue.move_to(from_index, to_index)

        await self.run_serialized("move_in_queue", _do)
        return self.get_queue()

    async def clear_queue(self) -> dict:
        self._check("remove_from_queue")

        async def _do():
            await self._halt()
            self.queue.clear()
            logger.info("Queue cleared")

        await self.run_exclusive("clear_queue", _do)
        return self.get_status()

    # ── Transport commands ──

    async def toggle_pause(self) -> dict:
        self._check("play")

        async def _do():
            entry = self.queue.current_entry
            if entry is None:
                if not len(self.queue):
                    raise NotFoundError("the queue is empty")
                self.queue.set_current_index(0)
                await self._start_current()
                return

            resume = self._resume_point
            if resume and resume["entryId"] == entry.id:
                # first play after a backend switch: pick up where we were
                await self._play_with_retry(entry)
                if resume["positionSeconds"] > 0:
                    await self._player.seek(resume["positionSeconds"])
                    self._publish(positionSeconds=resume["positionSeconds"])
                return

            status = await self._player.get_status()
            state = self._status["state"] if status.degraded else status.state
            if state == PLAYING:
                await self._player.pause()
                self._expect_playing = False
                self._publish(state=PAUSED)
            elif state == PAUSED:
                await self._player.resume()
                self._expect_playing = True
                self._publish(state=PLAYING)
            else:
                await self._start_current()

        await self.run_exclusive("toggle_pause", _do)
        return self.get_status()

    async def stop(self) -> dict:
        self._check("stop")
        await self.run_exclusive("stop", self._halt)
        return self.get_status()

    async def seek(self, seconds: float) -> dict:
        self._check("play")

        async def _do():
            await self._player.seek(max(0.0, float(seconds)))
            self._publish(positionSeconds=max(0.0, float(seconds)))

        await self.run_exclusive("seek", _do)
        return self.get_status()

    async def set_volume(self, volume: float) -> dict:
        """Set volume 0.0–1.0.  Calls that queue up behind a pending volume
        change collapse into it; only the latest value is sent."""
        volume = clamp_volume(volume)
        coalesced = self._pending_volume is not None
        self._pending_volume = volume
        if coalesced:
            return {"volume": volume, "coalesced": True}

        started = False

        async def _do():
            nonlocal started
            started = True
            target = self._pending_volume
            self._pending_volume = None
            self.queue.set_volume(target)
            if self.queue.muted:
                self.queue.set_muted(False)
            await self._player.set_volume(target)
            return target

        try:
            applied = await self.run_exclusive("set_volume", _do)
        finally:
            # cancelled while queued: release the slot so later calls aren't swallowed
            if not started:
                self._pending_volume = None
        return {"volume": applied, "coalesced": False}

    async def toggle_mute(self) -> dict:

        async def _do():
            muted = not self.queue.muted
            self.queue.set_muted(muted)
            await self._player.set_volume(0.0 if muted else self.queue.volume)
            logger.info("Muted" if muted else "Unmuted")

        await self.run_exclusive("toggle_mute", _do)
        return self.get_status()

    async def set_repeat_mode(self, mode: str) -> dict:

        async def _do():
            self.queue.set_repeat_mode(mode)

        await self.run_serialized("set_repeat_mode", _do)
        return self.get_status()

    async def set_shuffle(self, enabled: bool) -> dict:

        async def _do():
            self.queue.set_shuffle(enabled)

        await self.run_serialized("set_shuffle", _do)
        return self.get_status()

    async def _apply_stored_volume(self):
        volume = 0.0 if self.queue.muted else self.queue.volume
        try:
            await self._player.set_volume(volume)
        except JukeboxError as e:
            logger.warning("Could not apply volume to %s: %s", self._player.name, e)

    # ── Backend switching ──

    async def switch_audio_player(self, kind: str, resume: bool = False, *,
                                  persist: bool = True) -> dict:
        """Move playback to the *kind* backend.

        Refused with BusyError while another switch is pending or a command
        is executing.  Without *resume* the queue stays paused at the current
        entry; the next toggle_pause() restarts it at the captured position.
        """
        if self._switch_pending or self.switcher.switching:
            raise BusyError("an audio player switch is already in progress")
        if self._player_command is not None:
            raise BusyError(f"cannot switch while '{self._player_command}' is running")
        self._switch_pending = True
        try:
            return await self.run_exclusive(
                "switch_audio_player", lambda: self._switch(kind, resume, persist))
        finally:
            self._switch_pending = False

    def _hold_after_failed_switch(self, entry: QueueEntry | None, captured: dict | None):
        """The old player was stopped before the new one failed to come up.
        Hold the queue where it was so the monitor doesn't see a track end."""
        self._expect_playing = False
        if captured and entry is not None:
            self._resume_point = {"entryId": entry.id,
                                  "positionSeconds": captured["positionSeconds"]}
            self._publish(state=PAUSED, positionSeconds=captured["positionSeconds"])
        else:
            self._resume_point = None
            self._publish(state=STOPPED, positionSeconds=0.0, durationSeconds=0.0)

    async def _switch(self, kind: str, resume: bool, persist: bool) -> dict:
        entry = self.queue.current_entry
        try:
            result = await self.switcher.switch_to(
                kind, resume=resume, track_path=entry.track_path if entry else None,
                persist=persist)
        except PlayerConnectionError as e:
            self._hold_after_failed_switch(entry, getattr(e, "captured", None))
            raise
        except asyncio.CancelledError:
            # timed out mid-switch: fall back to the last published position
            captured = None
            if self._status["state"] in (PLAYING, PAUSED):
                captured = {"positionSeconds": self._status["positionSeconds"]}
            self._hold_after_failed_switch(entry, captured)
            raise
        if not result["switched"]:
            return result

        self.queue.set_active_backend(kind)
        await self._apply_stored_volume()
        captured = result["captured"]
        if result["resumed"]:
            self._expect_playing = True
            self._resume_point = None
            self._publish(state=PLAYING, positionSeconds=captured["positionSeconds"])
        elif captured and entry is not None:
            self._expect_playing = False
            self._resume_point = {"entryId": entry.id,
                                  "positionSeconds": captured["positionSeconds"]}
            self._publish(state=PAUSED, positionSeconds=captured["positionSeconds"])
        else:
            self._expect_playing = False
            self._resume_point = None
            self._publish(state=STOPPED, positionSeconds=0.0, durationSeconds=0.0)
        return result

    async def reload_audio_player_preference(self) -> dict:
        """Re-read the stored preference; switch (no resume) only if it changed."""
        kind = self.switcher.preference_changed()
        if kind is None:
            return {"switched": False, "backend": self.switcher.active_kind}
        logger.info("Audio player preference changed to %s", kind)
        return await self.switch_audio_player(kind, persist=False)

    # ── Status monitor ──

    async def poll_once(self) -> None:
        """Refresh the snapshot from the player; detect a natural track end."""
        if self.busy or self._lock.locked() or self._player is None:
            return
        status = await self._player.get_status()
        if self.busy or self._lock.locked():
            return
        if status.degraded:
            self._publish(degraded=True)
            return
        previous = self._status["state"]
        if self._resume_point is not None and status.state == STOPPED:
            # player was stopped by a switch; the queue is paused at the resume point
            self._publish(state=PAUSED, positionSeconds=self._resume_point["positionSeconds"],
                          degraded=False)
            return
        self._publish(state=status.state, positionSeconds=status.position_seconds,
                      durationSeconds=status.duration_seconds, degraded=False)
        if self._expect_playing and previous == PLAYING and status.state == STOPPED:
            logger.info("Track ended")
            try:
                await self.track_finished()
            except JukeboxError as e:
                logger.warning("Auto-advance failed: %s", e)

    async def _monitor_loop(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except JukeboxError as e:
                logger.warning("Status monitor: %s", e)

    # ── Lifecycle ──

    async def start(self, *, monitor: bool = True) -> None:
        player = await self.switcher.start()
        if self.queue.active_backend != player.kind:
            self.queue.set_active_backend(player.kind)
        await self._apply_stored_volume()
        status = await player.get_status()
        self._publish(degraded=status.degraded)
        if monitor and self.poll_interval > 0:
            self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info("Playback controller ready (%s, %d queued)",
                    player.name, len(self.queue))

    async def shutdown(self) -> None:
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        await self.switcher.close()
        logger.info("Playback controller stopped")
