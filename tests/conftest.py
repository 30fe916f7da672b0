"""Shared fixtures: a scripted in-memory player and wired-up core objects."""

from __future__ import annotations

import asyncio
import random

import pytest

from jukebox.controller import PlaybackController
from jukebox.lib.errors import PlaybackError, PlayerConnectionError
from jukebox.lib.settings import SettingsStore
from jukebox.lib.store import JsonDocument
from jukebox.players.base import PAUSED, PLAYING, STOPPED, PlaybackStatus, PlayerAdapter
from jukebox.queue_store import QueueStore
from jukebox.switcher import BackendSwitcher


class FakePlayer(PlayerAdapter):
    """Records every call; plays anything not in ``failing``."""

    def __init__(self, kind="vlc", *, connect_failures=0, failing=(), delay=0.0):
        super().__init__(status_timeout=1.0)
        self.kind = kind
        self.name = kind.upper()
        self.connect_failures = connect_failures
        self.failing = set(failing)
        self.delay = delay
        self.calls: list[tuple] = []
        self.state = STOPPED
        self.position = 0.0
        self.volume = None
        self.track = None
        self.connected = False
        self.closed = False

    async def _step(self, *call):
        self.calls.append(call)
        await asyncio.sleep(self.delay)

    async def connect(self):
        await self._step("connect")
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise PlayerConnectionError(f"{self.name} is down")
        self.connected = True

    async def play(self, track_path):
        await self._step("play", track_path)
        if track_path in self.failing:
            self.state = STOPPED
            raise PlaybackError(f"cannot decode {track_path}")
        self.track = track_path
        self.state = PLAYING
        self.position = 0.0

    async def pause(self):
        await self._step("pause")
        self.state = PAUSED

    async def resume(self):
        await self._step("resume")
        self.state = PLAYING

    async def stop(self):
        await self._step("stop")
        self.state = STOPPED
        self.track = None

    async def seek(self, seconds):
        await self._step("seek", seconds)
        self.position = seconds

    async def set_volume(self, volume):
        await self._step("set_volume", volume)
        self.volume = volume

    async def _poll_status(self):
        if not self.connected:
            raise PlayerConnectionError(f"{self.name} is down")
        return PlaybackStatus(state=self.state, position_seconds=self.position,
                              volume=self.volume)

    async def close(self):
        self.closed = True

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def plays(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "play"]


class PlayerFactory:
    """Stands in for create_player(); per-kind options apply to new players."""

    def __init__(self):
        self.options: dict[str, dict] = {}
        self.created: list[FakePlayer] = []

    def __call__(self, kind):
        player = FakePlayer(kind, **self.options.get(kind, {}))
        self.created.append(player)
        return player

    def last(self, kind) -> FakePlayer:
        return [p for p in self.created if p.kind == kind][-1]


@pytest.fixture
def settings_doc(tmp_path):
    return JsonDocument(str(tmp_path / "settings.json"))


@pytest.fixture
def settings(settings_doc):
    return SettingsStore(settings_doc)


@pytest.fixture
def queue_doc(tmp_path):
    return JsonDocument(str(tmp_path / "queue-state.json"))


@pytest.fixture
def queue(queue_doc):
    return QueueStore(queue_doc, rng=random.Random(1234))


@pytest.fixture
def factory():
    return PlayerFactory()


@pytest.fixture
def switcher(settings, factory):
    return BackendSwitcher(settings, factory, connect_backoff=0)


@pytest.fixture
async def controller(queue, switcher, settings):
    ctrl = PlaybackController(queue, switcher, settings,
                              command_timeout=2.0, poll_interval=0)
    await ctrl.start(monitor=False)
    yield ctrl
    await ctrl.shutdown()
