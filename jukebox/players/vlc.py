# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
VLC adapter — drives a VLC instance started with ``--intf http``.

VLC HTTP interface (XML responses, HTTP basic auth with an empty user):
  GET /requests/status.xml                          — current state
  GET /requests/status.xml?command=in_play&input=U  — replace + play
  GET /requests/status.xml?command=pl_forcepause    — pause
  GET /requests/status.xml?command=pl_forceresume   — resume
  GET /requests/status.xml?command=pl_stop          — stop
  GET /requests/status.xml?command=pl_empty         — clear playlist
  GET /requests/status.xml?command=seek&val=N       — seek to N seconds
  GET /requests/status.xml?command=volume&val=N     — volume, 256 = 100%
"""

import asyncio
import logging
import os
import pathlib
from xml.etree import ElementTree

import aiohttp

from ..lib.errors import CommandTimeout, PlaybackError, PlayerConnectionError
from .base import (
    PAUSED, PLAYING, STATUS_TIMEOUT, STOPPED,
    PlaybackStatus, PlayerAdapter, check_track_file, clamp_volume,
)

logger = logging.getLogger(__name__)

VLC_PORT = 8080
VLC_VOLUME_MAX = 256     # VLC's 100%
REQUEST_TIMEOUT = 4.0
PLAY_CONFIRM_ATTEMPTS = 8
PLAY_CONFIRM_DELAY = 0.25


def _to_mrl(track_path: str) -> str:
    """VLC wants a URI for local files; relative paths go through untouched."""
    if os.path.isabs(track_path):
        return pathlib.Path(track_path).as_uri()
    return track_path


def _xml_text(root: ElementTree.Element, tag: str, default: str = "") -> str:
    el = root.find(tag)
    return el.text if el is not None and el.text else default


def _xml_float(root: ElementTree.Element, tag: str) -> float:
    try:
        return float(_xml_text(root, tag, "0"))
    except ValueError:
        return 0.0


class VlcPlayer(PlayerAdapter):
    """Controllable-player adapter over VLC's HTTP control interface."""

    kind = "vlc"
    name = "VLC"

    def __init__(self, host: str = "localhost", port: int = VLC_PORT, password: str = "",
                 *, request_timeout: float = REQUEST_TIMEOUT,
                 status_timeout: float = STATUS_TIMEOUT,
                 confirm_delay: float = PLAY_CONFIRM_DELAY,
                 session: aiohttp.ClientSession | None = None):
        super().__init__(status_timeout)
        self.base_url = f"http://{host}:{port}"
        self.request_timeout = request_timeout
        self.confirm_delay = confirm_delay
        self._auth = aiohttp.BasicAuth("", password)
        self._session = session
        self._owns_session = session is None

    # ── VLC HTTP helpers ──

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _vlc_get(self, command: str | None = None, **params) -> ElementTree.Element:
        """GET status.xml (optionally with a command), parse the XML reply."""
        query = {}
        if command:
            query["command"] = command
        query.update({k: str(v) for k, v in params.items()})
        label = command or "status"
        session = self._ensure_session()
        try:
            async with session.get(
                f"{self.base_url}/requests/status.xml",
                params=query,
                auth=self._auth,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as resp:
                if resp.status == 401:
                    raise PlayerConnectionError("VLC rejected the HTTP password")
                resp.raise_for_status()
                text = await resp.text()
        except asyncio.TimeoutError:
            raise CommandTimeout(
                f"VLC did not answer '{label}' within {self.request_timeout}s") from None
        except aiohttp.ClientResponseError as e:
            raise PlayerConnectionError(f"VLC returned HTTP {e.status} for '{label}'") from e
        except aiohttp.ClientError as e:
            raise PlayerConnectionError(f"VLC unreachable at {self.base_url}: {e}") from e
        try:
            return ElementTree.fromstring(text)
        except ElementTree.ParseError as e:
            raise PlayerConnectionError(f"VLC sent malformed XML for '{label}': {e}") from e

    @staticmethod
    def _parse_status(root: ElementTree.Element) -> PlaybackStatus:
        raw_state = _xml_text(root, "state", "stopped")
        if raw_state == "playing":
            state = PLAYING
        elif raw_state == "paused":
            state = PAUSED
        else:
            state = STOPPED
        volume = None
        if root.find("volume") is not None:
            volume = clamp_volume(_xml_float(root, "volume") / VLC_VOLUME_MAX)
        return PlaybackStatus(
            state=state,
            position_seconds=_xml_float(root, "time"),
            duration_seconds=_xml_float(root, "length"),
            volume=volume,
        )

    # ── PlayerAdapter methods ──

    async def connect(self) -> None:
        root = await self._vlc_get()
        logger.info("Connected to VLC %s at %s",
                    _xml_text(root, "version", "?"), self.base_url)

    async def play(self, track_path: str) -> None:
        check_track_file(track_path)
        await self._vlc_get("pl_empty")
        await self._vlc_get("in_play", input=_to_mrl(track_path))
        # VLC answers in_play before it has opened the file; a track it can't
        # decode just drops back to stopped.
        for _ in range(PLAY_CONFIRM_ATTEMPTS):
            status = self._parse_status(await self._vlc_get())
            if status.state in (PLAYING, PAUSED):
                self._last_status = status
                logger.info("Playing %s", track_path)
                return
            await asyncio.sleep(self.confirm_delay)
        raise PlaybackError(f"VLC did not start {os.path.basename(track_path)}")

    async def pause(self) -> None:
        await self._vlc_get("pl_forcepause")
        logger.info("Paused")

    async def resume(self) -> None:
        await self._vlc_get("pl_forceresume")
        logger.info("Resumed")

    async def stop(self) -> None:
        await self._vlc_get("pl_stop")
        await self._vlc_get("pl_empty")
        logger.info("Stopped")

    async def seek(self, seconds: float) -> None:
        await self._vlc_get("seek", val=int(max(0, seconds)))
        logger.info("Seek to %ds", int(max(0, seconds)))

    async def set_volume(self, volume: float) -> None:
        level = round(clamp_volume(volume) * VLC_VOLUME_MAX)
        await self._vlc_get("volume", val=level)
        logger.info("-> VLC volume: %d/%d", level, VLC_VOLUME_MAX)

    async def _poll_status(self) -> PlaybackStatus:
        return self._parse_status(await self._vlc_get())

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None
