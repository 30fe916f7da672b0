# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
MPD adapter — drives the Music Player Daemon over its TCP line protocol.

Protocol (port 6600):
  server greets with        OK MPD <version>
  client sends one line     command "arg" "arg"\\n
  server answers            key: value lines, then OK
                         or ACK [error@list_num] {command} message

Commands used: password, clear, add, play, pause 0|1, stop, seekcur,
setvol, status.

One connection is kept open.  Request/response pairs are serialized with a
lock so the status monitor never interleaves with a command.  A transport
error or timeout drops the connection; the next request reconnects.
"""

import asyncio
import logging
import os

from ..lib.errors import CommandTimeout, PlaybackError, PlayerConnectionError
from .base import (
    PAUSED, PLAYING, STATUS_TIMEOUT, STOPPED,
    PlaybackStatus, PlayerAdapter, check_track_file, clamp_volume,
)

logger = logging.getLogger(__name__)

MPD_PORT = 6600
REQUEST_TIMEOUT = 4.0
GREETING = "OK MPD "


class MpdAck(PlaybackError):
    """MPD answered a command with ACK."""

    def __init__(self, line: str):
        super().__init__(line[4:] if line.startswith("ACK ") else line)
        self.line = line


def _quote(arg) -> str:
    text = str(arg).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def _float(fields: dict, key: str) -> float:
    try:
        return float(fields.get(key, 0))
    except ValueError:
        return 0.0


class MpdPlayer(PlayerAdapter):
    """Daemon-player adapter over MPD's line protocol."""

    kind = "mpd"
    name = "MPD"

    def __init__(self, host: str = "localhost", port: int = MPD_PORT, password: str = "",
                 music_dir: str | None = None,
                 *, request_timeout: float = REQUEST_TIMEOUT,
                 status_timeout: float = STATUS_TIMEOUT):
        super().__init__(status_timeout)
        self.host = host
        self.port = port
        self.password = password
        self.music_dir = os.path.abspath(music_dir) if music_dir else None
        self.request_timeout = request_timeout
        self.server_version: str | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._io_lock = asyncio.Lock()

    # ── Connection ──

    async def _open(self):
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.request_timeout)
            greeting = await asyncio.wait_for(self._reader.readline(), self.request_timeout)
        except asyncio.TimeoutError:
            self._drop_connection()
            raise PlayerConnectionError(
                f"MPD at {self.host}:{self.port} did not answer within "
                f"{self.request_timeout}s") from None
        except OSError as e:
            self._drop_connection()
            raise PlayerConnectionError(f"MPD unreachable at {self.host}:{self.port}: {e}") from e

        line = greeting.decode("utf-8", errors="replace").rstrip("\n")
        if not line.startswith(GREETING):
            self._drop_connection()
            raise PlayerConnectionError(f"Unexpected MPD greeting: {line!r}")
        self.server_version = line[len(GREETING):]

        if self.password:
            try:
                await asyncio.wait_for(self._exchange("password", self.password),
                                       self.request_timeout)
            except MpdAck as e:
                self._drop_connection()
                raise PlayerConnectionError(f"MPD rejected the password: {e}") from e
            except asyncio.TimeoutError:
                self._drop_connection()
                raise PlayerConnectionError(
                    f"MPD at {self.host}:{self.port} did not answer the password "
                    f"within {self.request_timeout}s") from None
            except OSError as e:
                self._drop_connection()
                raise PlayerConnectionError(f"MPD connection lost during login: {e}") from e
            except asyncio.CancelledError:
                self._drop_connection()
                raise
        logger.debug("MPD connection open (%s:%d, protocol %s)",
                     self.host, self.port, self.server_version)

    def _drop_connection(self):
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None

    async def _exchange(self, command: str, *args) -> dict[str, str]:
        """Send one command line and read the reply up to OK / ACK."""
        line = command + "".join(" " + _quote(a) for a in args) + "\n"
        self._writer.write(line.encode("utf-8"))
        await self._writer.drain()
        fields: dict[str, str] = {}
        while True:
            raw = await self._reader.readline()
            if not raw:
                raise ConnectionResetError("MPD closed the connection")
            text = raw.decode("utf-8", errors="replace").rstrip("\n")
            if text == "OK":
                return fields
            if text.startswith("ACK "):
                raise MpdAck(text)
            key, sep, value = text.partition(": ")
            if sep:
                fields[key] = value

    async def _command(self, command: str, *args) -> dict[str, str]:
        async with self._io_lock:
            if self._writer is None:
                await self._open()
            try:
                return await asyncio.wait_for(self._exchange(command, *args),
                                              self.request_timeout)
            except asyncio.TimeoutError:
                self._drop_connection()
                raise CommandTimeout(
                    f"MPD did not answer '{command}' within {self.request_timeout}s") from None
            except OSError as e:
                self._drop_connection()
                raise PlayerConnectionError(f"MPD connection lost during '{command}': {e}") from e
            except asyncio.CancelledError:
                # Reply may be half read — the stream can't be reused.
                self._drop_connection()
                raise

    def _to_uri(self, track_path: str) -> str:
        """Paths inside MPD's music directory are sent relative to it."""
        if self.music_dir and os.path.isabs(track_path):
            full = os.path.abspath(track_path)
            if full == self.music_dir or full.startswith(self.music_dir + os.sep):
                return os.path.relpath(full, self.music_dir).replace(os.sep, "/")
            return "file://" + full
        return track_path

    # ── PlayerAdapter methods ──

    async def connect(self) -> None:
        async with self._io_lock:
            self._drop_connection()
            await self._open()
        logger.info("Connected to MPD %s at %s:%d", self.server_version, self.host, self.port)

    async def play(self, track_path: str) -> None:
        check_track_file(track_path)
        uri = self._to_uri(track_path)
        await self._command("clear")
        try:
            await self._command("add", uri)
            await self._command("play")
        except MpdAck as e:
            raise PlaybackError(f"MPD rejected {uri}: {e}") from e
        fields = await self._command("status")
        if "error" in fields:
            raise PlaybackError(f"MPD could not play {uri}: {fields['error']}")
        logger.info("Playing %s", uri)

    async def pause(self) -> None:
        await self._command("pause", 1)
        logger.info("Paused")

    async def resume(self) -> None:
        await self._command("pause", 0)
        logger.info("Resumed")

    async def stop(self) -> None:
        await self._command("stop")
        logger.info("Stopped")

    async def seek(self, seconds: float) -> None:
        await self._command("seekcur", f"{max(0.0, seconds):.3f}")
        logger.info("Seek to %.1fs", max(0.0, seconds))

    async def set_volume(self, volume: float) -> None:
        level = round(clamp_volume(volume) * 100)
        await self._command("setvol", level)
        logger.info("-> MPD volume: %d%%", level)

    async def _poll_status(self) -> PlaybackStatus:
        fields = await self._command("status")
        raw_state = fields.get("state", "stop")
        if raw_state == "play":
            state = PLAYING
        elif raw_state == "pause":
            state = PAUSED
        else:
            state = STOPPED
        duration = _float(fields, "duration")
        if not duration and ":" in fields.get("time", ""):
            # pre-0.20 servers only report "time: elapsed:total"
            duration = _float({"t": fields["time"].split(":", 1)[1]}, "t")
        volume = None
        try:
            raw_volume = int(fields.get("volume", -1))
        except ValueError:
            raw_volume = -1
        if raw_volume >= 0:
            volume = clamp_volume(raw_volume / 100)
        return PlaybackStatus(
            state=state,
            position_seconds=_float(fields, "elapsed"),
            duration_seconds=duration,
            volume=volume,
        )

    async def close(self) -> None:
        async with self._io_lock:
            writer = self._writer
            self._drop_connection()
            if writer is not None:
                try:
                    await writer.wait_closed()
                except OSError:
                    pass
