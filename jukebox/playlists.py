# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
PlaylistManager — saved playlists in ``playlists.json``.

The document is a JSON list of playlists, rewritten as a whole on every
change.  Track positions are renumbered 0..n-1 in the same step as every
insert, removal and reorder, so the stored positions always match list order.

Every write checks party-mode permissions first and fails with
ForbiddenError before touching anything.  Writes are serialized through the
PlaybackController's command lock when one is given (``run_exclusive``),
otherwise through a private lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from .lib.errors import InvalidArgumentError, NotFoundError
from .lib.settings import SettingsStore
from .lib.store import JsonDocument
from .queue_store import new_id, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class PlaylistTrack:
    track_path: str
    position: int = 0
    id: str = field(default_factory=new_id)
    added_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trackPath": self.track_path,
            "position": self.position,
            "addedAt": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlaylistTrack":
        return cls(
            track_path=data["trackPath"],
            position=int(data.get("position", 0)),
            id=data.get("id") or new_id(),
            added_at=data.get("addedAt") or utc_now_iso(),
        )


@dataclass
class Playlist:
    name: str
    description: str = ""
    tracks: list[PlaylistTrack] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @property
    def track_count(self) -> int:
        return len(self.tracks)

    def renumber(self):
        for i, track in enumerate(self.tracks):
            track.position = i

    def touch(self):
        self.updated_at = utc_now_iso()

    def find_track(self, track_id: str) -> int:
        for i, track in enumerate(self.tracks):
            if track.id == track_id:
                return i
        raise NotFoundError(f"track {track_id} is not in playlist '{self.name}'")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tracks": [t.to_dict() for t in self.tracks],
            "trackCount": self.track_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Playlist":
        tracks = [PlaylistTrack.from_dict(t) for t in data.get("tracks") or []]
        tracks.sort(key=lambda t: t.position)
        playlist = cls(
            name=data["name"],
            description=data.get("description", ""),
            tracks=tracks,
            id=data["id"],
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or utc_now_iso(),
        )
        playlist.renumber()
        return playlist


class PlaylistManager:

    def __init__(self, document: JsonDocument, settings: SettingsStore, run_exclusive=None):
        self._doc = document
        self._settings = settings
        self._lock = asyncio.Lock()
        self._run_exclusive = run_exclusive or self._run_locked

    async def _run_locked(self, name, fn):
        async with self._lock:
            return await fn()

    # ── Document access ──

    def _load(self) -> list[Playlist]:
        data = self._doc.load(default=[])
        if not isinstance(data, list):
            logger.warning("Playlists %s is not a list — ignoring", self._doc.path)
            return []
        playlists = []
        for raw in data:
            try:
                playlists.append(Playlist.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed playlist: %r", raw)
        return playlists

    def _save(self, playlists: list[Playlist]):
        self._doc.save([p.to_dict() for p in playlists])

    @staticmethod
    def _find(playlists: list[Playlist], playlist_id: str) -> Playlist:
        for playlist in playlists:
            if playlist.id == playlist_id:
                return playlist
        raise NotFoundError(f"playlist {playlist_id} not found")

    # ── Reads ──

    def list_playlists(self) -> list[Playlist]:
        return self._load()

    def get_playlist(self, playlist_id: str) -> Playlist:
        return self._find(self._load(), playlist_id)

    # ── Writes ──

    async def _write(self, action: str, name: str, mutate):
        """Check *action*, then load → mutate → save under the command lock."""
        self._settings.access_policy().check(action)

        async def _do():
            playlists = self._load()
            result = mutate(playlists)
            self._save(playlists)
            return result

        return await self._run_exclusive(name, _do)

    async def create_playlist(self, name: str, description: str = "") -> Playlist:
        name = (name or "").strip()
        if not name:
            raise InvalidArgumentError("playlist name is required")

        def mutate(playlists):
            playlist = Playlist(name=name, description=description or "")
            playlists.append(playlist)
            logger.info("Created playlist '%s'", name)
            return playlist

        return await self._write("create", "create_playlist", mutate)

    async def delete_playlist(self, playlist_id: str) -> Playlist:
        def mutate(playlists):
            playlist = self._find(playlists, playlist_id)
            playlists.remove(playlist)
            logger.info("Deleted playlist '%s'", playlist.name)
            return playlist

        return await self._write("delete", "delete_playlist", mutate)

    async def rename_playlist(self, playlist_id: str, name: str,
                              description: str | None = None) -> Playlist:
        name = (name or "").strip()
        if not name:
            raise InvalidArgumentError("playlist name is required")

        def mutate(playlists):
            playlist = self._find(playlists, playlist_id)
            playlist.name = name
            if description is not None:
                playlist.description = description
            playlist.touch()
            return playlist

        return await self._write("edit", "rename_playlist", mutate)

    async def add_track(self, playlist_id: str, track_path: str,
                        position: int | None = None) -> PlaylistTrack:
        if not track_path:
            raise InvalidArgumentError("track path is required")

        def mutate(playlists):
            playlist = self._find(playlists, playlist_id)
            index = len(playlist.tracks) if position is None else \
                max(0, min(position, len(playlist.tracks)))
            track = PlaylistTrack(track_path=track_path)
            playlist.tracks.insert(index, track)
            playlist.renumber()
            playlist.touch()
            logger.info("Added %s to '%s' at %d", track_path, playlist.name, index)
            return track

        return await self._write("edit", "add_track", mutate)

    async def remove_track(self, playlist_id: str, track_id: str) -> PlaylistTrack:
        def mutate(playlists):
            playlist = self._find(playlists, playlist_id)
            track = playlist.tracks.pop(playlist.find_track(track_id))
            playlist.renumber()
            playlist.touch()
            logger.info("Removed %s from '%s'", track.track_path, playlist.name)
            return track

        return await self._write("edit", "remove_track", mutate)

    async def reorder(self, playlist_id: str, track_id: str, new_position: int) -> Playlist:
        def mutate(playlists):
            playlist = self._find(playlists, playlist_id)
            track = playlist.tracks.pop(playlist.find_track(track_id))
            index = max(0, min(new_position, len(playlist.tracks)))
            playlist.tracks.insert(index, track)
            playlist.renumber()
            playlist.touch()
            return playlist

        return await self._write("edit", "reorder", mutate)
