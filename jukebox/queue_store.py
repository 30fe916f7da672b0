# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
QueueStore — the live play queue and its persisted snapshot.

Holds the ordered entries, the current position, repeat/shuffle mode, volume
and the active backend kind.  Every mutation writes the whole snapshot to
``queue-state.json`` before returning, so a restart picks up where playback
left off.  Snapshots older than ``max_age_hours`` are not restored (the
settings in them still are).

Entries are identified by ``id``, never by path: the same file may be queued
twice.  With repeat off, an entry is dropped once advance() moves past it;
repeat one/all keep every entry so the queue can come round again.  Dropped
entries stay in the bounded play history so previous() can bring them back.

Shuffle keeps an explicit set of visited indices.  It is reset by clear() and
whenever shuffle is switched on, and remapped when entries move.
"""

import logging
import os
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .lib.errors import InvalidArgumentError, NotFoundError
from .lib.store import JsonDocument

logger = logging.getLogger(__name__)

REPEAT_OFF = "off"
REPEAT_ONE = "one"
REPEAT_ALL = "all"
REPEAT_MODES = (REPEAT_OFF, REPEAT_ONE, REPEAT_ALL)

MAX_AGE_HOURS = 24
HISTORY_SIZE = 100


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class QueueEntry:
    track_path: str
    title: str = ""
    id: str = field(default_factory=new_id)
    added_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        if not self.title:
            self.title = os.path.splitext(os.path.basename(self.track_path))[0]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trackPath": self.track_path,
            "title": self.title,
            "addedAt": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueEntry":
        kwargs = {"track_path": data["trackPath"], "title": data.get("title", "")}
        if data.get("id"):
            kwargs["id"] = data["id"]
        if data.get("addedAt"):
            kwargs["added_at"] = data["addedAt"]
        return cls(**kwargs)


class QueueStore:

    def __init__(self, document: JsonDocument, *, max_age_hours: float = MAX_AGE_HOURS,
                 rng: random.Random | None = None, clock=time.time):
        self._doc = document
        self.max_age_hours = max_age_hours
        self._rng = rng or random.Random()
        self._clock = clock

        self._entries: list[QueueEntry] = []
        self._current: int | None = None
        self.repeat_mode = REPEAT_OFF
        self.shuffle = False
        self.volume = 1.0
        self.muted = False
        self.active_backend: str | None = None
        self._visited: set[int] = set()
        self._history: list[QueueEntry] = []     # previously current, newest last

    # ── Read access ──

    @property
    def entries(self) -> list[QueueEntry]:
        return list(self._entries)

    @property
    def current_index(self) -> int | None:
        return self._current

    @property
    def current_entry(self) -> QueueEntry | None:
        if self._current is None:
            return None
        return self._entries[self._current]

    @property
    def visited(self) -> frozenset[int]:
        return frozenset(self._visited)

    def __len__(self):
        return len(self._entries)

    def snapshot(self) -> dict:
        return {
            "entries": [e.to_dict() for e in self._entries],
            "currentIndex": self._current,
            "repeatMode": self.repeat_mode,
            "shuffle": self.shuffle,
            "volume": self.volume,
            "muted": self.muted,
            "activeBackend": self.active_backend,
            "timestamp": self._clock(),
        }

    # ── Persistence ──

    def load(self) -> bool:
        """Restore the persisted snapshot.  Returns True if entries were restored."""
        data = self._doc.load(default=None)
        if not isinstance(data, dict):
            return False

        if data.get("repeatMode") in REPEAT_MODES:
            self.repeat_mode = data["repeatMode"]
        self.shuffle = bool(data.get("shuffle", False))
        try:
            self.volume = max(0.0, min(1.0, float(data.get("volume", 1.0))))
        except (TypeError, ValueError):
            self.volume = 1.0
        self.muted = bool(data.get("muted", False))
        self.active_backend = data.get("activeBackend")

        try:
            saved_at = float(data.get("timestamp") or 0)
        except (TypeError, ValueError):
            logger.warning("Queue snapshot has a bad timestamp: %r", data.get("timestamp"))
            saved_at = 0.0
        age = self._clock() - saved_at
        if age > self.max_age_hours * 3600:
            logger.info("Queue snapshot is %.1fh old — starting with an empty queue",
                        age / 3600)
            return False

        entries = []
        for raw in data.get("entries") or []:
            try:
                entries.append(QueueEntry.from_dict(raw))
            except (KeyError, TypeError):
                logger.warning("Skipping malformed queue entry: %r", raw)
        self._entries = entries
        current = data.get("currentIndex")
        self._current = current if isinstance(current, int) and 0 <= current < len(entries) else None
        self._visited = {self._current} if self.shuffle and self._current is not None else set()
        logger.info("Queue restored: %d entries, current=%s", len(entries), self._current)
        return True

    def _save(self):
        self._doc.save(self.snapshot())

    # ── Helpers ──

    def _check_index(self, index: int):
        if not isinstance(index, int) or not 0 <= index < len(self._entries):
            raise NotFoundError(f"no queue entry at position {index}")

    def _visited_ids(self) -> set[str]:
        return {self._entries[i].id for i in self._visited if i < len(self._entries)}

    def _remap_visited(self, ids: set[str]):
        self._visited = {i for i, e in enumerate(self._entries) if e.id in ids}

    def _remember(self, entry: QueueEntry):
        self._history.append(entry)
        del self._history[:-HISTORY_SIZE]

    def _drop_played(self, index: int):
        """Remove the entry at *index* after it has played (repeat off)."""
        ids = self._visited_ids()
        played = self._entries.pop(index)
        ids.discard(played.id)
        self._remap_visited(ids)
        self._remember(played)
        self._current = None

    def _set_current(self, index: int | None):
        if self._current is not None and index != self._current:
            self._remember(self._entries[self._current])
        self._current = index
        if self.shuffle and index is not None:
            self._visited.add(index)

    def _linear_next(self, cur: int | None) -> int | None:
        if cur is None:
            return 0
        if cur + 1 < len(self._entries):
            return cur + 1
        if self.repeat_mode == REPEAT_ALL:
            self._visited = set()    # wrap starts a new shuffle pass
            return 0
        return None

    # ── Mutations ──

    def append(self, entry: QueueEntry) -> int:
        self._entries.append(entry)
        self._save()
        return len(self._entries) - 1

    def insert(self, index: int, entry: QueueEntry) -> int:
        index = max(0, min(index, len(self._entries)))
        ids = self._visited_ids()
        self._entries.insert(index, entry)
        self._remap_visited(ids)
        if self._current is not None and index <= self._current:
            self._current += 1
        self._save()
        return index

    def remove_at(self, index: int) -> QueueEntry:
        """Remove one entry.  Removing the current entry makes the following
        entry current (or none when it was the last)."""
        self._check_index(index)
        ids = self._visited_ids()
        removed = self._entries.pop(index)
        ids.discard(removed.id)
        self._remap_visited(ids)
        self._history = [e for e in self._history if e.id != removed.id]
        if self._current is not None:
            if index < self._current:
                self._current -= 1
            elif index == self._current and self._current >= len(self._entries):
                self._current = None
        self._save()
        return removed

    def move_to(self, from_index: int, to_index: int) -> None:
        self._check_index(from_index)
        self._check_index(to_index)
        if from_index == to_index:
            return
        current = self.current_entry
        ids = self._visited_ids()
        entry = self._entries.pop(from_index)
        self._entries.insert(to_index, entry)
        self._remap_visited(ids)
        if current is not None:
            self._current = self._entries.index(current)
        self._save()

    def set_current_index(self, index: int | None) -> None:
        if index is not None:
            self._check_index(index)
        self._set_current(index)
        self._save()

    def advance(self, is_skip: bool = False) -> int | None:
        """Move to the next entry per repeat/shuffle and return its index.

        repeat=one keeps the index unless *is_skip*; repeat=all wraps to the
        start; repeat=off drops the entry it moves past and runs off the end
        (index becomes None).
        """
        cur = self._current
        if not self._entries:
            nxt = None
        elif self.repeat_mode == REPEAT_ONE and not is_skip and cur is not None:
            nxt = cur
        elif self.shuffle:
            if cur is not None:
                self._visited.add(cur)
            unvisited = [i for i in range(len(self._entries)) if i not in self._visited]
            if unvisited:
                nxt = self._rng.choice(unvisited)
            else:
                nxt = self._linear_next(cur)
        else:
            nxt = self._linear_next(cur)
        if self.repeat_mode == REPEAT_OFF and cur is not None and nxt != cur:
            self._drop_played(cur)
            if nxt is not None and nxt > cur:
                nxt -= 1
        self._set_current(nxt)
        self._save()
        return nxt

    def previous(self) -> int | None:
        """Step back through the play history, else to the linear predecessor.

        An entry that was dropped after playing is put back in front of the
        current one.
        """
        positions = {e.id: i for i, e in enumerate(self._entries)}
        prev = None
        while self._history:
            entry = self._history.pop()
            idx = positions.get(entry.id)
            if idx is None:
                prev = len(self._entries) if self._current is None else self._current
                ids = self._visited_ids()
                self._entries.insert(prev, entry)
                self._remap_visited(ids)
                break
            if idx != self._current:
                prev = idx
                break
        if prev is None:
            if not self._entries:
                prev = None
            elif self._current is None:
                prev = len(self._entries) - 1
            else:
                prev = max(0, self._current - 1)
        # stepping back must not land the outgoing entry in history
        self._current = prev
        if self.shuffle and prev is not None:
            self._visited.add(prev)
        self._save()
        return prev

    def clear(self) -> None:
        self._entries = []
        self._current = None
        self._visited = set()
        self._history = []
        self._save()

    def set_repeat_mode(self, mode: str) -> None:
        if mode not in REPEAT_MODES:
            raise InvalidArgumentError(f"repeat mode must be one of {REPEAT_MODES}, got {mode!r}")
        self.repeat_mode = mode
        self._save()

    def set_shuffle(self, enabled: bool) -> None:
        if enabled and not self.shuffle:
            self._visited = {self._current} if self._current is not None else set()
        self.shuffle = bool(enabled)
        self._save()

    def set_volume(self, volume: float) -> None:
        self.volume = max(0.0, min(1.0, float(volume)))
        self._save()

    def set_muted(self, muted: bool) -> None:
        self.muted = bool(muted)
        self._save()

    def set_active_backend(self, kind: str) -> None:
        self.active_backend = kind
        self._save()
