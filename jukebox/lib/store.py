"""
Atomic whole-document JSON storage.

Queue snapshots, playlists and settings are each one JSON file that is read
and replaced as a whole.  Writes go to a temp file in the same directory and
are renamed over the target, so a reader never sees a half-written document
and a crash mid-write leaves the previous version intact.

Usage:
    doc = JsonDocument(data_path("playlists.json"))
    playlists = doc.load(default=[])
    doc.save(playlists)
"""

import copy
import json
import logging
import os
import tempfile

logger = logging.getLogger(__name__)


class JsonDocument:
    """One JSON file with atomic replace semantics."""

    def __init__(self, path: str):
        self.path = path

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self, default=None):
        """Return the parsed document, or a copy of *default* if missing/corrupt."""
        try:
            with open(self.path) as f:
                return json.load(f)
        except FileNotFoundError:
            return copy.deepcopy(default)
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s — using default", self.path, e)
            return copy.deepcopy(default)

    def save(self, data) -> str:
        """Atomically replace the document on disk. Returns the path written."""
        d = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(d, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except Exception:
            # Clean up temp file on failure
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
        logger.debug("Saved %s", self.path)
        return self.path

    def size(self) -> int:
        try:
            return os.path.getsize(self.path)
        except OSError:
            return 0
