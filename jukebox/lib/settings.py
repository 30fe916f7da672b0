"""
Settings document shared with the web UI (``settings.json``).

The UI layer owns this file; the core only reads it, except for the backend
preference which the switcher writes back after a successful switch.  Two
things are taken from it:

  audioPlayer   "vlc" | "mpd" — which backend is live after a restart
  partyMode     {"enabled": bool, "allowEditPlaylists": bool, ...}

Missing party-mode permissions default to allowed, and a disabled party mode
allows everything.
"""

import logging

from .config import BACKEND_KINDS
from .errors import ForbiddenError
from .store import JsonDocument

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "vlc"

DEFAULT_PARTY_MODE = {
    "enabled": False,
    "allowPlay": True,
    "allowStop": True,
    "allowNext": True,
    "allowPrevious": True,
    "allowCreatePlaylists": True,
    "allowEditPlaylists": True,
    "allowDeletePlaylists": True,
    "allowAddToQueue": True,
    "allowRemoveFromQueue": True,
    "allowSkipInQueue": True,
}

# action name → party-mode permission key
ACTION_PERMISSIONS = {
    "play": "allowPlay",
    "stop": "allowStop",
    "next": "allowNext",
    "previous": "allowPrevious",
    "create": "allowCreatePlaylists",
    "edit": "allowEditPlaylists",
    "delete": "allowDeletePlaylists",
    "add_to_queue": "allowAddToQueue",
    "remove_from_queue": "allowRemoveFromQueue",
    "skip_in_queue": "allowSkipInQueue",
}


class AccessPolicy:
    """Read-only view of the party-mode permissions."""

    def __init__(self, party_mode: dict | None = None):
        self._party_mode = {**DEFAULT_PARTY_MODE, **(party_mode or {})}

    @property
    def party_mode_enabled(self) -> bool:
        return bool(self._party_mode["enabled"])

    @property
    def allow_edit_playlists(self) -> bool:
        return bool(self._party_mode["allowEditPlaylists"])

    def allows(self, action: str) -> bool:
        if not self.party_mode_enabled:
            return True
        key = ACTION_PERMISSIONS.get(action)
        if key is None:
            return True
        return bool(self._party_mode.get(key, True))

    def check(self, action: str) -> None:
        """Raise ForbiddenError if *action* is not allowed."""
        if not self.allows(action):
            logger.info("Party mode denies '%s'", action)
            raise ForbiddenError(f"'{action}' is restricted in party mode")

    def to_dict(self) -> dict:
        return dict(self._party_mode)


class SettingsStore:
    """Reads AccessPolicy and BackendPreference from the settings document."""

    def __init__(self, document: JsonDocument):
        self._doc = document

    def load(self) -> dict:
        data = self._doc.load(default={})
        if not isinstance(data, dict):
            logger.warning("Settings %s is not an object — ignoring", self._doc.path)
            return {}
        return data

    def access_policy(self) -> AccessPolicy:
        party_mode = self.load().get("partyMode")
        return AccessPolicy(party_mode if isinstance(party_mode, dict) else None)

    def backend_preference(self) -> str:
        kind = self.load().get("audioPlayer")
        if kind in BACKEND_KINDS:
            return kind
        if kind is not None:
            logger.warning("Invalid audioPlayer '%s' in settings — using %s",
                           kind, DEFAULT_BACKEND)
        return DEFAULT_BACKEND

    def save_backend_preference(self, kind: str) -> None:
        if kind not in BACKEND_KINDS:
            raise ValueError(f"unknown backend kind: {kind}")
        data = self.load()
        if data.get("audioPlayer") == kind:
            return
        data["audioPlayer"] = kind
        self._doc.save(data)
        logger.info("Backend preference saved: %s", kind)
