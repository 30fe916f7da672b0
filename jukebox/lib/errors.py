# Jukebox
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Failure kinds raised by the jukebox core.

Every error the core surfaces to a caller is one of these.  Each carries a
short ``kind`` tag so the route layer can map it to a response without
inspecting messages:

    try:
        await controller.skip_next()
    except JukeboxError as e:
        return e.to_dict()   # {"status": "error", "kind": "playback", ...}
"""


class JukeboxError(Exception):
    """Base class for all classified jukebox failures."""

    kind = "error"

    def to_dict(self) -> dict:
        return {"status": "error", "kind": self.kind, "message": str(self)}


class PlayerConnectionError(JukeboxError):
    """The external player process is unreachable."""

    kind = "connection"


class PlaybackError(JukeboxError):
    """The player rejected the track (missing file, unsupported format)."""

    kind = "playback"


class BusyError(JukeboxError):
    """A conflicting operation is already in flight."""

    kind = "busy"


class ForbiddenError(JukeboxError):
    """The access policy denies the action."""

    kind = "forbidden"


class NotFoundError(JukeboxError):
    """Unknown playlist, track or queue position."""

    kind = "not_found"


class CommandTimeout(JukeboxError):
    """A bounded wait was exceeded."""

    kind = "timeout"


class InvalidArgumentError(JukeboxError, ValueError):
    """A caller-supplied value is out of range (empty name, unknown mode)."""

    kind = "invalid"
