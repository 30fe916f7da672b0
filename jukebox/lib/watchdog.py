"""Systemd notify + watchdog heartbeat for the jukebox service.

Sends READY=1 once the controller is up, WATCHDOG=1 at regular intervals,
and STOPPING=1 on shutdown.  Silently no-ops when NOTIFY_SOCKET is unset
(macOS / dev mode / tests).

Usage:
    from jukebox.lib.watchdog import watchdog_loop, notify_stopping
    asyncio.create_task(watchdog_loop(status_fn=controller.status_line))
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def sd_notify(msg: str) -> bool:
    """Send a notification message to the systemd notify socket."""
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
        return True
    except OSError as e:
        logger.debug("sd_notify failed: %s", e)
        return False
    finally:
        sock.close()


def notify_stopping():
    sd_notify("STOPPING=1")


async def watchdog_loop(interval: float = 20, status_fn=None):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task().

    Sends READY=1 on first invocation (requires Type=notify in the unit
    file).  If *status_fn* is given its return value is published as the
    unit's STATUS= line with each heartbeat.
    """
    sd_notify("READY=1")
    logger.info("Watchdog started (interval=%ss)", interval)
    while True:
        msg = "WATCHDOG=1"
        if status_fn is not None:
            msg += f"\nSTATUS={status_fn()}"
        sd_notify(msg)
        await asyncio.sleep(interval)
