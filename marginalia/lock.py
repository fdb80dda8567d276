"""PID lock file so that two runs never write the same notes at once.

The lock file holds the PID of the run that owns it. A lock left behind by a
run that died (or one that does not hold a PID at all) is taken over.
"""

import logging
import os
from typing import Optional

from marginalia import config

log = logging.getLogger(__name__)

LOCK_PATH = config.CONFIG_DIR / "marginalia.lock"


def _claim() -> bool:
    """Create the lock file holding our PID. False if it already exists."""
    try:
        with LOCK_PATH.open("x") as f:
            f.write(str(os.getpid()))
    except FileExistsError:
        return False
    return True


def _holder() -> Optional[int]:
    """PID recorded in the lock file, None when unreadable or gone."""
    try:
        return int(LOCK_PATH.read_text().strip())
    except (ValueError, OSError):
        return None


def _running(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # signal 0: existence check only
    except PermissionError:
        # Alive, owned by another user
        return True
    except OSError:
        return False
    return True


def acquire_lock() -> bool:
    """Take the run lock. Returns False when another live run holds it."""
    if _claim():
        return True

    pid = _holder()
    if pid is not None and _running(pid):
        log.debug("Lock held by running process %d", pid)
        return False

    log.warning("Taking over stale lock %s (holder %s is gone)", LOCK_PATH, pid)
    release_lock()
    return _claim()


def release_lock() -> None:
    LOCK_PATH.unlink(missing_ok=True)
