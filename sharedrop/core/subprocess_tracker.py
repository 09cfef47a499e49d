"""Process-wide registry of supervised child PIDs.

Every backend and tunnel process started by a ProcessSupervisor is recorded
here together with its role.  An ``atexit`` handler sends SIGTERM to
whatever is still registered, and the registry is mirrored to a PID file so
a later run can kill children orphaned by a crash (``reap_orphans``).
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
from pathlib import Path

logger = logging.getLogger(__name__)

_children: dict[int, str] = {}
_pid_file: Path | None = None


def set_pid_file(path: str | Path) -> None:
    """Mirror the registry to *path* (call once at startup)."""
    global _pid_file
    _pid_file = Path(path)


def track(pid: int, role: str) -> None:
    """Register a running child."""
    _children[pid] = role
    _flush()


def untrack(pid: int) -> None:
    """Forget a child that has exited or been stopped."""
    if _children.pop(pid, None) is not None:
        _flush()


def tracked() -> dict[int, str]:
    """Snapshot of ``{pid: role}`` for everything still registered."""
    return dict(_children)


def terminate_all() -> None:
    """SIGTERM every registered child (runs at interpreter exit)."""
    for pid, role in list(_children.items()):
        try:
            os.kill(pid, signal.SIGTERM)
            logger.debug("Sent SIGTERM to %s (pid %d)", role, pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Failed to signal %s (pid %d): %s", role, pid, e)
    _children.clear()
    _flush()


def reap_orphans() -> int:
    """Kill children listed in the PID file by a previous, crashed run.

    Returns how many processes were signalled.
    """
    if not _pid_file or not _pid_file.exists():
        return 0
    killed = 0
    try:
        lines = _pid_file.read_text().splitlines()
    except OSError as e:
        logger.warning("Could not read PID file %s: %s", _pid_file, e)
        return 0
    for line in lines:
        pid_text, _, role = line.strip().partition(" ")
        if not pid_text:
            continue
        try:
            pid = int(pid_text)
        except ValueError:
            continue
        if pid in _children:
            continue
        try:
            os.kill(pid, signal.SIGTERM)
            killed += 1
            logger.info("Killed orphaned %s (pid %d)", role or "child", pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Could not kill orphan pid %d: %s", pid, e)
    if killed:
        logger.info("Reaped %d orphaned child process(es)", killed)
    _flush()
    return killed


def _flush() -> None:
    if not _pid_file:
        return
    try:
        _pid_file.parent.mkdir(parents=True, exist_ok=True)
        _pid_file.write_text(
            "".join(f"{pid} {role}\n" for pid, role in _children.items())
        )
    except OSError as e:
        logger.debug("Could not write PID file %s: %s", _pid_file, e)


# SIGKILL of the supervisor cannot be caught; reap_orphans() on the next
# start covers that case.
atexit.register(terminate_all)
