"""Host process helpers: stale profile eviction and port allocation."""

from __future__ import annotations

import logging
import os
import socket
from pathlib import Path
from typing import List, Optional, Sequence

import psutil

logger = logging.getLogger(__name__)

# Files Chromium leaves in a profile directory to claim it for one process.
PROFILE_LOCK_FILES: tuple[str, ...] = ("SingletonLock", "SingletonSocket", "SingletonCookie")

_USER_DATA_DIR_FLAG = "--user-data-dir="


def _resolve(path: "str | Path") -> Optional[Path]:
    try:
        return Path(path).expanduser().resolve()
    except (OSError, RuntimeError):
        return None


def uses_profile(cmdline: Optional[Sequence[str]], profile_dir: "str | Path") -> bool:
    """Return True when ``cmdline`` binds a process to ``profile_dir``."""
    target = _resolve(profile_dir)
    if target is None:
        return False
    for arg in cmdline or ():
        if not arg or not arg.startswith(_USER_DATA_DIR_FLAG):
            continue
        value = arg.split("=", 1)[1].strip('"')
        if value and _resolve(value) == target:
            return True
    return False


def find_profile_processes(profile_dir: "str | Path") -> List[psutil.Process]:
    """List processes (other than ourselves) running against ``profile_dir``."""
    own_pid = os.getpid()
    found: List[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            if uses_profile(proc.info.get("cmdline"), profile_dir):
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return found


def clear_profile_locks(profile_dir: "str | Path") -> List[Path]:
    """Remove Chromium singleton files left behind by an unclean shutdown."""
    removed: List[Path] = []
    root = Path(profile_dir)
    for name in PROFILE_LOCK_FILES:
        candidate = root / name
        # SingletonLock is a dangling symlink once its owner is gone.
        if not (candidate.is_symlink() or candidate.exists()):
            continue
        try:
            candidate.unlink()
            removed.append(candidate)
        except OSError as exc:
            logger.warning("Could not remove profile lock %s: %s", candidate, exc)
    return removed


def evict_profile_processes(profile_dir: "str | Path", *, timeout: float = 3.0) -> List[int]:
    """Kill every process bound to ``profile_dir`` and release the profile.

    Returns the pids that were signalled.  Processes that vanish or refuse
    the signal are skipped.
    """
    procs = find_profile_processes(profile_dir)
    killed: List[psutil.Process] = []
    for proc in procs:
        try:
            proc.kill()
            killed.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
            logger.debug("Could not kill pid %s: %s", proc.pid, exc)
    if killed:
        _, alive = psutil.wait_procs(killed, timeout=timeout)
        if alive:
            logger.warning(
                "Processes still holding %s after kill: %s",
                profile_dir,
                [proc.pid for proc in alive],
            )
        else:
            clear_profile_locks(profile_dir)
        logger.info("Evicted %d stale process(es) from %s", len(killed), profile_dir)
    else:
        clear_profile_locks(profile_dir)
    return [proc.pid for proc in killed]


def get_free_port() -> int:
    """Get a free local port by binding to port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


__all__ = [
    "PROFILE_LOCK_FILES",
    "clear_profile_locks",
    "evict_profile_processes",
    "find_profile_processes",
    "get_free_port",
    "uses_profile",
]
