#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import json
import logging
import os
from typing import Optional

import psutil
from lockfile.pidlockfile import PIDLockFile


def pid_is_running(pid: Optional[int]) -> bool:
    """Best-effort process liveness check.
    Returns True on AccessDenied to avoid false negatives for foreign processes.
    """
    if not pid:
        return False
    try:
        return psutil.pid_exists(pid) and psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def process_create_time(pid: Optional[int]) -> Optional[float]:
    if not pid:
        return None
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


def marker_owner_alive(state: dict) -> bool:
    """Whether the process that wrote a marker state is still running.
    A live PID whose start time differs from the recorded one was reused
    by an unrelated process (typically after a reboot).
    """
    pid = state.get("pid")
    if not pid_is_running(pid):
        return False
    recorded = state.get("pid_create_time")
    if recorded is None:
        return True
    current = process_create_time(pid)
    if current is None:
        return True
    return abs(current - recorded) < 0.01


class RecoveryMarker:
    """JSON marker recording that a hosts backup is live and where it is stored.

    Written before the hosts file is mutated and removed only after the
    original content has been written back, so an unclean shutdown always
    leaves enough behind to restore the file.
    """

    def __init__(self, path: str):
        self.path = path

    def write(self, state: dict) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def read(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            logging.error(f"Recovery marker {self.path} is unreadable: {e}")
            return {}

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def clear(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.path)

    def owner_alive(self) -> bool:
        return marker_owner_alive(self.read())


def session_pidfile(path: str) -> PIDLockFile:
    return PIDLockFile(path, timeout=0)


def read_session_pid(path: str) -> Optional[int]:
    """PID of the running session, or None (stale lock files are broken)"""
    pidfile = session_pidfile(path)
    pid = pidfile.read_pid()
    if pid is None:
        return None
    if pid_is_running(pid):
        return pid
    logging.info(f"Removing stale PID file for dead process {pid}")
    with contextlib.suppress(OSError):
        pidfile.break_lock()
    return None
