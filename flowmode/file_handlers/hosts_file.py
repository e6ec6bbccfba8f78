#!/usr/bin/env python3
from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import errno
import logging
import os
import platform
import shutil
import tempfile
from typing import Iterable, List, Optional, Sequence

from flowmode.core.errors import (
    AcquisitionFailed,
    BackupAlreadyLive,
    BackupAlreadyReleased,
    HostsIOError,
    HostsPermissionDenied,
    ReleaseFailed,
)
from flowmode.file_handlers.state import RecoveryMarker, marker_owner_alive, process_create_time

HOSTS_START_MARK = "# flowmode start"
HOSTS_END_MARK = "# flowmode end"

WINDOWS_HOSTS = "C:\\Windows\\System32\\drivers\\etc\\hosts"
POSIX_HOSTS = "/etc/hosts"

USER_HOSTS_HEADER = (
    "# FlowMode user-level hosts file\n"
    "# This file blocks websites without requiring admin privileges\n"
    "# Note: This only works if you configure your system to use this as an additional hosts source\n\n"
)

DENIED_ERRNOS = (errno.EACCES, errno.EPERM, errno.EROFS)


def system_hosts_path() -> str:
    if platform.system() == "Windows":
        return WINDOWS_HOSTS
    return POSIX_HOSTS


def resolve_hosts_path(configured: Optional[str] = None) -> str:
    override = os.environ.get("FLOWMODE_HOSTS_FILE")
    if override:
        return override
    if configured:
        return os.path.expanduser(configured)
    return system_hosts_path()


def atomic_write(path: str, data: bytes) -> None:
    """Write via a temp file in the same directory and os.replace it over path.
    The original file mode is kept. Bind-mounted files (containers) refuse
    the rename; those are rewritten in place instead.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".flowmode.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if os.path.exists(path):
            shutil.copymode(path, tmp)
        try:
            os.replace(tmp, path)
        except OSError as e:
            if e.errno not in (errno.EBUSY, errno.EXDEV):
                raise
            logging.warning(f"{path} cannot be replaced atomically ({e.strerror}); rewriting in place")
            with open(path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.remove(tmp)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp)
        raise


def _map_os_error(e: OSError, action: str, path: str) -> Exception:
    if isinstance(e, PermissionError) or e.errno in DENIED_ERRNOS:
        return HostsPermissionDenied(f"Permission denied to {action} {path}: {e.strerror or e}")
    return HostsIOError(f"Failed to {action} {path}: {e}")


def _line_key(line: str) -> str:
    return " ".join(line.split())


def _redirect_lines(text: str, domains: Iterable[str], redirect_address: str) -> List[str]:
    present = {_line_key(line) for line in text.splitlines()}
    lines: List[str] = []
    for dom in domains:
        line = f"{redirect_address} {dom}"
        if _line_key(line) in present:
            continue
        present.add(_line_key(line))
        lines.append(line)
    return lines


def make_blocked_content(text: str, domains: Sequence[str], redirect_address: str = "127.0.0.1") -> str:
    """Original text plus a managed block with one redirect line per new domain.
    Text already redirecting every domain is returned unchanged.
    """
    lines = _redirect_lines(text, domains, redirect_address)
    if not lines:
        return text
    if text and not text.endswith("\n"):
        text += "\n"
    return text + "\n".join([HOSTS_START_MARK, *lines, HOSTS_END_MARK]) + "\n"


def strip_allowed_redirects(text: str, allowed: Iterable[str]) -> str:
    """Drop redirect lines for allowed domains inside managed blocks only"""
    allowed = set(allowed)
    kept: List[str] = []
    inside = False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped == HOSTS_START_MARK:
            inside = True
        elif stripped == HOSTS_END_MARK:
            inside = False
        elif inside:
            parts = stripped.split()
            if len(parts) >= 2 and parts[1].lower() in allowed:
                continue
        kept.append(line)
    return "".join(kept)


def make_whitelist_content(text: str, deny: Sequence[str], allow: Sequence[str],
                           redirect_address: str = "127.0.0.1") -> str:
    return make_blocked_content(strip_allowed_redirects(text, allow), deny, redirect_address)


@dataclasses.dataclass
class HostsBackup:
    hosts_path: str
    backup_path: str
    content: bytes = dataclasses.field(repr=False)
    existed: bool = True
    released: bool = False


class HostsFileGuard:
    """Sole owner of hosts file mutation: acquire() applies the blocklist,
    release() puts the original bytes back."""

    def __init__(self, hosts_path: str, marker: RecoveryMarker, backup_path: str,
                 redirect_address: str = "127.0.0.1", create_missing: bool = False):
        self.hosts_path = hosts_path
        self.marker = marker
        self.backup_path = backup_path
        self.redirect_address = redirect_address
        self.create_missing = create_missing
        self._live: Optional[HostsBackup] = None

    @property
    def live_backup(self) -> Optional[HostsBackup]:
        return self._live

    def _read_original(self):
        try:
            with open(self.hosts_path, "rb") as f:
                return f.read(), True
        except FileNotFoundError as e:
            if self.create_missing:
                return b"", False
            raise HostsIOError(f"Hosts file {self.hosts_path} not found") from e
        except OSError as e:
            raise _map_os_error(e, "read", self.hosts_path) from e

    def acquire(self, domains: Sequence[str], allow: Sequence[str] = (), whitelist: bool = False,
                task: Optional[str] = None) -> HostsBackup:
        if self._live is not None:
            raise BackupAlreadyLive(f"A backup of {self.hosts_path} is already live")
        if self.marker.exists():
            # Overwriting it would replace the only copy of the real original.
            raise AcquisitionFailed(
                f"Recovery marker {self.marker.path} from an earlier session is still present; "
                f"run 'flowmode recover' before starting a new session"
            )

        original, existed = self._read_original()
        text = original.decode("utf-8", errors="surrogateescape")
        if not existed:
            text = USER_HOSTS_HEADER
        if whitelist:
            updated = make_whitelist_content(text, domains, allow, self.redirect_address)
        else:
            updated = make_blocked_content(text, domains, self.redirect_address)
        data = updated.encode("utf-8", errors="surrogateescape")

        backup = HostsBackup(self.hosts_path, self.backup_path, original, existed)
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.backup_path)), exist_ok=True)
            atomic_write(self.backup_path, original)
            self.marker.write({
                "pid": os.getpid(),
                "pid_create_time": process_create_time(os.getpid()),
                "hosts_path": os.path.abspath(self.hosts_path),
                "backup_path": os.path.abspath(self.backup_path),
                "existed": existed,
                "task": task,
                "whitelist": whitelist,
                "started_at": dt.datetime.now().astimezone().isoformat(timespec="seconds"),
            })
        except OSError as e:
            self._discard_backup_copy()
            raise HostsIOError(f"Failed to record hosts backup at {self.backup_path}: {e}") from e

        if data != original:
            try:
                atomic_write(self.hosts_path, data)
            except OSError as e:
                self._discard_backup_copy()
                raise _map_os_error(e, "write", self.hosts_path) from e

        self._live = backup
        if whitelist:
            logging.info(f"Whitelist mode: redirected {len(domains)} domains in {self.hosts_path}, "
                         f"allowing {len(allow)}")
        else:
            logging.info(f"Blocked {len(domains)} domains in {self.hosts_path}")
        return backup

    def release(self, backup: HostsBackup) -> None:
        if backup.released:
            raise BackupAlreadyReleased(f"Backup of {backup.hosts_path} was already released")
        try:
            if backup.existed:
                atomic_write(backup.hosts_path, backup.content)
            else:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(backup.hosts_path)
        except OSError as e:
            raise ReleaseFailed(
                f"Failed to restore {backup.hosts_path}: {e}. "
                f"The original content is kept at {backup.backup_path}; run 'flowmode recover'"
            ) from e
        backup.released = True
        if self._live is backup:
            self._live = None
        self._discard_backup_copy(backup.backup_path)
        logging.info(f"Restored {backup.hosts_path} from backup")

    def _discard_backup_copy(self, backup_path: Optional[str] = None) -> None:
        # Marker first: a marker must never point at a missing backup.
        self.marker.clear()
        with contextlib.suppress(FileNotFoundError):
            os.remove(backup_path or self.backup_path)

    def recover(self) -> bool:
        """Restore a hosts file left modified by a session that died uncleanly"""
        if self._live is not None:
            return False
        if not self.marker.exists():
            return False
        # An unreadable marker reads as {} and falls back to this guard's own paths.
        state = self.marker.read()
        pid = state.get("pid")
        if marker_owner_alive(state):
            logging.info(f"Session {pid} is still running; nothing to recover")
            return False

        hosts_path = state.get("hosts_path") or self.hosts_path
        backup_path = state.get("backup_path") or self.backup_path
        try:
            with open(backup_path, "rb") as f:
                content = f.read()
        except FileNotFoundError:
            logging.error(f"Recovery marker points at missing backup {backup_path}; discarding marker")
            self.marker.clear()
            return False

        stale = HostsBackup(hosts_path, backup_path, content, bool(state.get("existed", True)))
        self.release(stale)
        logging.warning(f"Restored {hosts_path} left modified by an unclean shutdown (pid {pid})")
        return True
