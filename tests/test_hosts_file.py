import errno
import json
import os

import pytest

from conftest import ORIGINAL_HOSTS
from flowmode.core.errors import (
    AcquisitionFailed,
    BackupAlreadyLive,
    BackupAlreadyReleased,
    HostsIOError,
    HostsPermissionDenied,
    ReleaseFailed,
)
from flowmode.file_handlers import hosts_file as hosts_module
from flowmode.file_handlers.hosts_file import (
    HOSTS_END_MARK,
    HOSTS_START_MARK,
    HostsFileGuard,
    make_blocked_content,
    resolve_hosts_path,
    strip_allowed_redirects,
)
from flowmode.file_handlers.state import RecoveryMarker

DOMAINS = ["facebook.com", "www.facebook.com", "reddit.com"]


def test_acquire_appends_managed_block(guard, hosts_file):
    guard.acquire(DOMAINS)
    content = hosts_file.read_text()
    assert content.startswith(ORIGINAL_HOSTS)
    added = content[len(ORIGINAL_HOSTS):].splitlines()
    assert added == [
        HOSTS_START_MARK,
        "127.0.0.1 facebook.com",
        "127.0.0.1 www.facebook.com",
        "127.0.0.1 reddit.com",
        HOSTS_END_MARK,
    ]


@pytest.mark.parametrize("original", [
    b"",
    b"127.0.0.1 localhost",
    b"127.0.0.1 localhost\r\n# windows line endings\r\n",
    "10.0.0.1 café.local\n".encode("utf-8"),
    b"\xff\xfe odd bytes\n",
])
def test_release_restores_exact_bytes(guard, hosts_file, original):
    hosts_file.write_bytes(original)
    backup = guard.acquire(DOMAINS)
    assert hosts_file.read_bytes() != original
    guard.release(backup)
    assert hosts_file.read_bytes() == original


def test_acquire_is_idempotent_for_present_lines(guard, hosts_file):
    hosts_file.write_text(ORIGINAL_HOSTS + "127.0.0.1   facebook.com\n")
    before = hosts_file.read_bytes()
    guard.acquire(["facebook.com"])
    assert hosts_file.read_bytes() == before


def test_make_blocked_content_does_not_duplicate():
    once = make_blocked_content(ORIGINAL_HOSTS, DOMAINS)
    assert make_blocked_content(once, DOMAINS) == once
    assert once.count("127.0.0.1 reddit.com") == 1


def test_make_blocked_content_adds_missing_newline():
    text = make_blocked_content("127.0.0.1 localhost", ["x.com"])
    assert text.splitlines()[:2] == ["127.0.0.1 localhost", HOSTS_START_MARK]


def test_custom_redirect_address(hosts_file, marker, state_dir):
    guard = HostsFileGuard(str(hosts_file), marker, str(state_dir / "hosts.backup"), redirect_address="0.0.0.0")
    guard.acquire(["twitter.com"])
    assert "0.0.0.0 twitter.com" in hosts_file.read_text()


def test_marker_and_backup_live_only_while_acquired(guard, marker, state_dir, hosts_file):
    backup = guard.acquire(DOMAINS, task="write report")
    state = marker.read()
    assert state["pid"] == os.getpid()
    assert state["hosts_path"] == str(hosts_file)
    assert state["task"] == "write report"
    assert (state_dir / "hosts.backup").read_bytes() == ORIGINAL_HOSTS.encode()

    guard.release(backup)
    assert not marker.exists()
    assert not (state_dir / "hosts.backup").exists()
    assert guard.live_backup is None


def test_double_release_fails_fast(guard):
    backup = guard.acquire(DOMAINS)
    guard.release(backup)
    with pytest.raises(BackupAlreadyReleased):
        guard.release(backup)


def test_nested_acquire_rejected(guard, hosts_file):
    guard.acquire(DOMAINS)
    modified = hosts_file.read_bytes()
    with pytest.raises(BackupAlreadyLive):
        guard.acquire(["other.com"])
    assert hosts_file.read_bytes() == modified


def test_permission_denied_leaves_nothing_behind(guard, hosts_file, marker, state_dir, monkeypatch):
    real_write = hosts_module.atomic_write

    def deny_hosts(path, data):
        if path == str(hosts_file):
            raise PermissionError(errno.EACCES, "Permission denied")
        return real_write(path, data)

    monkeypatch.setattr(hosts_module, "atomic_write", deny_hosts)
    with pytest.raises(HostsPermissionDenied):
        guard.acquire(DOMAINS)
    assert hosts_file.read_text() == ORIGINAL_HOSTS
    assert not marker.exists()
    assert not (state_dir / "hosts.backup").exists()
    assert guard.live_backup is None


def test_read_only_filesystem_maps_to_permission_denied(guard, hosts_file, monkeypatch):
    real_write = hosts_module.atomic_write

    def read_only(path, data):
        if path == str(hosts_file):
            raise OSError(errno.EROFS, "Read-only file system")
        return real_write(path, data)

    monkeypatch.setattr(hosts_module, "atomic_write", read_only)
    with pytest.raises(HostsPermissionDenied):
        guard.acquire(DOMAINS)


def test_missing_hosts_file_is_io_failure(tmp_path, marker):
    guard = HostsFileGuard(str(tmp_path / "nope" / "hosts"), marker, str(tmp_path / "hosts.backup"))
    with pytest.raises(HostsIOError):
        guard.acquire(DOMAINS)


def test_user_hosts_created_and_removed(tmp_path, marker):
    path = tmp_path / "user" / "hosts"
    path.parent.mkdir()
    guard = HostsFileGuard(str(path), marker, str(tmp_path / "user_hosts.backup"), create_missing=True)
    backup = guard.acquire(["youtube.com"])
    text = path.read_text()
    assert text.startswith("# FlowMode user-level hosts file")
    assert "127.0.0.1 youtube.com" in text
    guard.release(backup)
    assert not path.exists()


def test_release_failure_keeps_marker(guard, marker, monkeypatch):
    backup = guard.acquire(DOMAINS)

    def broken(path, data):
        raise OSError(errno.EIO, "I/O error")

    monkeypatch.setattr(hosts_module, "atomic_write", broken)
    with pytest.raises(ReleaseFailed, match="flowmode recover"):
        guard.release(backup)
    assert marker.exists()
    assert not backup.released


def test_atomic_write_falls_back_for_bind_mounts(tmp_path, monkeypatch):
    target = tmp_path / "hosts"
    target.write_text("old\n")

    def busy(src, dst):
        raise OSError(errno.EBUSY, "Device or resource busy")

    monkeypatch.setattr(hosts_module.os, "replace", busy)
    hosts_module.atomic_write(str(target), b"new\n")
    assert target.read_bytes() == b"new\n"
    assert [p.name for p in tmp_path.iterdir()] == ["hosts"]


def test_atomic_write_keeps_mode(tmp_path):
    target = tmp_path / "hosts"
    target.write_text("old\n")
    os.chmod(target, 0o644)
    hosts_module.atomic_write(str(target), b"new\n")
    assert os.stat(target).st_mode & 0o777 == 0o644


def test_whitelist_mode_blocks_broad_list_minus_allowed(guard, hosts_file):
    backup = guard.acquire(["facebook.com", "tiktok.com"], allow=["youtube.com"], whitelist=True)
    content = hosts_file.read_text()
    assert "127.0.0.1 facebook.com" in content
    assert "127.0.0.1 tiktok.com" in content
    guard.release(backup)
    assert hosts_file.read_text() == ORIGINAL_HOSTS


def test_whitelist_mode_strips_managed_allowed_lines(guard, hosts_file):
    leftover = f"{HOSTS_START_MARK}\n127.0.0.1 youtube.com\n127.0.0.1 reddit.com\n{HOSTS_END_MARK}\n"
    user_line = "127.0.0.1 youtube.com  # user entry outside flowmode block\n"
    hosts_file.write_text(ORIGINAL_HOSTS + user_line + leftover)
    guard.acquire(["reddit.com"], allow=["youtube.com"], whitelist=True)
    content = hosts_file.read_text()
    assert user_line in content
    assert content.count("youtube.com") == 1
    assert content.count("127.0.0.1 reddit.com") == 1


def test_strip_allowed_redirects_ignores_unmanaged_lines():
    text = "127.0.0.1 youtube.com\n"
    assert strip_allowed_redirects(text, ["youtube.com"]) == text


def test_recover_restores_after_crash(guard, hosts_file, marker):
    guard.acquire(DOMAINS)
    state = marker.read()
    state["pid"] = 999999999
    marker.write(state)

    survivor = HostsFileGuard(str(hosts_file), RecoveryMarker(marker.path), guard.backup_path)
    assert survivor.recover() is True
    assert hosts_file.read_text() == ORIGINAL_HOSTS
    assert not marker.exists()
    assert survivor.recover() is False


def test_recover_leaves_running_session_alone(guard, hosts_file, marker):
    guard.acquire(DOMAINS)
    modified = hosts_file.read_bytes()
    other = HostsFileGuard(str(hosts_file), RecoveryMarker(marker.path), guard.backup_path)
    assert other.recover() is False
    assert hosts_file.read_bytes() == modified
    assert marker.exists()


def test_recover_detects_reused_pid(guard, hosts_file, marker):
    guard.acquire(DOMAINS)
    state = marker.read()
    # A live process holds the PID but started long after the crashed session.
    state["pid_create_time"] -= 3600
    marker.write(state)

    survivor = HostsFileGuard(str(hosts_file), RecoveryMarker(marker.path), guard.backup_path)
    assert survivor.recover() is True
    assert hosts_file.read_text() == ORIGINAL_HOSTS

    backup = survivor.acquire(["reddit.com"])
    survivor.release(backup)
    assert hosts_file.read_text() == ORIGINAL_HOSTS
    assert not marker.exists()


def test_acquire_refuses_while_marker_present(guard, hosts_file, marker, state_dir):
    guard.acquire(DOMAINS)
    modified = hosts_file.read_bytes()

    other = HostsFileGuard(str(hosts_file), RecoveryMarker(marker.path), str(state_dir / "hosts.backup"))
    with pytest.raises(AcquisitionFailed, match="flowmode recover"):
        other.acquire(["reddit.com"])
    assert hosts_file.read_bytes() == modified
    assert (state_dir / "hosts.backup").read_text() == ORIGINAL_HOSTS
    assert marker.read()["pid"] == os.getpid()


def test_recover_with_unreadable_marker_uses_own_backup(guard, hosts_file, marker):
    guard.acquire(DOMAINS)
    with open(marker.path, "w") as f:
        f.write("{truncated")

    survivor = HostsFileGuard(str(hosts_file), RecoveryMarker(marker.path), guard.backup_path)
    assert survivor.recover() is True
    assert hosts_file.read_text() == ORIGINAL_HOSTS
    assert not marker.exists()


def test_marker_is_json_written_atomically(marker):
    marker.write({"pid": 1})
    with open(marker.path) as f:
        assert json.load(f) == {"pid": 1}
    assert not os.path.exists(marker.path + ".tmp")


def test_resolve_hosts_path(monkeypatch):
    monkeypatch.delenv("FLOWMODE_HOSTS_FILE", raising=False)
    assert resolve_hosts_path("/tmp/custom-hosts") == "/tmp/custom-hosts"
    monkeypatch.setenv("FLOWMODE_HOSTS_FILE", "/tmp/env-hosts")
    assert resolve_hosts_path("/tmp/custom-hosts") == "/tmp/env-hosts"
