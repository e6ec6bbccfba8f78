import psutil
import pytest

from flowmode.file_handlers.hosts_file import HostsFileGuard
from flowmode.file_handlers.state import RecoveryMarker

ORIGINAL_HOSTS = "127.0.0.1\tlocalhost\n::1 localhost ip6-localhost\n# keep me\n"


class FakeProcess:
    """Stand-in for psutil.Process as yielded by process_iter(attrs)"""

    def __init__(self, pid, name, username, on_terminate=None, exits=True):
        self.info = {"pid": pid, "name": name, "username": username}
        self.on_terminate = on_terminate
        self.exits = exits
        self.terminated = False
        self.killed = False

    def terminate(self):
        if self.on_terminate is not None:
            raise self.on_terminate
        self.terminated = True

    def wait(self, timeout=None):
        if not self.exits:
            raise psutil.TimeoutExpired(timeout, pid=self.info["pid"])
        return 0

    def kill(self):
        self.killed = True


def fake_process_iter(processes):
    def process_iter(attrs=None):
        return iter(processes)
    return process_iter


class RecordingLogger:
    def __init__(self):
        self.records = []

    def record(self, record):
        self.records.append(record)


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "etc" / "hosts"
    path.parent.mkdir()
    path.write_text(ORIGINAL_HOSTS)
    return path


@pytest.fixture
def state_dir(tmp_path):
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def marker(state_dir):
    return RecoveryMarker(str(state_dir / "session.json"))


@pytest.fixture
def guard(hosts_file, marker, state_dir):
    return HostsFileGuard(str(hosts_file), marker, str(state_dir / "hosts.backup"))


@pytest.fixture
def flowmode_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("FLOWMODE_HOME", str(home))
    monkeypatch.delenv("FLOWMODE_HOSTS_FILE", raising=False)
    monkeypatch.chdir(tmp_path)
    return home
