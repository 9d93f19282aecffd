"""
Gemeinsame Fixtures: Fake-Workshop, Fake-Prozesse und Settings im tmp_path.
"""

import queue
import subprocess
import threading
import time

import pytest

from reforger_launcher.errors import SpawnError, WorkshopNotFound, WorkshopUnreachable
from reforger_launcher.models import ScenarioRef, WorkshopItem
from reforger_launcher.settings import Settings


def wid(n: int) -> str:
    """16-stellige Workshop-ID aus einer Zahl."""
    return f"{n:016X}"


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeFetcher:
    """In-memory workshop; records every fetch."""

    def __init__(self, items=None, missing=(), unreachable=(), delays=None):
        self.items = dict(items or {})
        self.missing = set(missing)
        self.unreachable = set(unreachable)
        self.delays = dict(delays or {})
        self.calls = []
        self._lock = threading.Lock()

    def add(self, item_id, deps=(), name=None, scenarios=()):
        self.items[item_id] = WorkshopItem(
            id=item_id,
            name=name or f"Mod {item_id[-4:]}",
            dependencies=tuple(deps),
            scenarios=tuple(ScenarioRef(id=s, name=s) for s in scenarios),
        )
        return self

    def fetch_item(self, item_id, *, with_scenarios=True):
        with self._lock:
            self.calls.append(item_id)
        if item_id in self.delays:
            time.sleep(self.delays[item_id])
        if item_id in self.unreachable:
            raise WorkshopUnreachable(item_id, "connection refused")
        if item_id in self.missing or item_id not in self.items:
            raise WorkshopNotFound(item_id, "404")
        item = self.items[item_id]
        if not with_scenarios:
            return item.model_copy(update={"scenarios": ()})
        return item


class FakeHandle:
    def __init__(self, name="server", pid=4242):
        self.name = name
        self.pid = pid
        self.returncode = None
        self.terminated = False
        self.killed = False
        self.ignore_terminate = False
        self._lines = queue.Queue()
        self._exited = threading.Event()

    def emit(self, *lines):
        for line in lines:
            self._lines.put(line)

    def exit(self, rc):
        if self._exited.is_set():
            return
        self.returncode = rc
        self._lines.put(None)
        self._exited.set()

    def lines(self):
        while True:
            line = self._lines.get()
            if line is None:
                return
            yield line

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("fake-server", timeout)
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeRunner:
    def __init__(self):
        self.calls = []
        self.handles = []
        self.fail = False
        self.ignore_terminate = False

    def spawn(self, executable, cwd, args, *, name="server", env=None):
        self.calls.append({"executable": executable, "cwd": cwd, "args": list(args)})
        if self.fail:
            raise SpawnError(f"could not start {executable}: No such file or directory")
        handle = FakeHandle(name=name, pid=1000 + len(self.handles))
        handle.ignore_terminate = self.ignore_terminate
        self.handles.append(handle)
        return handle

    @property
    def last(self):
        return self.handles[-1]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        server_exe=tmp_path / "bin" / "ArmaReforgerServer",
        server_work_dir=tmp_path,
        profile_dir_base=tmp_path / "profiles",
        workshop_base_url="http://workshop.invalid",
        start_grace_seconds=0,
        stop_timeout_seconds=1.0,
        log_backlog_lines=50,
    )


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def runner():
    return FakeRunner()
