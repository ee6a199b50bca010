from __future__ import annotations

import threading
import time

import pytest

from shellrunner.adapter import ShellTransport
from shellrunner.config import Settings
from shellrunner.errors import TransportError
from shellrunner.runtime import build_engine


class FakeRemote:
    """Scripted remote shell shared by every transport the factory hands out.

    Tracks how many commands run at once and when each one ran, so tests can
    check that the session never interleaves commands.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.intervals: list[tuple[float, float, str]] = []
        self.commands: list[str] = []
        self.connects = 0
        self.connect_credentials = []
        self.connect_failures = 0
        self.delay = 0.0
        self.output = "line 1\nline 2\n"
        self.failures: dict[str, Exception] = {}
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self.transports: list["FakeTransport"] = []

    def factory(self) -> "FakeTransport":
        transport = FakeTransport(self)
        self.transports.append(transport)
        return transport


class FakeTransport(ShellTransport):
    def __init__(self, remote: FakeRemote):
        self.remote = remote
        self.connected = False
        self.closed = False

    @property
    def alive(self) -> bool:
        return self.connected and not self.closed

    def connect(self, credentials=None) -> None:
        with self.remote.lock:
            self.remote.connects += 1
            self.remote.connect_credentials.append(credentials)
            if self.remote.connect_failures > 0:
                self.remote.connect_failures -= 1
                raise TransportError("connect refused")
        self.connected = True

    def run(self, command, on_output=None, timeout=None) -> str:
        remote = self.remote
        with remote.lock:
            remote.active += 1
            remote.max_active = max(remote.max_active, remote.active)
            remote.commands.append(command)
        gate = remote.gate
        start = time.monotonic()
        try:
            remote.started.set()
            lines = remote.output.splitlines(keepends=True)
            for line in lines:
                if on_output is not None:
                    on_output(line)
                if remote.delay:
                    time.sleep(remote.delay / max(1, len(lines)))
            if gate is not None:
                gate.wait(timeout=10)
            for needle, exc in remote.failures.items():
                if needle in command:
                    raise exc
            return remote.output
        finally:
            with remote.lock:
                remote.active -= 1
                remote.intervals.append((start, time.monotonic(), command))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        AUDIT_DB_PATH=":memory:",
        QUEUE_URL=None,
        REDIS_URL=None,
        REDIS_HOST=None,
        SESSION_CONNECT_RETRIES=2,
        SESSION_RETRY_DELAY_SECONDS=0,
        COMMAND_TIMEOUT_SECONDS=30,
        WORKER_POLL_SECONDS=0.05,
    )


@pytest.fixture
def engine(settings, remote):
    eng = build_engine(settings, transport_factory=remote.factory, broker_probe=lambda: None)
    eng.start()
    yield eng
    eng.stop()

