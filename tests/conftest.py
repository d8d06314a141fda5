# ═══════════════════════════════════════════════════════════════
# DevPoll - Pytest Configuration
# Shared fixtures and device doubles for tests
# ═══════════════════════════════════════════════════════════════

import asyncio
import os
import sys
from types import SimpleNamespace
from typing import Any, Callable, List, Optional
from unittest.mock import patch

import httpx
import pytest
from pydantic import SecretStr

# Add the project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from devpoll.engine.cycle import DeviceParameters
from devpoll.sink import CollectingSink
from devpoll.transports.base import BaseTransport
from devpoll.transports.http import HttpTransport
from devpoll.transports.models import HttpConfig, Operation, RawResult, TransportKind

# Configure pytest-asyncio
pytest_plugins = ['pytest_asyncio']


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# ═══════════════════════════════════════════════════════════════
# Scripted Transport
# ═══════════════════════════════════════════════════════════════

class ScriptedTransport(BaseTransport):
    """
    Transport double replaying a script of responses.

    Each send consumes the next entry; the last entry repeats. An entry
    is a dict of RawResult fields, an exception to raise, or a callable
    receiving the operation and returning either.
    """

    def __init__(
        self,
        responses: List[Any],
        kind: TransportKind = TransportKind.HTTP,
        config: Optional[HttpConfig] = None,
        delay: float = 0.0,
        sequential: bool = False
    ):
        self.kind = kind
        self.sequential = sequential
        super().__init__(config or HttpConfig(host="device.test", protocol="http"))
        self.responses = list(responses)
        self.delay = delay
        self.sent: List[Operation] = []
        self.opens = 0
        self.closes = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self._ready = False

    async def _open(self) -> None:
        self.opens += 1
        self._ready = True

    async def _close(self) -> None:
        self.closes += 1
        self._ready = False

    def _is_open(self) -> bool:
        return self._ready

    async def _send(self, operation: Operation) -> RawResult:
        self.sent.append(operation)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            entry = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
            if callable(entry) and not isinstance(entry, Exception):
                entry = entry(operation)
            if isinstance(entry, Exception):
                raise entry
            return self._result(operation, **entry)
        finally:
            self.in_flight -= 1


@pytest.fixture
def make_scripted_transport() -> Callable[..., ScriptedTransport]:
    """Factory building a ScriptedTransport inside the running loop."""
    return ScriptedTransport


# ═══════════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def make_http_transport() -> Callable[..., HttpTransport]:
    """Factory building an HttpTransport served by an httpx.MockTransport handler."""
    def factory(handler: Callable[[httpx.Request], httpx.Response], **config_options: Any) -> HttpTransport:
        config_options.setdefault("host", "device.test")
        config_options.setdefault("protocol", "http")
        return HttpTransport(HttpConfig(**config_options), http_transport=httpx.MockTransport(handler))
    return factory


# ═══════════════════════════════════════════════════════════════
# SSH
# ═══════════════════════════════════════════════════════════════

class FakeShellProcess:
    """Interactive shell double. ``responder`` maps each written line to output."""

    def __init__(self, responder: Callable[[str], str], banner: str = ""):
        self.responder = responder
        self.written: List[str] = []
        self.closed = False
        self.stdin = SimpleNamespace(write=self._write)
        self.stdout = SimpleNamespace(read=self._read)
        self._pending = [banner] if banner else []
        self._queue: Optional[asyncio.Queue] = None

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
            for chunk in self._pending:
                self._queue.put_nowait(chunk)
        return self._queue

    def _write(self, data: str) -> None:
        self.written.append(data)
        reply = self.responder(data)
        if reply:
            self.queue.put_nowait(reply)

    async def _read(self, size: int = -1) -> str:
        return await self.queue.get()

    def close(self) -> None:
        self.closed = True


class FakeSSHConnection:
    """
    asyncssh connection double for shells and one-shot commands.

    ``process`` may be a list; each create_process call takes the next one.
    """

    def __init__(self, process: Any = None, run_result: Any = None):
        self.process = process
        self.processes_started = 0
        self.run_result = run_result
        self.run_calls: List[Any] = []
        self.process_options: dict = {}
        self._closed = False

    async def create_process(self, **kwargs: Any) -> FakeShellProcess:
        self.process_options = kwargs
        self.processes_started += 1
        if isinstance(self.process, list):
            return self.process.pop(0)
        return self.process

    async def run(self, command: str, **kwargs: Any) -> Any:
        self.run_calls.append((command, kwargs))
        if isinstance(self.run_result, Exception):
            raise self.run_result
        return self.run_result

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def wait_closed(self) -> None:
        pass


@pytest.fixture
def fake_ssh():
    """
    Patch ``asyncssh.connect``.

    Set ``connection`` (a FakeSSHConnection) or ``error`` on the returned
    controller before opening a transport.
    """
    controller = SimpleNamespace(connection=FakeSSHConnection(), error=None, calls=[])

    async def connect(**kwargs):
        controller.calls.append(kwargs)
        if controller.error is not None:
            raise controller.error
        return controller.connection

    with patch("asyncssh.connect", new=connect):
        yield controller


@pytest.fixture
def shell_process() -> Callable[..., FakeShellProcess]:
    return FakeShellProcess


@pytest.fixture
def ssh_connection() -> Callable[..., FakeSSHConnection]:
    return FakeSSHConnection


# ═══════════════════════════════════════════════════════════════
# Telnet
# ═══════════════════════════════════════════════════════════════

class FakeStreamWriter:
    def __init__(self):
        self.chunks: List[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.chunks.append(bytes(data))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class FakeTelnetDevice:
    """Replacement for ``asyncio.open_connection`` serving canned screens."""

    def __init__(self, chunks: List[bytes], eof: bool = False, error: Optional[Exception] = None):
        self.chunks = chunks
        self.eof = eof
        self.error = error
        self.writers: List[FakeStreamWriter] = []
        self.addresses: List[Any] = []

    async def connect(self, host: str, port: int):
        self.addresses.append((host, port))
        if self.error is not None:
            raise self.error
        reader = asyncio.StreamReader()
        for chunk in self.chunks:
            reader.feed_data(chunk)
        if self.eof:
            reader.feed_eof()
        writer = FakeStreamWriter()
        self.writers.append(writer)
        return reader, writer


@pytest.fixture
def telnet_device() -> Callable[..., FakeTelnetDevice]:
    return FakeTelnetDevice


# ═══════════════════════════════════════════════════════════════
# Cycle
# ═══════════════════════════════════════════════════════════════

@pytest.fixture
def parameters() -> DeviceParameters:
    return DeviceParameters(
        host="device.test",
        username="monitor",
        password=SecretStr("s3cret"),
    )


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()
