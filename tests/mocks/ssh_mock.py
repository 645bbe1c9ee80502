"""Fake asyncssh objects for testing without network."""

import asyncio
from collections.abc import Callable
from types import SimpleNamespace

import asyncssh

from multissh.models import AuthType, SessionConfig


class FakeReader:
    """Stands in for an SSHReader opened with encoding=None."""

    def __init__(self):
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def feed_eof(self) -> None:
        self._queue.put_nowait(b"")

    async def read(self, n: int = -1) -> bytes:
        return await self._queue.get()


class FakeWriter:
    def __init__(self):
        self.written: list[bytes] = []
        self.broken = False

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("Channel not open for sending")
        self.written.append(data)


class FakeProcess:
    """Stands in for an SSHClientProcess running a shell."""

    def __init__(self):
        self.stdout = FakeReader()
        self.stderr = FakeReader()
        self.stdin = FakeWriter()
        self.term_sizes: list[tuple[int, int]] = []
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def change_terminal_size(self, width: int, height: int) -> None:
        if self.stdin.broken:
            raise BrokenPipeError("Channel not open for sending")
        self.term_sizes.append((width, height))

    def close(self) -> None:
        if not self._closed.is_set():
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            self.stdin.broken = True
            self._closed.set()

    def hang_up(self) -> None:
        """Close the channel while output is still pending on the readers."""
        self.stdin.broken = True
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class FakeSFTPFile:
    def __init__(self, client: "FakeSFTPClient", path: str, mode: str):
        self.client = client
        self.path = path
        self.mode = mode
        self._buffer = bytearray()
        self._pos = 0

    async def __aenter__(self) -> "FakeSFTPFile":
        if "r" in self.mode and self.path not in self.client.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {self.path}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        if "w" in self.mode:
            self.client.files[self.path] = bytes(self._buffer)

    async def read(self, n: int = -1) -> bytes:
        data = self.client.files[self.path]
        if self.client.fail_reads_after is not None and self._pos >= self.client.fail_reads_after:
            raise asyncssh.SFTPFailure("Connection lost")
        chunk = data[self._pos :] if n < 0 else data[self._pos : self._pos + n]
        self._pos += len(chunk)
        return chunk

    async def write(self, data: bytes) -> None:
        self._buffer.extend(data)


class FakeSFTPClient:
    """In-memory SFTP server view."""

    def __init__(self, files: dict[str, bytes] | None = None, entries: list | None = None):
        self.files = files or {}
        self.entries = entries or []
        self.exited = False
        self.mkdir_calls: list[str] = []
        self.remove_calls: list[str] = []
        self.rmdir_calls: list[str] = []
        self.readdir_calls: list[str] = []
        self.fail_reads_after: int | None = None

    async def readdir(self, path: str) -> list:
        self.readdir_calls.append(path)
        return self.entries

    async def stat(self, path: str):
        if path not in self.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {path}")
        return SimpleNamespace(size=len(self.files[path]), type=asyncssh.FILEXFER_TYPE_REGULAR)

    def open(self, path: str, mode: str = "r") -> FakeSFTPFile:
        return FakeSFTPFile(self, path, mode)

    async def mkdir(self, path: str) -> None:
        self.mkdir_calls.append(path)

    async def remove(self, path: str) -> None:
        if path not in self.files:
            raise asyncssh.SFTPNoSuchFile(f"No such file: {path}")
        self.remove_calls.append(path)
        del self.files[path]

    async def rmdir(self, path: str) -> None:
        self.rmdir_calls.append(path)

    def exit(self) -> None:
        self.exited = True


class FakeConnection:
    """Stands in for an SSHClientConnection."""

    def __init__(
        self,
        process: FakeProcess | None = None,
        sftp: FakeSFTPClient | None = None,
        shell_error: Exception | None = None,
        cwd: str = "/home/testuser",
    ):
        self.process = process or FakeProcess()
        self.sftp = sftp or FakeSFTPClient()
        self.shell_error = shell_error
        self.cwd = cwd
        self.client = None
        self.process_kwargs: dict = {}
        self.sftp_starts = 0
        self.close_calls = 0
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def create_process(self, *args, **kwargs) -> FakeProcess:
        self.process_kwargs = kwargs
        if self.shell_error is not None:
            raise self.shell_error
        return self.process

    async def start_sftp_client(self) -> FakeSFTPClient:
        self.sftp_starts += 1
        await asyncio.sleep(0)
        return self.sftp

    async def run(self, command: str, **kwargs):
        return SimpleNamespace(stdout=f"{self.cwd}\n", stderr="", exit_status=0)

    def get_extra_info(self, name: str, default=None):
        if name == "server_version":
            return "SSH-2.0-OpenSSH_9.6"
        return default

    def close(self) -> None:
        self.close_calls += 1
        self.process.close()
        self._closed.set()

    def drop(self, exc: Exception) -> None:
        """Simulate the transport going away with an error."""
        if self.client is not None:
            self.client.connection_lost(exc)
        self.close()

    async def wait_closed(self) -> None:
        await self._closed.wait()


def connect_sequence(*outcomes) -> tuple[Callable, list[dict]]:
    """Build a side effect for patching asyncssh.connect.

    Each call consumes the next outcome: an exception is raised, a
    FakeConnection is returned, and the string "hang" never completes. The
    last outcome repeats once the sequence runs out.
    """
    remaining = list(outcomes)
    calls: list[dict] = []

    async def fake_connect(**kwargs):
        calls.append(kwargs)
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        factory = kwargs.get("client_factory")
        if factory is not None:
            outcome.client = factory()
        return outcome

    return fake_connect, calls


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.001)


def create_config(name: str = "Prod", config_id: str = "cfg-prod") -> SessionConfig:
    """Create a password config for testing."""
    return SessionConfig(
        id=config_id,
        name=name,
        host="test.example.com",
        username="testuser",
        port=22,
        auth_type=AuthType.PASSWORD,
        password="s3cret-pw",
    )
