"""Session manager: registry, connection lifecycle and shell I/O."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable

import asyncssh

from multissh.config import ManagerSettings
from multissh.connection import (
    ConnectionTestResult,
    SessionClient,
    compute_backoff_ms,
    open_connection,
    check_connection,
)
from multissh.errors import (
    SessionError,
    SessionNotFoundError,
    SFTPError,
    ShellOpenError,
    categorize_exception,
)
from multissh.events import EventBus, EventKind
from multissh.models import (
    FileEntry,
    Session,
    SessionConfig,
    SessionSnapshot,
    SessionStatus,
    TransferTask,
)
from multissh.progress import ProgressThrottle
from multissh.sftp import TransferEngine

logger = logging.getLogger(__name__)

BUFFER_SIZE = 32768
READER_DRAIN_TIMEOUT = 1.0  # seconds

Sleep = Callable[[float], Awaitable[None]]


class SessionManager:
    """Owns every SSH session of the process.

    Construct one at startup and hand it to whoever needs it. All state is
    mutated on the event loop, so the session table needs no lock. Each
    session has one supervisor task that drives its connection state machine.
    """

    def __init__(
        self,
        settings: ManagerSettings | None = None,
        bus: EventBus | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or ManagerSettings()
        self.bus = bus or EventBus()
        self.transfers = TransferEngine(
            self.bus, ProgressThrottle(interval=self.settings.progress_interval)
        )
        self._sleep = sleep
        self._sessions: dict[str, Session] = {}
        self._active_id: str | None = None

    # Registry

    async def create_session(self, config: SessionConfig) -> str:
        """Register a session and start connecting it in the background."""
        session_id = str(uuid.uuid4())
        same_config = sum(1 for s in self._sessions.values() if s.config_id == config.id)
        session = Session(
            id=session_id,
            name=f"{config.name}-{same_config + 1}",
            config=config,
            max_reconnect_attempts=self.settings.max_reconnect_attempts,
        )
        self._sessions[session_id] = session
        logger.info("Created session %s (%s) for %s", session.name, session_id, config)

        if len(self._sessions) == 1:
            self.set_active_session(session_id)

        self.bus.emit(EventKind.SESSION_CREATED, session.snapshot())
        self._start_supervisor(session, first_attempt=None)
        return session_id

    async def close_session(self, session_id: str) -> None:
        """Tear down a session and drop it from the registry."""
        session = self._sessions.get(session_id)
        if session is None:
            return

        await self._stop_supervisor(session)
        self.transfers.cancel_session_transfers(session_id)
        await self._teardown(session)

        if self._active_id == session_id:
            remaining = [sid for sid in self._sessions if sid != session_id]
            if remaining:
                self.set_active_session(remaining[0])
            else:
                self._active_id = None
                self.bus.emit(EventKind.ACTIVE_SESSION_CHANGED, None)

        del self._sessions[session_id]
        logger.info("Closed session %s", session.name)
        self.bus.emit(EventKind.SESSION_CLOSED, session_id)

    def set_active_session(self, session_id: str) -> bool:
        """Make a session the active one; False if it does not exist."""
        session = self._sessions.get(session_id)
        if session is None:
            return False

        previous = self._sessions.get(self._active_id) if self._active_id else None
        if previous is not None:
            previous.is_active = False
        session.is_active = True
        self._active_id = session_id

        self.bus.emit(EventKind.ACTIVE_SESSION_CHANGED, session_id)
        return True

    def get_active_session_id(self) -> str | None:
        return self._active_id

    def get_all_sessions(self) -> list[SessionSnapshot]:
        return [s.snapshot() for s in self._sessions.values()]

    def get_session(self, session_id: str) -> SessionSnapshot | None:
        session = self._sessions.get(session_id)
        return session.snapshot() if session else None

    async def cleanup(self) -> None:
        """Close every session; call at shutdown."""
        for session_id in list(self._sessions):
            await self.close_session(session_id)
        self._active_id = None

    # Connection lifecycle

    async def reconnect_session(self, session_id: str) -> None:
        """Drop the current connection and try again immediately.

        Supersedes any pending automatic reconnect. Raises the error of this
        attempt if it fails; automatic retries continue afterwards.
        """
        session = self._require(session_id)
        logger.info("Manual reconnect of session %s", session.name)

        await self._stop_supervisor(session)
        await self._teardown(session)
        session.reconnect_attempts = 0
        session.error = None

        first_attempt = asyncio.get_running_loop().create_future()
        self._start_supervisor(session, first_attempt=first_attempt)
        await first_attempt

    async def wait_settled(self, session_id: str) -> None:
        """Wait until the session stops reconnecting on its own.

        Returns once the supervisor has ended: terminal error, a
        non-retryable failure, or the session was closed.
        """
        session = self._sessions.get(session_id)
        task = session.supervisor if session else None
        if task is not None:
            await asyncio.wait([task])

    async def test_connection(self, config: SessionConfig) -> ConnectionTestResult:
        """Check a config without creating a session."""
        return await check_connection(config, self.settings)

    def _start_supervisor(self, session: Session, first_attempt: asyncio.Future | None) -> None:
        session.supervisor = asyncio.create_task(
            self._supervise(session, first_attempt), name=f"ssh-session-{session.id}"
        )

    async def _stop_supervisor(self, session: Session) -> None:
        task, session.supervisor = session.supervisor, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _supervise(self, session: Session, first_attempt: asyncio.Future | None) -> None:
        """Run the lifecycle of one session until it stops for good."""
        try:
            await self._lifecycle(session, first_attempt)
        except asyncio.CancelledError:
            _settle(first_attempt, SessionError("Reconnect superseded"))
            raise
        except Exception as e:
            logger.exception("Session %s supervisor crashed", session.name)
            self._set_error(session, str(e) or type(e).__name__)
            _settle(first_attempt, e)

    async def _lifecycle(self, session: Session, first_attempt: asyncio.Future | None) -> None:
        """Connect, relay until the connection drops, and retry per policy.

        ``first_attempt`` is settled by the first connect outcome; later
        settles are no-ops.
        """
        while True:
            client = SessionClient()
            try:
                await self._connect(session, client)
            except ShellOpenError as e:
                self._set_error(session, str(e))
                _settle(first_attempt, e)
                return
            except (SessionError, asyncssh.Error, OSError) as e:
                error = categorize_exception(e)
                logger.warning("Session %s connect failed: %s", session.name, e)
                self._set_error(session, error.describe(self.settings.locale))
                _settle(first_attempt, SessionError(session.error))
                if not error.retryable or not await self._schedule_reconnect(session):
                    return
                continue

            _settle(first_attempt, None)

            lost_error = await self._relay_until_closed(session, client)
            if lost_error is not None:
                error = categorize_exception(lost_error)
                logger.warning("Session %s lost connection: %s", session.name, lost_error)
                self._set_error(session, error.describe(self.settings.locale))
                if not error.retryable:
                    return
            else:
                session.status = SessionStatus.DISCONNECTED
                logger.info("Session %s disconnected", session.name)
                self.bus.emit(EventKind.SESSION_DISCONNECTED, session.id)

            if not await self._schedule_reconnect(session):
                return

    async def _connect(self, session: Session, client: SessionClient) -> None:
        session.status = SessionStatus.CONNECTING
        started = time.monotonic()
        conn = await open_connection(session.config, self.settings, client_factory=lambda: client)

        session.connection = conn
        session.status = SessionStatus.CONNECTED
        session.connection_time = time.monotonic() - started
        session.reconnect_attempts = 0
        session.error = None
        session.touch()
        logger.info(
            "Session %s connected in %.0f ms", session.name, session.connection_time * 1000
        )

        try:
            process = await conn.create_process(
                term_type=self.settings.term_type,
                term_size=(self.settings.default_cols, self.settings.default_rows),
                encoding=None,
            )
        except (asyncssh.Error, OSError) as e:
            await self._teardown(session)
            raise ShellOpenError(f"Failed to open shell: {e}") from e

        session.process = process
        session.readers = [
            asyncio.create_task(self._pump(session, process.stdout)),
            asyncio.create_task(self._pump(session, process.stderr)),
        ]
        self.bus.emit(EventKind.SESSION_CONNECTED, session.id)

    async def _relay_until_closed(
        self, session: Session, client: SessionClient
    ) -> Exception | None:
        """Wait for the shell or the connection to close, whichever is first."""
        conn, process = session.connection, session.process
        waiters = [
            asyncio.ensure_future(process.wait_closed()),
            asyncio.ensure_future(conn.wait_closed()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            # No more input or resizes once either side is gone
            session.process = None
            process.close()
            # Let buffered output reach subscribers before the disconnect event
            if session.readers:
                await asyncio.wait(session.readers, timeout=READER_DRAIN_TIMEOUT)
        finally:
            for waiter in waiters:
                waiter.cancel()
        await self._teardown(session)
        return client.lost_error

    async def _pump(self, session: Session, stream) -> None:
        """Forward one output stream of the shell as session-data events."""
        while True:
            try:
                chunk = await stream.read(BUFFER_SIZE)
            except (asyncssh.Error, OSError) as e:
                logger.debug("Session %s stream ended: %s", session.id, e)
                return
            if not chunk:
                return
            if isinstance(chunk, str):
                chunk = chunk.encode()
            session.touch(len(chunk))
            self.bus.emit(EventKind.SESSION_DATA, session.id, chunk)

    async def _schedule_reconnect(self, session: Session) -> bool:
        """Wait out the backoff for the next attempt; False once exhausted."""
        if session.reconnect_attempts >= session.max_reconnect_attempts:
            message = f"Reconnection failed after {session.reconnect_attempts} attempts"
            logger.error("Session %s: %s", session.name, message)
            self._set_error(session, message)
            return False

        session.reconnect_attempts += 1
        delay_ms = compute_backoff_ms(
            session.reconnect_attempts, self.settings.backoff_base_ms, self.settings.backoff_max_ms
        )
        session.status = SessionStatus.CONNECTING
        logger.info(
            "Session %s reconnecting (attempt %d) in %d ms",
            session.name,
            session.reconnect_attempts,
            delay_ms,
        )
        self.bus.emit(
            EventKind.SESSION_RECONNECTING, session.id, session.reconnect_attempts, delay_ms
        )
        await self._sleep(delay_ms / 1000)
        return True

    async def _teardown(self, session: Session) -> None:
        """Release the live handles of a session."""
        readers, session.readers = session.readers, []
        for reader in readers:
            reader.cancel()
        self.transfers.invalidate(session)
        process, session.process = session.process, None
        if process is not None:
            process.close()
        conn, session.connection = session.connection, None
        if conn is not None:
            conn.close()
            await conn.wait_closed()

    def _set_error(self, session: Session, message: str) -> None:
        session.status = SessionStatus.ERROR
        session.error = message
        self.bus.emit(EventKind.SESSION_ERROR, session.id, message)

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # Shell bridge

    def send_command(self, session_id: str, data: str | bytes) -> bool:
        """Write keystrokes to the shell; False unless connected."""
        session = self._sessions.get(session_id)
        if (
            session is None
            or session.process is None
            or session.status != SessionStatus.CONNECTED
        ):
            return False
        if isinstance(data, str):
            data = data.encode()
        try:
            session.process.stdin.write(data)
        except (asyncssh.Error, OSError) as e:
            logger.debug("Session %s shell write failed: %s", session.name, e)
            return False
        session.touch(len(data))
        return True

    def resize_session(self, session_id: str, cols: int, rows: int) -> bool:
        """Send a window-change to the shell; False unless connected."""
        session = self._sessions.get(session_id)
        if (
            session is None
            or session.process is None
            or session.status != SessionStatus.CONNECTED
        ):
            return False
        try:
            session.process.change_terminal_size(cols, rows)
        except (asyncssh.Error, OSError) as e:
            logger.debug("Session %s resize failed: %s", session.name, e)
            return False
        return True

    async def get_current_directory(self, session_id: str) -> str:
        """Return the login directory of the session's user."""
        session = self._sessions.get(session_id)
        if session is None or session.connection is None:
            return "/"
        try:
            result = await session.connection.run("pwd", check=False, timeout=10)
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            logger.debug("pwd failed on session %s: %s", session_id, e)
            return "/"
        output = result.stdout
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return (output or "").strip() or "/"

    # File transfer

    def _sftp_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SFTPError(f"Session {session_id} not found")
        return session

    async def list_files(self, session_id: str, path: str) -> list[FileEntry]:
        return await self.transfers.list_files(self._sftp_session(session_id), path)

    async def create_directory(self, session_id: str, path: str) -> None:
        await self.transfers.create_directory(self._sftp_session(session_id), path)

    async def delete_file(self, session_id: str, path: str) -> None:
        await self.transfers.delete_file(self._sftp_session(session_id), path)

    async def delete_directory(self, session_id: str, path: str) -> None:
        await self.transfers.delete_directory(self._sftp_session(session_id), path)

    async def upload_file(
        self, session_id: str, local_path: str, remote_path: str, task_id: str
    ) -> TransferTask:
        return await self.transfers.upload_file(
            self._sftp_session(session_id), local_path, remote_path, task_id
        )

    async def download_file(
        self, session_id: str, remote_path: str, local_path: str, task_id: str
    ) -> TransferTask:
        return await self.transfers.download_file(
            self._sftp_session(session_id), remote_path, local_path, task_id
        )

    def close_sftp(self, session_id: str) -> None:
        """Drop the session's SFTP channel; the next operation reopens it."""
        session = self._sessions.get(session_id)
        if session is not None:
            self.transfers.invalidate(session)

    def remove_transfer(self, task_id: str) -> bool:
        return self.transfers.remove_transfer(task_id)

    def clear_finished_transfers(self) -> int:
        """Forget completed and failed transfers of every session."""
        return self.transfers.clear_finished()


def _settle(future: asyncio.Future | None, error: Exception | None) -> None:
    """Resolve the waiter of a manual reconnect, if there is one."""
    if future is None or future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)
