"""Per-session SFTP channel and file transfers using asyncssh."""

from __future__ import annotations

import logging
import posixpath
from datetime import datetime
from pathlib import Path, PurePosixPath

import asyncssh

from multissh.errors import SFTPError
from multissh.events import EventBus, EventKind
from multissh.models import (
    FileEntry,
    Session,
    SessionStatus,
    TransferStatus,
    TransferTask,
    TransferType,
)
from multissh.progress import ProgressThrottle, percent

logger = logging.getLogger(__name__)

CHUNK_SIZE = 262144  # 256KB

CANCELLED_MESSAGE = "Transfer cancelled: session closed"


class TransferCancelled(SFTPError):
    """The owning session was closed while the transfer was running."""

    pass


def format_permissions(mode: int) -> str:
    """Format permissions as rwxrwxrwx string."""
    perms = ""
    for i in range(8, -1, -1):
        if mode & (1 << i):
            perms += "rwx"[2 - (i % 3)]
        else:
            perms += "-"
    return perms


def join_remote(directory: str, name: str) -> str:
    """Join a remote directory and entry name with POSIX rules."""
    return posixpath.join(directory or "/", name)


class TransferEngine:
    """Lists remote directories and moves files over a session's SFTP channel."""

    def __init__(self, bus: EventBus, throttle: ProgressThrottle | None = None):
        self.bus = bus
        self.throttle = throttle or ProgressThrottle()
        self.tasks: dict[str, TransferTask] = {}
        self._session_tasks: dict[str, set[str]] = {}

    async def get_sftp(self, session: Session) -> asyncssh.SFTPClient:
        """Return the session's SFTP client, opening it on first use."""
        if session.status != SessionStatus.CONNECTED or session.connection is None:
            raise SFTPError("Session not connected")
        if session.sftp is not None:
            return session.sftp

        async with session.sftp_lock:
            # Another caller may have opened it while we waited
            if session.sftp is not None:
                return session.sftp
            if session.connection is None:
                raise SFTPError("Session not connected")
            logger.debug("Opening SFTP channel for session %s", session.id)
            try:
                session.sftp = await session.connection.start_sftp_client()
            except (asyncssh.Error, OSError) as e:
                raise SFTPError(f"Failed to open SFTP channel: {e}") from e
            return session.sftp

    def invalidate(self, session: Session) -> None:
        """Forget the cached SFTP client, closing it if still open."""
        sftp, session.sftp = session.sftp, None
        if sftp is not None:
            sftp.exit()
            logger.debug("Closed SFTP channel for session %s", session.id)

    def cancel_session_transfers(self, session_id: str) -> int:
        """Flag every running transfer of a session for cancellation."""
        count = 0
        for task_id in self._session_tasks.pop(session_id, set()):
            task = self.tasks.get(task_id)
            if task is not None and not task.is_finished:
                task.cancelled = True
                count += 1
        if count:
            logger.info("Cancelling %d transfer(s) of session %s", count, session_id)
        return count

    def get_transfer(self, task_id: str) -> TransferTask | None:
        return self.tasks.get(task_id)

    def list_transfers(self) -> list[TransferTask]:
        return list(self.tasks.values())

    def remove_transfer(self, task_id: str) -> bool:
        """Forget a finished transfer; running ones are kept."""
        task = self.tasks.get(task_id)
        if task is None or not task.is_finished:
            return False
        del self.tasks[task_id]
        return True

    def clear_finished(self) -> int:
        """Drop every completed or failed transfer record."""
        finished = [task_id for task_id, task in self.tasks.items() if task.is_finished]
        for task_id in finished:
            del self.tasks[task_id]
        if finished:
            logger.debug("Cleared %d finished transfer(s)", len(finished))
        return len(finished)

    async def list_files(self, session: Session, path: str) -> list[FileEntry]:
        """List directory contents."""
        sftp = await self.get_sftp(session)
        logger.debug("Listing directory: %s", path)
        try:
            entries = await sftp.readdir(path)
        except (asyncssh.SFTPError, OSError) as e:
            raise SFTPError(f"Failed to list directory: {e}") from e

        files = []
        for entry in entries:
            name = entry.filename
            if isinstance(name, bytes):
                name = name.decode("utf-8", errors="replace")
            if name in (".", ".."):
                continue
            attrs = entry.attrs
            mtime = datetime.fromtimestamp(attrs.mtime) if attrs.mtime else None
            perms = format_permissions(attrs.permissions) if attrs.permissions else None
            is_dir = attrs.type == asyncssh.FILEXFER_TYPE_DIRECTORY
            files.append(
                FileEntry(
                    name=name,
                    type="directory" if is_dir else "file",
                    size=attrs.size or 0,
                    path=join_remote(path, name),
                    modified_at=mtime,
                    permissions=perms,
                )
            )
        # Sort: directories first, then by name
        files.sort(key=lambda f: (not f.is_dir, f.name.lower()))
        return files

    async def create_directory(self, session: Session, path: str) -> None:
        sftp = await self.get_sftp(session)
        try:
            await sftp.mkdir(path)
        except (asyncssh.SFTPError, OSError) as e:
            raise SFTPError(f"Failed to create directory: {e}") from e
        logger.info("Created remote directory %s", path)

    async def delete_file(self, session: Session, path: str) -> None:
        sftp = await self.get_sftp(session)
        try:
            await sftp.remove(path)
        except (asyncssh.SFTPError, OSError) as e:
            raise SFTPError(f"Failed to delete file: {e}") from e
        logger.info("Deleted remote file %s", path)

    async def delete_directory(self, session: Session, path: str) -> None:
        sftp = await self.get_sftp(session)
        try:
            await sftp.rmdir(path)
        except (asyncssh.SFTPError, OSError) as e:
            raise SFTPError(f"Failed to delete directory: {e}") from e
        logger.info("Deleted remote directory %s", path)

    async def upload_file(
        self, session: Session, local_path: str, remote_path: str, task_id: str
    ) -> TransferTask:
        """
        Upload a file to the remote server.

        Args:
            session: Connected session owning the SFTP channel
            local_path: Path to local file
            remote_path: Path on remote server
            task_id: Caller-chosen id used in progress notifications

        Returns:
            The completed transfer task

        Raises:
            SFTPError: If the local file cannot be read or the transfer fails
        """
        task = self._register(session, task_id, TransferType.UPLOAD, local_path, remote_path)
        try:
            try:
                task.file_size = Path(local_path).stat().st_size
            except OSError as e:
                raise SFTPError(f"Local file error: {e}") from e

            sftp = await self.get_sftp(session)
            task.status = TransferStatus.TRANSFERRING
            logger.info("Uploading %s to %s (%d bytes)", local_path, remote_path, task.file_size)

            try:
                async with sftp.open(remote_path, "wb") as remote_file:
                    with open(local_path, "rb") as local_file:
                        while True:
                            self._check_cancelled(task)
                            chunk = local_file.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            await remote_file.write(chunk)
                            self._advance(task, len(chunk))
            except asyncssh.SFTPError as e:
                raise SFTPError(f"Upload failed: {e}") from e
            except OSError as e:
                raise SFTPError(f"Local file error: {e}") from e

            self._finish(task)
            return task
        except SFTPError as e:
            self._fail(task, e)
            raise
        finally:
            self._release(session, task)

    async def download_file(
        self, session: Session, remote_path: str, local_path: str, task_id: str
    ) -> TransferTask:
        """
        Download a file from the remote server.

        Args:
            session: Connected session owning the SFTP channel
            remote_path: Path to the remote file
            local_path: Path to save locally
            task_id: Caller-chosen id used in progress notifications

        Returns:
            The completed transfer task

        Raises:
            SFTPError: If the remote file cannot be read or the transfer fails
        """
        task = self._register(session, task_id, TransferType.DOWNLOAD, remote_path, local_path)
        try:
            sftp = await self.get_sftp(session)
            try:
                attrs = await sftp.stat(remote_path)
            except (asyncssh.SFTPError, OSError) as e:
                raise SFTPError(f"Failed to stat remote file: {e}") from e
            task.file_size = attrs.size or 0
            task.status = TransferStatus.TRANSFERRING
            logger.info("Downloading %s to %s (%d bytes)", remote_path, local_path, task.file_size)

            try:
                # Ensure local directory exists
                Path(local_path).parent.mkdir(parents=True, exist_ok=True)
                async with sftp.open(remote_path, "rb") as remote_file:
                    with open(local_path, "wb") as local_file:
                        while True:
                            self._check_cancelled(task)
                            chunk = await remote_file.read(CHUNK_SIZE)
                            if not chunk:
                                break
                            local_file.write(chunk)
                            self._advance(task, len(chunk))
            except asyncssh.SFTPError as e:
                raise SFTPError(f"Download failed: {e}") from e
            except OSError as e:
                raise SFTPError(f"Local file error: {e}") from e

            self._finish(task)
            return task
        except SFTPError as e:
            self._fail(task, e)
            raise
        finally:
            self._release(session, task)

    def _register(
        self, session: Session, task_id: str, kind: TransferType, source: str, destination: str
    ) -> TransferTask:
        task = TransferTask(
            id=task_id,
            type=kind,
            source=source,
            destination=destination,
            file_name=PurePosixPath(source.replace("\\", "/")).name,
        )
        self.tasks[task_id] = task
        self._session_tasks.setdefault(session.id, set()).add(task_id)
        return task

    def _release(self, session: Session, task: TransferTask) -> None:
        owned = self._session_tasks.get(session.id)
        if owned is not None:
            owned.discard(task.id)
            if not owned:
                del self._session_tasks[session.id]

    def _check_cancelled(self, task: TransferTask) -> None:
        if task.cancelled:
            raise TransferCancelled(CANCELLED_MESSAGE)

    def _advance(self, task: TransferTask, nbytes: int) -> None:
        task.advance(task.transferred + nbytes)
        if task.transferred >= task.file_size:
            # The 100% notification belongs to _finish
            return
        # Half-up rounding reaches 100 before the last byte
        progress = min(percent(task.transferred, task.file_size), 99)
        if self.throttle.should_emit(task.id, progress):
            self.bus.emit(EventKind.FILE_TRANSFER_PROGRESS, task.id, progress, task.transferred)

    def _finish(self, task: TransferTask) -> None:
        task.status = TransferStatus.COMPLETED
        task.end_time = datetime.now()
        self.throttle.forget(task.id)
        self.bus.emit(EventKind.FILE_TRANSFER_PROGRESS, task.id, 100, task.transferred)
        logger.info("Transfer %s completed: %d bytes", task.id, task.transferred)

    def _fail(self, task: TransferTask, error: Exception) -> None:
        task.status = TransferStatus.ERROR
        task.error = str(error)
        task.end_time = datetime.now()
        self.throttle.forget(task.id)
        logger.error("Transfer %s failed: %s", task.id, error)
