"""Data models for multissh."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from multissh.progress import percent


class AuthType(Enum):
    """How a session authenticates."""

    PASSWORD = "password"
    KEY = "key"


class SessionStatus(Enum):
    """Connection lifecycle states."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TransferType(Enum):
    """Transfer direction."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class TransferStatus(Enum):
    """Transfer status states."""

    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"


@dataclass(frozen=True)
class SessionConfig:
    """Decrypted connection parameters handed over by the config provider."""

    id: str
    name: str
    host: str
    username: str
    port: int = 22
    auth_type: AuthType = AuthType.PASSWORD
    password: str | None = field(default=None, repr=False)
    private_key: str | None = field(default=None, repr=False)
    passphrase: str | None = field(default=None, repr=False)

    @classmethod
    def from_string(
        cls,
        connection_string: str,
        port: int = 22,
        private_key: str | None = None,
        passphrase: str | None = None,
        password: str | None = None,
    ) -> SessionConfig:
        """Parse user@host connection string."""
        if "@" in connection_string:
            username, hostname = connection_string.split("@", 1)
        else:
            username = ""
            hostname = connection_string
        return cls(
            id=f"{username}@{hostname}:{port}",
            name=hostname,
            host=hostname,
            username=username,
            port=port,
            auth_type=AuthType.KEY if private_key else AuthType.PASSWORD,
            password=password,
            private_key=private_key,
            passphrase=passphrase,
        )

    @classmethod
    def from_dict(cls, data: dict) -> SessionConfig:
        """Create from a provider record (snake_case or camelCase keys)."""
        auth = data.get("auth_type", data.get("authType", AuthType.PASSWORD.value))
        return cls(
            id=str(data["id"]),
            name=data.get("name") or data["host"],
            host=data["host"],
            username=data["username"],
            port=int(data.get("port", 22)),
            auth_type=AuthType(auth),
            password=data.get("password"),
            private_key=data.get("private_key", data.get("privateKey")),
            passphrase=data.get("passphrase"),
        )

    def with_username(self, username: str) -> SessionConfig:
        """Return a copy with a different username."""
        return replace(self, username=username, id=f"{username}@{self.host}:{self.port}")

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass
class SessionSnapshot:
    """Redacted, read-only view of a session for external consumers."""

    id: str
    name: str
    config_id: str
    config_name: str
    status: SessionStatus
    is_active: bool
    created_at: datetime
    last_activity: datetime
    reconnect_attempts: int
    max_reconnect_attempts: int
    bytes_transferred: int
    error: str | None = None
    connection_time: float | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "config_id": self.config_id,
            "config_name": self.config_name,
            "status": self.status.value,
            "error": self.error,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "connection_time": self.connection_time,
            "bytes_transferred": self.bytes_transferred,
        }


@dataclass
class Session:
    """One remote connection plus its shell, owned by the session manager."""

    id: str
    name: str
    config: SessionConfig
    status: SessionStatus = SessionStatus.CONNECTING
    error: str | None = None
    is_active: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    reconnect_attempts: int = 0
    max_reconnect_attempts: int = 3
    connection_time: float | None = None
    bytes_transferred: int = 0

    # Live handles, attached only while the connection is up
    connection: Any = field(default=None, repr=False)
    process: Any = field(default=None, repr=False)
    sftp: Any = field(default=None, repr=False)
    sftp_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    supervisor: asyncio.Task | None = field(default=None, repr=False)
    readers: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def config_id(self) -> str:
        return self.config.id

    @property
    def config_name(self) -> str:
        return self.config.name

    def touch(self, nbytes: int = 0) -> None:
        """Record I/O activity on the shell."""
        self.last_activity = datetime.now()
        self.bytes_transferred += nbytes

    def snapshot(self) -> SessionSnapshot:
        """Return a copy without credential material or live handles."""
        return SessionSnapshot(
            id=self.id,
            name=self.name,
            config_id=self.config_id,
            config_name=self.config_name,
            status=self.status,
            error=self.error,
            is_active=self.is_active,
            created_at=self.created_at,
            last_activity=self.last_activity,
            reconnect_attempts=self.reconnect_attempts,
            max_reconnect_attempts=self.max_reconnect_attempts,
            connection_time=self.connection_time,
            bytes_transferred=self.bytes_transferred,
        )


@dataclass
class FileEntry:
    """Remote file or directory info."""

    name: str
    type: str  # "file" or "directory"
    size: int
    path: str
    modified_at: datetime | None = None
    permissions: str | None = None

    @property
    def is_dir(self) -> bool:
        return self.type == "directory"

    @property
    def is_hidden(self) -> bool:
        return self.name.startswith(".")

    @property
    def size_human(self) -> str:
        """Return human-readable file size."""
        if self.is_dir:
            return "<DIR>"
        units = ["B", "KB", "MB", "GB", "TB"]
        size = float(self.size)
        for unit in units[:-1]:
            if size < 1024:
                return f"{size:.1f} {unit}"
            size /= 1024
        return f"{size:.1f} {units[-1]}"


@dataclass
class TransferTask:
    """A single upload or download."""

    id: str
    type: TransferType
    source: str
    destination: str
    file_name: str
    file_size: int = 0
    transferred: int = 0
    status: TransferStatus = TransferStatus.PENDING
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    error: str | None = None
    cancelled: bool = field(default=False, repr=False)

    @property
    def progress(self) -> int:
        """Return progress percentage (0-100), rounded half up."""
        return percent(self.transferred, self.file_size)

    @property
    def is_finished(self) -> bool:
        return self.status in (TransferStatus.COMPLETED, TransferStatus.ERROR)

    def advance(self, transferred: int) -> None:
        """Move the running total forward; never backwards."""
        if transferred > self.transferred:
            self.transferred = transferred

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "source": self.source,
            "destination": self.destination,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "transferred": self.transferred,
            "progress": self.progress,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
        }
