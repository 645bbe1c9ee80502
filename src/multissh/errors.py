"""Exceptions and transport error categorization."""

from __future__ import annotations

import asyncio
import errno
import socket
from dataclasses import dataclass
from enum import Enum

import asyncssh


class MultiSSHError(Exception):
    """Base class for multissh errors."""

    pass


class SessionError(MultiSSHError):
    """Session-level failure (connection or shell)."""

    pass


class SessionNotFoundError(SessionError):
    """No session with the given id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class ConnectionTimeoutError(SessionError):
    """The connect attempt did not complete within its deadline."""

    pass


class ShellOpenError(SessionError):
    """The connection came up but the shell channel could not be opened."""

    pass


class SFTPError(MultiSSHError):
    """SFTP operation error, scoped to a single operation or transfer."""

    pass


class ErrorCategory(Enum):
    """Stable categories for transport failures."""

    HOST_NOT_FOUND = "host_not_found"
    CONNECTION_REFUSED = "connection_refused"
    TIMED_OUT = "timed_out"
    AUTHENTICATION_FAILED = "authentication_failed"
    PERMISSION_DENIED = "permission_denied"
    HOST_KEY_FAILED = "host_key_failed"
    UNKNOWN = "unknown"


# Checked in order; the first category with a matching substring wins.
_PATTERNS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.HOST_KEY_FAILED, ("host key verification failed", "host key is not trusted")),
    (ErrorCategory.AUTHENTICATION_FAILED, ("authentication",)),
    (ErrorCategory.PERMISSION_DENIED, ("permission denied", "eacces")),
    (
        ErrorCategory.CONNECTION_REFUSED,
        ("connection refused", "econnrefused", "connect call failed"),
    ),
    (
        ErrorCategory.HOST_NOT_FOUND,
        ("not found", "enotfound", "getaddrinfo", "name or service not known"),
    ),
    (ErrorCategory.TIMED_OUT, ("timed out", "etimedout", "timeout")),
]

_NOT_RETRYABLE = {
    ErrorCategory.AUTHENTICATION_FAILED,
    ErrorCategory.PERMISSION_DENIED,
    ErrorCategory.HOST_KEY_FAILED,
}

MESSAGES: dict[str, dict[ErrorCategory, str]] = {
    "en": {
        ErrorCategory.HOST_NOT_FOUND: "Host not found, check the host name",
        ErrorCategory.CONNECTION_REFUSED: "Connection refused, check the host and port",
        ErrorCategory.TIMED_OUT: "Connection timed out",
        ErrorCategory.AUTHENTICATION_FAILED: "Authentication failed, check the username and credentials",
        ErrorCategory.PERMISSION_DENIED: "Permission denied",
        ErrorCategory.HOST_KEY_FAILED: "Host key verification failed",
    },
    "zh": {
        ErrorCategory.HOST_NOT_FOUND: "找不到主机，请检查主机名",
        ErrorCategory.CONNECTION_REFUSED: "连接被拒绝，请检查主机和端口",
        ErrorCategory.TIMED_OUT: "连接超时",
        ErrorCategory.AUTHENTICATION_FAILED: "认证失败，请检查用户名和凭据",
        ErrorCategory.PERMISSION_DENIED: "权限被拒绝",
        ErrorCategory.HOST_KEY_FAILED: "主机密钥验证失败",
    },
}

DEFAULT_LOCALE = "en"


@dataclass(frozen=True)
class CategorizedError:
    """A transport error mapped onto a stable category."""

    category: ErrorCategory
    retryable: bool
    raw: str

    def describe(self, locale: str = DEFAULT_LOCALE) -> str:
        """Human-readable message; raw text only for unclassified errors."""
        if self.category is ErrorCategory.UNKNOWN:
            return self.raw or "Unknown error"
        return describe_category(self.category, locale)


def describe_category(category: ErrorCategory, locale: str = DEFAULT_LOCALE) -> str:
    """Return the localized message for a category, falling back to English."""
    catalog = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    return catalog.get(category) or MESSAGES[DEFAULT_LOCALE].get(category, category.value)


def categorize_error(message: str) -> CategorizedError:
    """Categorize a transport error message. Pure function of its input."""
    lowered = message.lower()
    for category, needles in _PATTERNS:
        if any(needle in lowered for needle in needles):
            return CategorizedError(category, category not in _NOT_RETRYABLE, message)
    return CategorizedError(ErrorCategory.UNKNOWN, True, message)


def categorize_exception(error: BaseException) -> CategorizedError:
    """Categorize an exception, preferring its type over its message."""
    message = str(error) or type(error).__name__
    category = None
    if isinstance(error, asyncssh.HostKeyNotVerifiable):
        category = ErrorCategory.HOST_KEY_FAILED
    elif isinstance(error, asyncssh.PermissionDenied):
        category = ErrorCategory.AUTHENTICATION_FAILED
    elif isinstance(error, socket.gaierror):
        category = ErrorCategory.HOST_NOT_FOUND
    elif isinstance(error, ConnectionRefusedError) or (
        isinstance(error, OSError) and error.errno == errno.ECONNREFUSED
    ):
        category = ErrorCategory.CONNECTION_REFUSED
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionTimeoutError)):
        category = ErrorCategory.TIMED_OUT

    if category is None:
        return categorize_error(message)
    return CategorizedError(category, category not in _NOT_RETRYABLE, message)
