"""Opening SSH connections: options, deadlines, backoff and probing."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from multissh.config import ManagerSettings
from multissh.errors import ConnectionTimeoutError, SessionError, categorize_exception
from multissh.models import AuthType, SessionConfig

logger = logging.getLogger(__name__)


class SessionClient(asyncssh.SSHClient):
    """Remembers why the connection went away."""

    def __init__(self) -> None:
        self.lost_error: Exception | None = None

    def connection_lost(self, exc: Exception | None) -> None:
        self.lost_error = exc


@dataclass
class ConnectionTestResult:
    """Outcome of a one-off connection check."""

    success: bool
    message: str
    connection_time: float  # seconds
    server_version: str | None = None


def compute_backoff_ms(attempt: int, base_ms: int = 1000, max_ms: int = 10000) -> int:
    """Delay before reconnect attempt number ``attempt`` (1-based)."""
    attempt = max(attempt, 1)
    return min(base_ms * 2 ** (attempt - 1), max_ms)


def _known_hosts(settings: ManagerSettings):
    if settings.known_hosts:
        return settings.known_hosts
    # Use system known_hosts file for host key verification
    known_hosts_path = Path.home() / ".ssh" / "known_hosts"
    return str(known_hosts_path) if known_hosts_path.exists() else ()


def build_connect_options(config: SessionConfig, settings: ManagerSettings) -> dict:
    """Translate a session config into asyncssh.connect() keyword arguments."""
    options = {
        "host": config.host,
        "port": config.port,
        "username": config.username,
        "known_hosts": _known_hosts(settings),
    }
    if settings.keepalive_interval:
        options["keepalive_interval"] = settings.keepalive_interval

    if config.auth_type == AuthType.KEY:
        if not config.private_key:
            raise SessionError("Authentication failed: no private key supplied")
        try:
            key = asyncssh.import_private_key(config.private_key, config.passphrase)
        except (asyncssh.KeyImportError, ValueError) as e:
            raise SessionError(f"Authentication failed: invalid private key ({e})") from e
        options["client_keys"] = [key]
        logger.debug("Using key authentication for %s", config)
    elif config.password is not None:
        options["password"] = config.password
        options["client_keys"] = None
        logger.debug("Using password authentication for %s", config)
    else:
        # Leave client_keys unset so agent and default keys are tried
        logger.debug("Using agent or default keys for %s", config)
    return options


async def open_connection(
    config: SessionConfig,
    settings: ManagerSettings,
    timeout: float | None = None,
    client_factory: Callable[[], asyncssh.SSHClient] | None = None,
) -> asyncssh.SSHClientConnection:
    """Connect with a hard deadline; the attempt is cancelled when it expires."""
    options = build_connect_options(config, settings)
    if client_factory is not None:
        options["client_factory"] = client_factory
    deadline = settings.connect_timeout if timeout is None else timeout

    logger.debug("Connecting to %s (timeout %.1fs)", config, deadline)
    try:
        return await asyncio.wait_for(asyncssh.connect(**options), timeout=deadline)
    except asyncio.TimeoutError as e:
        raise ConnectionTimeoutError("connection timeout") from e


async def check_connection(
    config: SessionConfig, settings: ManagerSettings | None = None
) -> ConnectionTestResult:
    """Check that a config can connect and authenticate, then hang up.

    Uses the shorter test deadline and never raises for connection failures.
    """
    settings = settings or ManagerSettings()
    started = time.monotonic()
    try:
        conn = await open_connection(config, settings, timeout=settings.test_timeout)
    except (SessionError, asyncssh.Error, OSError) as e:
        elapsed = time.monotonic() - started
        error = categorize_exception(e)
        logger.info("Connection test for %s failed: %s", config, e)
        return ConnectionTestResult(False, error.describe(settings.locale), elapsed)

    elapsed = time.monotonic() - started
    try:
        server_version = conn.get_extra_info("server_version")
    finally:
        conn.close()
        await conn.wait_closed()
    logger.info("Connection test for %s succeeded in %.0f ms", config, elapsed * 1000)
    return ConnectionTestResult(
        True,
        f"Connected in {elapsed * 1000:.0f} ms",
        elapsed,
        server_version=server_version,
    )
