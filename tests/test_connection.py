"""Tests for connection options, backoff and probing."""

import asyncio
from unittest.mock import patch

import asyncssh
import pytest

from multissh.config import ManagerSettings
from multissh.connection import (
    SessionClient,
    build_connect_options,
    compute_backoff_ms,
    open_connection,
    check_connection,
)
from multissh.errors import ConnectionTimeoutError, SessionError
from multissh.models import AuthType, SessionConfig

from .mocks.ssh_mock import FakeConnection, connect_sequence, create_config


class TestBackoff:
    def test_doubles_then_caps(self):
        assert [compute_backoff_ms(n) for n in range(1, 7)] == [
            1000,
            2000,
            4000,
            8000,
            10000,
            10000,
        ]

    def test_custom_base(self):
        assert compute_backoff_ms(3, base_ms=100, max_ms=300) == 300


class TestConnectOptions:
    def test_password_auth(self):
        settings = ManagerSettings(known_hosts="/tmp/known_hosts", keepalive_interval=0)
        options = build_connect_options(create_config(), settings)

        assert options["host"] == "test.example.com"
        assert options["port"] == 22
        assert options["username"] == "testuser"
        assert options["password"] == "s3cret-pw"
        assert options["client_keys"] is None
        assert options["known_hosts"] == "/tmp/known_hosts"
        assert "keepalive_interval" not in options

    def test_keepalive(self):
        options = build_connect_options(create_config(), ManagerSettings(keepalive_interval=15))
        assert options["keepalive_interval"] == 15

    def test_key_auth(self):
        key = asyncssh.generate_private_key("ssh-ed25519")
        config = SessionConfig(
            id="k",
            name="Key",
            host="h",
            username="u",
            auth_type=AuthType.KEY,
            private_key=key.export_private_key().decode(),
        )

        options = build_connect_options(config, ManagerSettings())

        assert len(options["client_keys"]) == 1
        assert "password" not in options

    def test_invalid_key(self):
        config = SessionConfig(
            id="k", name="Key", host="h", username="u", auth_type=AuthType.KEY, private_key="junk"
        )

        with pytest.raises(SessionError, match="invalid private key"):
            build_connect_options(config, ManagerSettings())

    def test_missing_key(self):
        config = SessionConfig(id="k", name="Key", host="h", username="u", auth_type=AuthType.KEY)

        with pytest.raises(SessionError, match="no private key"):
            build_connect_options(config, ManagerSettings())

    def test_no_credentials_falls_back_to_default_keys(self):
        config = SessionConfig(id="a", name="Agent", host="h", username="u")

        options = build_connect_options(config, ManagerSettings())

        assert "client_keys" not in options
        assert "password" not in options


class TestOpenConnection:
    @pytest.mark.asyncio
    async def test_passes_client_factory(self):
        conn = FakeConnection()
        fake_connect, calls = connect_sequence(conn)
        client = SessionClient()
        with patch("asyncssh.connect", side_effect=fake_connect):
            result = await open_connection(
                create_config(), ManagerSettings(), client_factory=lambda: client
            )

        assert result is conn
        assert conn.client is client

    @pytest.mark.asyncio
    async def test_deadline(self):
        fake_connect, _ = connect_sequence("hang")
        with patch("asyncssh.connect", side_effect=fake_connect):
            with pytest.raises(ConnectionTimeoutError):
                await open_connection(create_config(), ManagerSettings(), timeout=0.05)

    def test_client_records_lost_error(self):
        client = SessionClient()
        error = ConnectionResetError("reset")

        client.connection_lost(error)

        assert client.lost_error is error


class TestConnectionCheck:
    @pytest.mark.asyncio
    async def test_success(self):
        conn = FakeConnection()
        fake_connect, _ = connect_sequence(conn)
        with patch("asyncssh.connect", side_effect=fake_connect):
            result = await check_connection(create_config())

        assert result.success is True
        assert result.message.startswith("Connected in")
        assert result.server_version == "SSH-2.0-OpenSSH_9.6"
        assert conn.closed is True

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self):
        fake_connect, _ = connect_sequence(asyncssh.PermissionDenied("denied"))
        with patch("asyncssh.connect", side_effect=fake_connect):
            result = await check_connection(create_config())

        assert result.success is False
        assert result.message.startswith("Authentication failed")

    @pytest.mark.asyncio
    async def test_uses_test_timeout(self):
        settings = ManagerSettings(connect_timeout=60, test_timeout=0.05)
        fake_connect, _ = connect_sequence("hang")
        with patch("asyncssh.connect", side_effect=fake_connect):
            result = await asyncio.wait_for(check_connection(create_config(), settings), 2)

        assert result.success is False
        assert result.message == "Connection timed out"
