"""Entry point for the multissh command line client."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import click

from multissh import __version__
from multissh.config import SettingsManager
from multissh.errors import MultiSSHError
from multissh.events import EventKind
from multissh.models import SessionConfig
from multissh.session import SessionManager


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity level."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    else:
        # Suppress all logging in non-verbose mode
        logging.basicConfig(level=logging.CRITICAL)


async def wait_connected(manager: SessionManager, session_id: str) -> bool:
    """Wait for the first successful connect, or for the session to give up."""
    connected = asyncio.Event()

    def on_connected(sid: str) -> None:
        if sid == session_id:
            connected.set()

    unsubscribe = manager.bus.subscribe(EventKind.SESSION_CONNECTED, on_connected)
    waiters = [
        asyncio.ensure_future(connected.wait()),
        asyncio.ensure_future(manager.wait_settled(session_id)),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        unsubscribe()
        for waiter in waiters:
            waiter.cancel()
    return connected.is_set()


def _report_errors(manager: SessionManager, session_id: str) -> None:
    def on_error(sid: str, message: str) -> None:
        if sid == session_id:
            click.echo(f"\r\nmultissh: {message}\r", err=True)

    def on_reconnecting(sid: str, attempt: int, delay_ms: int) -> None:
        if sid == session_id:
            click.echo(f"\r\nmultissh: reconnecting (attempt {attempt}, {delay_ms} ms)\r", err=True)

    manager.bus.subscribe(EventKind.SESSION_ERROR, on_error)
    manager.bus.subscribe(EventKind.SESSION_RECONNECTING, on_reconnecting)


async def run_shell(manager: SessionManager, config: SessionConfig) -> int:
    """Attach the local terminal to a remote shell until it goes away."""
    loop = asyncio.get_running_loop()
    session_id = await manager.create_session(config)
    _report_errors(manager, session_id)
    out = sys.stdout.buffer
    finished = asyncio.Event()

    def on_data(sid: str, data: bytes) -> None:
        if sid == session_id:
            out.write(data)
            out.flush()

    def on_disconnected(sid: str) -> None:
        if sid == session_id:
            finished.set()

    def sync_size() -> None:
        try:
            size = os.get_terminal_size()
        except OSError:
            return
        manager.resize_session(session_id, size.columns, size.lines)

    manager.bus.subscribe(EventKind.SESSION_DATA, on_data)
    manager.bus.subscribe(EventKind.SESSION_DISCONNECTED, on_disconnected)
    manager.bus.subscribe(EventKind.SESSION_CONNECTED, lambda sid: sync_size())

    if not await wait_connected(manager, session_id):
        await manager.cleanup()
        return 1

    stdin_fd = sys.stdin.fileno()
    interactive = sys.stdin.isatty()
    old_settings = None
    if interactive:
        import termios
        import tty

        old_settings = termios.tcgetattr(stdin_fd)
        tty.setraw(stdin_fd)
        loop.add_signal_handler(signal.SIGWINCH, sync_size)

    def on_stdin() -> None:
        data = os.read(stdin_fd, 1024)
        if not data:
            loop.remove_reader(stdin_fd)
            return
        manager.send_command(session_id, data)

    loop.add_reader(stdin_fd, on_stdin)
    settled = asyncio.ensure_future(manager.wait_settled(session_id))
    done_waiter = asyncio.ensure_future(finished.wait())
    try:
        await asyncio.wait([settled, done_waiter], return_when=asyncio.FIRST_COMPLETED)
    finally:
        loop.remove_reader(stdin_fd)
        if interactive:
            import termios

            loop.remove_signal_handler(signal.SIGWINCH)
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, old_settings)
        settled.cancel()
        done_waiter.cancel()
        await manager.cleanup()
    return 0 if finished.is_set() else 1


async def run_list(manager: SessionManager, config: SessionConfig, path: str) -> int:
    """Print a remote directory listing."""
    session_id = await manager.create_session(config)
    _report_errors(manager, session_id)
    try:
        if not await wait_connected(manager, session_id):
            return 1
        if path == ".":
            path = await manager.get_current_directory(session_id)
        for entry in await manager.list_files(session_id, path):
            mtime = entry.modified_at.strftime("%Y-%m-%d %H:%M") if entry.modified_at else "-"
            click.echo(
                f"{entry.permissions or '---------'}  {entry.size_human:>10}  {mtime}  {entry.name}"
                + ("/" if entry.is_dir else "")
            )
        return 0
    except MultiSSHError as e:
        click.echo(f"multissh: {e}", err=True)
        return 1
    finally:
        await manager.cleanup()


async def run_test(manager: SessionManager, config: SessionConfig) -> int:
    result = await manager.test_connection(config)
    click.echo(result.message)
    if result.server_version:
        click.echo(f"Server: {result.server_version}")
    return 0 if result.success else 1


@click.command()
@click.argument("connection")
@click.option("-p", "--port", default=22, help="SSH port (default: 22)")
@click.option("-i", "--identity", help="Path to SSH private key")
@click.option("-P", "--password", is_flag=True, help="Prompt for password authentication")
@click.option("-k", "--ask-passphrase", is_flag=True, help="Prompt for the private key passphrase")
@click.option("--test", "test_only", is_flag=True, help="Only test that the host accepts a login")
@click.option("--ls", "list_path", metavar="PATH", help="List a remote directory and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug output")
@click.version_option(__version__, prog_name="multissh")
def main(
    connection: str,
    port: int,
    identity: str | None,
    password: bool,
    ask_passphrase: bool,
    test_only: bool,
    list_path: str | None,
    verbose: bool,
) -> None:
    """multissh - SSH shell and SFTP client.

    CONNECTION is user@hostname.

    Examples:

        multissh user@server.example.com

        multissh user@host -p 2222 -i ~/.ssh/server_key

        multissh user@host --ls /var/log

        multissh user@host -P --test
    """
    private_key = None
    passphrase = None
    secret = click.prompt("Password", hide_input=True) if password else None
    if identity:
        try:
            private_key = Path(identity).expanduser().read_text()
        except OSError as e:
            raise click.ClickException(f"Cannot read identity file: {e}") from e
        if ask_passphrase:
            passphrase = click.prompt("Passphrase", hide_input=True)

    config = SessionConfig.from_string(
        connection, port=port, private_key=private_key, passphrase=passphrase, password=secret
    )
    # If no username, prompt for it
    if not config.username:
        config = config.with_username(click.prompt("Username"))

    setup_logging(verbose)
    manager = SessionManager(settings=SettingsManager().settings)

    if test_only:
        code = asyncio.run(run_test(manager, config))
    elif list_path:
        code = asyncio.run(run_list(manager, config, list_path))
    else:
        code = asyncio.run(run_shell(manager, config))
    sys.exit(code)


if __name__ == "__main__":
    main()
