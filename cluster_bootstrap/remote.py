"""Remote command execution on cluster nodes.

The orchestrator only depends on the RemoteExecutor protocol. SSHExecutor
implements it with paramiko; BoundedExecutor caps how many remote calls
are in flight at once across all node tasks.
"""

import asyncio
import io
import posixpath
import shlex
import socket
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import paramiko

from cluster_bootstrap.exceptions import RemoteCommandError, RemoteConnectionError
from cluster_bootstrap.logging_config import get_node_logger
from cluster_bootstrap.models.node import NodeSpec


@dataclass
class CommandResult:
    """Outcome of a remote command sequence."""

    stdout: str
    exit_code: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(Protocol):
    """Capability to run commands and place files on a node."""

    async def execute(self, node: NodeSpec, commands: Sequence[str]) -> CommandResult:
        """Run the commands in order as one script, stopping at the first failure.

        Raises:
            RemoteConnectionError: If the node cannot be reached
        """
        ...

    async def upload_file(
        self, node: NodeSpec, content: str, destination: str, mode: int = 0o644
    ) -> None:
        """Write content to a path on the node, creating parent directories.

        Raises:
            RemoteConnectionError: If the node cannot be reached
        """
        ...


async def run_checked(
    executor: RemoteExecutor, node: NodeSpec, commands: Sequence[str], what: str
) -> CommandResult:
    """Execute commands and raise if they exit non-zero.

    Args:
        executor: Executor to run through
        node: Target node
        commands: Command sequence
        what: Short description for the error message

    Returns:
        The successful CommandResult

    Raises:
        RemoteCommandError: If the sequence exits with a non-zero status
    """
    result = await executor.execute(node, commands)
    if not result.ok:
        raise RemoteCommandError(
            f"{what} failed on {node.name} with exit code {result.exit_code}",
            (result.stderr or result.stdout).strip() or None,
            exit_code=result.exit_code,
        )
    return result


READ_CHUNK = 32768
IDLE_POLL = 0.05


def drain_channel(channel: paramiko.Channel, idle_timeout: float | None) -> tuple[str, str]:
    """Read a command's stdout and stderr together until it exits.

    Reading one stream to the end before touching the other stalls the
    command once the unread stream fills its window.

    Args:
        channel: Channel the command runs on
        idle_timeout: Seconds without output on either stream before giving up

    Returns:
        Tuple of (stdout, stderr)

    Raises:
        socket.timeout: If the command stays silent for longer than idle_timeout
    """
    stdout, stderr = bytearray(), bytearray()
    last_activity = time.monotonic()
    while not channel.exit_status_ready():
        busy = False
        if channel.recv_ready():
            stdout += channel.recv(READ_CHUNK)
            busy = True
        if channel.recv_stderr_ready():
            stderr += channel.recv_stderr(READ_CHUNK)
            busy = True
        if busy:
            last_activity = time.monotonic()
            continue
        if idle_timeout is not None and time.monotonic() - last_activity > idle_timeout:
            raise socket.timeout(f"no output for {idle_timeout:g}s")
        time.sleep(IDLE_POLL)

    # The command has exited, so what is left fits in the windows
    while True:
        chunk = channel.recv(READ_CHUNK)
        if not chunk:
            break
        stdout += chunk
    while True:
        chunk = channel.recv_stderr(READ_CHUNK)
        if not chunk:
            break
        stderr += chunk
    return stdout.decode(errors="replace"), stderr.decode(errors="replace")


class SSHExecutor:
    """RemoteExecutor over SSH using paramiko.

    paramiko is blocking, so each call runs in a worker thread. A new
    connection is opened per call because nodes change host keys and drop
    connections when they reboot into the installed OS.
    """

    def __init__(
        self,
        user: str = "root",
        key_path: Path | None = None,
        connect_timeout: float = 10.0,
        command_timeout: float = 900.0,
    ):
        """Initialize the executor.

        Args:
            user: Login user on every node
            key_path: Private key file; the SSH agent is used when None
            connect_timeout: Seconds allowed for TCP connect and handshake
            command_timeout: Seconds of silence allowed on a running command
        """
        self.user = user
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def execute(self, node: NodeSpec, commands: Sequence[str]) -> CommandResult:
        return await asyncio.to_thread(self._execute, node, list(commands))

    async def upload_file(
        self, node: NodeSpec, content: str, destination: str, mode: int = 0o644
    ) -> None:
        await asyncio.to_thread(self._upload, node, content, destination, mode)

    def _connect(self, node: NodeSpec) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        # Host keys change when the rescue system is replaced by the installed OS
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                node.ssh_host,
                port=node.ssh_port,
                username=self.user,
                key_filename=str(self.key_path) if self.key_path else None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                look_for_keys=self.key_path is None,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                f"Cannot connect to {node.name} at {node.ssh_host}:{node.ssh_port}",
                str(e) or type(e).__name__,
            )
        return client

    def _execute(self, node: NodeSpec, commands: list[str]) -> CommandResult:
        script = "\n".join(["set -e", *commands])
        log = get_node_logger(__name__, node.name)
        client = self._connect(node)
        try:
            log.debug(f"$ {' && '.join(commands)}")
            _, stdout, _ = client.exec_command(script, timeout=self.command_timeout)

            output, error_output = drain_channel(stdout.channel, self.command_timeout)
            for line in output.splitlines():
                log.debug(line)
            exit_code = stdout.channel.recv_exit_status()

            log.debug(f"exit status {exit_code}")
            return CommandResult(
                stdout=output.rstrip("\n"), exit_code=exit_code, stderr=error_output
            )

        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise RemoteConnectionError(
                f"Connection to {node.name} lost while running a command",
                str(e) or type(e).__name__,
            )
        finally:
            client.close()

    def _upload(self, node: NodeSpec, content: str, destination: str, mode: int) -> None:
        client = self._connect(node)
        try:
            parent = posixpath.dirname(destination)
            if parent:
                _, stdout, _ = client.exec_command(f"mkdir -p {shlex.quote(parent)}")
                stdout.channel.recv_exit_status()

            get_node_logger(__name__, node.name).debug(
                f"uploading {len(content)} bytes to {destination}"
            )
            with client.open_sftp() as sftp:
                sftp.putfo(io.BytesIO(content.encode()), destination)
                sftp.chmod(destination, mode)

        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise RemoteConnectionError(
                f"Failed to upload {destination} to {node.name}", str(e) or type(e).__name__
            )
        finally:
            client.close()


class BoundedExecutor:
    """Wrap an executor so at most ``limit`` remote calls run concurrently.

    The limit applies per call, not per node task, so tasks parked on the
    cluster barrier do not occupy a slot.
    """

    def __init__(self, inner: RemoteExecutor, limit: int):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.inner = inner
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)

    async def execute(self, node: NodeSpec, commands: Sequence[str]) -> CommandResult:
        async with self._semaphore:
            return await self.inner.execute(node, commands)

    async def upload_file(
        self, node: NodeSpec, content: str, destination: str, mode: int = 0o644
    ) -> None:
        async with self._semaphore:
            await self.inner.upload_file(node, content, destination, mode)
