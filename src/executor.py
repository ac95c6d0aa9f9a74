"""One-shot remote command execution over dedicated exec channels."""

import time
from typing import Dict, Optional

import paramiko

from .channels import remaining_time
from .config import Config
from .connection_manager import ConnectionManager
from .exceptions import NotConnected, OperationTimeout
from .logger import Logger
from .models import CommandResult


class CommandExecutor:
    """Runs commands on fresh exec channels, never on the interactive shell."""

    def __init__(self, config: Config, manager: ConnectionManager):
        self.config = config
        self.manager = manager
        self.logger = Logger.get_logger(__name__)
        self.read_size = 32768
        self.poll_interval = 0.01

    def execute(self, connection_id: str, command: str, timeout: Optional[float] = None,
                environment: Optional[Dict[str, str]] = None) -> CommandResult:
        """Run ``command`` and collect stdout, stderr and the exit code."""
        connection = self.manager.require_connected(connection_id)
        timeout = timeout or self.config.command_timeout
        transport = connection.transport
        if transport is None:
            raise NotConnected(f"Connection {connection_id} has no transport")

        deadline = time.monotonic() + timeout
        channel = connection.gate.open(
            lambda: transport.open_session(timeout=remaining_time(deadline)),
            what="exec channel",
            deadline=deadline,
        )
        try:
            if environment:
                channel.update_environment(environment)
            channel.exec_command(command)
            return self._collect(channel, command, timeout, deadline)
        except paramiko.SSHException as e:
            raise NotConnected(f"Command channel failed on {connection_id}: {e}")
        finally:
            channel.close()

    def _collect(self, channel: paramiko.Channel, command: str, timeout: float,
                 deadline: float) -> CommandResult:
        stdout = bytearray()
        stderr = bytearray()

        while True:
            progressed = False
            if channel.recv_ready():
                stdout.extend(channel.recv(self.read_size))
                progressed = True
            if channel.recv_stderr_ready():
                stderr.extend(channel.recv_stderr(self.read_size))
                progressed = True

            if channel.exit_status_ready() and not channel.recv_ready() \
                    and not channel.recv_stderr_ready():
                break
            if time.monotonic() > deadline:
                self.logger.warning(f"Command timed out after {timeout}s: {command[:80]}")
                raise OperationTimeout(f"Command did not complete within {timeout}s")
            if not progressed:
                time.sleep(self.poll_interval)

        exit_code = channel.recv_exit_status()
        if stderr.strip():
            self.logger.debug(f"Command '{command[:80]}' wrote to stderr: {bytes(stderr[:200])!r}")

        return CommandResult(
            output=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
            exit_code=exit_code,
        )
