"""Interactive shell streams with pushed output and buffered input."""

import codecs
import threading
import time
from typing import Callable, Optional, Union

import paramiko

from .config import Config
from .connection_manager import ConnectionManager
from .events import TERMINAL_CLOSE, TERMINAL_DATA, TERMINAL_ERROR, EventBus
from .exceptions import BackpressureError, NotConnected, ShellError
from .logger import Logger
from .models import Connection, ConnectionStatus

SHELL_ENVIRONMENT = {
    'LANG': 'en_US.UTF-8',
    'LC_ALL': 'en_US.UTF-8',
}


class ShellSession:
    """One interactive shell channel.

    A reader thread publishes output as it arrives; a writer thread drains
    the bounded input buffer into the channel, so ``write`` never blocks on
    the remote window.
    """

    def __init__(self, connection_id: str, channel: paramiko.Channel, bus: EventBus,
                 config: Config, on_finished: Optional[Callable[["ShellSession", bool], None]] = None):
        self.connection_id = connection_id
        self.channel = channel
        self.bus = bus
        self.config = config
        self.on_finished = on_finished
        self.logger = Logger.get_logger(__name__)

        self.buffer_limit = config.shell_write_buffer_limit
        self.read_size = config.shell_read_size
        self.poll_interval = config.shell_poll_interval

        self.running = False
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._finished = False
        self._finish_lock = threading.Lock()
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._err_decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._reader: Optional[threading.Thread] = None
        self._writer: Optional[threading.Thread] = None

    def start(self):
        self.running = True
        self._reader = threading.Thread(
            target=self._read_output, name=f"shell-read-{self.connection_id}", daemon=True
        )
        self._writer = threading.Thread(
            target=self._write_input, name=f"shell-write-{self.connection_id}", daemon=True
        )
        self._reader.start()
        self._writer.start()

    def write(self, data: Union[str, bytes]):
        """Queue bytes for the remote shell; raises BackpressureError when full."""
        payload = data.encode('utf-8') if isinstance(data, str) else bytes(data)
        with self._cond:
            if not self.running:
                raise ShellError(f"Shell for {self.connection_id} is closed")
            if len(self._buffer) + len(payload) > self.buffer_limit:
                raise BackpressureError(
                    f"Shell input buffer full ({len(self._buffer)} bytes pending)"
                )
            self._buffer.extend(payload)
            self._cond.notify_all()

    def pending_input(self) -> int:
        with self._cond:
            return len(self._buffer)

    def wait_drained(self, timeout: float = 5.0) -> bool:
        """Block until all queued input reached the channel."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._buffer and self.running:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return not self._buffer

    def resize(self, rows: int, cols: int):
        self.channel.resize_pty(width=cols, height=rows)
        self.logger.debug(f"Shell {self.connection_id} resized to {cols}x{rows}")

    def close(self):
        """Close the channel and stop both threads; safe to call repeatedly."""
        with self._cond:
            self.running = False
            self._cond.notify_all()
        try:
            self.channel.close()
        except Exception as e:
            self.logger.error(f"Error closing shell channel for {self.connection_id}: {e}")

        current = threading.current_thread()
        for thread in (self._reader, self._writer):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=1)
        self._finish(code=None)

    def _read_output(self):
        """Read output from the channel until it ends."""
        while self.running:
            try:
                if self.channel.recv_ready():
                    data = self.channel.recv(self.read_size)
                    if not data:
                        break
                    self._publish_output(self._decoder.decode(data), is_error=False)
                elif self.channel.recv_stderr_ready():
                    data = self.channel.recv_stderr(self.read_size)
                    self._publish_output(self._err_decoder.decode(data), is_error=True)
                elif self.channel.closed or self.channel.eof_received or self.channel.exit_status_ready():
                    break
                else:
                    time.sleep(self.poll_interval)
            except Exception as e:
                if self.running:
                    self.logger.error(f"Error reading shell output for {self.connection_id}: {e}")
                    self.bus.publish(TERMINAL_ERROR, {
                        'connectionId': self.connection_id,
                        'error': str(e),
                    })
                    self._stop_from_thread(lost=True)
                return

        if self.running:
            code = self.channel.recv_exit_status() if self.channel.exit_status_ready() else None
            self.logger.info(f"Shell {self.connection_id} output stream ended")
            self._finish(code)
            self._stop_from_thread(lost=False)

    def _write_input(self):
        """Send queued input, waiting for the remote window when it is full."""
        while True:
            with self._cond:
                while self.running and not self._buffer:
                    self._cond.wait()
                if not self.running:
                    return
                chunk = bytes(self._buffer[:self.read_size * 8])

            try:
                sent = self.channel.send(chunk)
            except Exception as e:
                if self.running:
                    self.logger.error(f"Error writing to shell {self.connection_id}: {e}")
                    self.bus.publish(TERMINAL_ERROR, {
                        'connectionId': self.connection_id,
                        'error': str(e),
                    })
                    self._stop_from_thread(lost=True)
                return

            if sent == 0:
                # Channel closed under us
                self._stop_from_thread(lost=False)
                return
            with self._cond:
                del self._buffer[:sent]
                self._cond.notify_all()

    def _publish_output(self, text: str, is_error: bool):
        if not text:
            return
        payload = {'connectionId': self.connection_id, 'data': text}
        if is_error:
            payload['isError'] = True
        self.bus.publish(TERMINAL_DATA, payload)

    def _finish(self, code: Optional[int]):
        with self._finish_lock:
            if self._finished:
                return
            self._finished = True
        self.bus.publish(TERMINAL_CLOSE, {'connectionId': self.connection_id, 'code': code})

    def _stop_from_thread(self, lost: bool):
        with self._cond:
            was_running = self.running
            self.running = False
            self._cond.notify_all()
        try:
            self.channel.close()
        except Exception as e:
            self.logger.debug(f"Error closing finished shell channel: {e}")
        if was_running and self.on_finished is not None:
            self.on_finished(self, lost)


class ShellManager:
    """One shell per connection: create, write, resize, close."""

    def __init__(self, config: Config, manager: ConnectionManager, bus: EventBus):
        self.config = config
        self.manager = manager
        self.bus = bus
        self.logger = Logger.get_logger(__name__)

    def create(self, connection_id: str, rows: Optional[int] = None, cols: Optional[int] = None,
               term: Optional[str] = None) -> ShellSession:
        """Open the interactive shell of a connected connection."""
        connection = self.manager.require_connected(connection_id)
        rows = int(rows or self.config.terminal_rows)
        cols = int(cols or self.config.terminal_cols)
        term = term or self.config.terminal_type

        with connection.lock:
            if connection.shell is not None:
                raise ShellError(f"A shell is already open for {connection_id}")

        transport = connection.transport
        if transport is None:
            raise NotConnected(f"Connection {connection_id} has no transport")
        channel = connection.gate.open(transport.open_session, what="shell channel")

        try:
            channel.update_environment(SHELL_ENVIRONMENT)
            channel.get_pty(term=term, width=cols, height=rows)
            channel.invoke_shell()
        except paramiko.SSHException as e:
            channel.close()
            raise ShellError(f"Failed to start shell on {connection_id}: {e}")

        session = ShellSession(connection_id, channel, self.bus, self.config, self._on_finished)
        with connection.lock:
            if connection.shell is not None or connection.status != ConnectionStatus.CONNECTED:
                channel.close()
                raise ShellError(f"Shell for {connection_id} could not be attached")
            connection.shell = session
        session.start()

        connection.add_terminal_output('info', f"Shell opened ({term} {cols}x{rows})")
        self.logger.info(f"Shell opened for {connection_id}")
        return session

    def write(self, connection_id: str, data: Union[str, bytes]):
        session = self._require_shell(connection_id)
        session.write(data)

    def resize(self, connection_id: str, rows: int, cols: int):
        """Forward a window change; no-op without a shell."""
        connection = self.manager.get(connection_id)
        session = connection.shell if connection is not None else None
        if session is None:
            return
        rows, cols = int(rows), int(cols)
        if rows <= 0 or cols <= 0:
            raise ShellError(f"Invalid terminal size {cols}x{rows}")
        session.resize(rows, cols)

    def close(self, connection_id: str):
        """Close the shell of a connection; idempotent."""
        connection = self.manager.get(connection_id)
        if connection is not None:
            self.release(connection)

    def release(self, connection: Connection):
        with connection.lock:
            session = connection.shell
            connection.shell = None
        if session is not None:
            session.close()
            self.logger.info(f"Shell closed for {connection.id}")

    def _require_shell(self, connection_id: str) -> ShellSession:
        connection = self.manager.get(connection_id)
        if connection is None:
            raise NotConnected(f"Connection {connection_id} does not exist")
        session = connection.shell
        if session is None:
            raise ShellError(f"No shell open for {connection_id}")
        connection.touch()
        return session

    def _on_finished(self, session: ShellSession, lost: bool):
        connection = self.manager.get(session.connection_id)
        if connection is None:
            return
        with connection.lock:
            if connection.shell is session:
                connection.shell = None

        transport = connection.transport
        if transport is None or not transport.is_active():
            self.manager.handle_transport_drop(session.connection_id, "Connection lost")
        elif lost:
            connection.add_terminal_output('warning', "Shell channel failed")
