"""Shared fixtures: in-memory stand-ins for paramiko transports, channels and SFTP."""

import errno
import io
import posixpath
import stat
import threading
import time
from typing import Callable, Dict, List, Optional
from unittest.mock import MagicMock

import paramiko
import pytest

from sshcode import file_transfer
from sshcode.config import Config
from sshcode.connection_manager import ConnectionManager
from sshcode.events import EventBus
from sshcode.exceptions import AuthFailure, NetworkUnreachable
from sshcode.models import PasswordAuth

HANG = object()


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeChannel:
    """Channel double covering the exec and interactive shell paths."""

    def __init__(self, transport: "FakeTransport"):
        self.transport = transport
        self._lock = threading.Lock()
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._exit_status: Optional[int] = None
        self.closed = False
        self.eof_received = False
        self.environment: Dict[str, str] = {}
        self.command: Optional[str] = None
        self.pty = None
        self.shell = False
        self.resized: List[tuple] = []
        self.sent = bytearray()

    def update_environment(self, environment):
        self.environment.update(environment)

    def exec_command(self, command):
        self.command = command
        self.transport.executed.append(command)
        handler = self.transport.commands.get(command)
        if handler is HANG:
            return
        if handler is None:
            out, err, code = "", f"sh: {command}: command not found\n", 127
        elif callable(handler):
            out, err, code = handler()
        else:
            out, err, code = handler
        self.feed(out)
        self.feed_stderr(err)
        self.finish(code)

    def get_pty(self, term="vt100", width=80, height=24):
        self.pty = (term, width, height)

    def invoke_shell(self):
        self.shell = True

    def resize_pty(self, width=80, height=24):
        self.resized.append((width, height))

    def feed(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            self._stdout.extend(data)

    def feed_stderr(self, data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            self._stderr.extend(data)

    def finish(self, code: int = 0):
        self._exit_status = code
        self.eof_received = True

    def recv_ready(self):
        with self._lock:
            return bool(self._stdout)

    def recv(self, size):
        with self._lock:
            chunk = bytes(self._stdout[:size])
            del self._stdout[:size]
            return chunk

    def recv_stderr_ready(self):
        with self._lock:
            return bool(self._stderr)

    def recv_stderr(self, size):
        with self._lock:
            chunk = bytes(self._stderr[:size])
            del self._stderr[:size]
            return chunk

    def exit_status_ready(self):
        return self._exit_status is not None

    def recv_exit_status(self):
        return -1 if self._exit_status is None else self._exit_status

    def send(self, data):
        if self.closed:
            raise OSError("Socket is closed")
        self.sent.extend(data)
        if self.transport.echo:
            self.feed(data)
        return len(data)

    def close(self):
        self.closed = True


class FakeSFTPFile:
    def __init__(self, sftp: "FakeSFTP", path: str, mode: str):
        self.sftp = sftp
        self.path = path
        self.mode = mode
        self.pipelined = False
        if "r" in mode:
            self._buffer = io.BytesIO(bytes(sftp.files[path]))
        else:
            self._buffer = io.BytesIO()

    def set_pipelined(self, pipelined=True):
        self.pipelined = pipelined

    def prefetch(self, file_size=None):
        pass

    def read(self, size=-1):
        return self._buffer.read(size)

    def write(self, data):
        if self.sftp.fail_writes_after is not None and self._buffer.tell() >= self.sftp.fail_writes_after:
            raise EOFError("Server connection dropped")
        self._buffer.write(data)

    def close(self):
        if "w" in self.mode:
            self.sftp._store(self.path, self._buffer.getvalue())

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSFTP:
    """In-memory SFTP server view with the error behaviour of paramiko."""

    def __init__(self, home: str = "/home/user"):
        self.home = home
        self.files: Dict[str, bytes] = {}
        self.mtimes: Dict[str, int] = {}
        self.dirs = {"/", "/home", home, "/tmp"}
        self.readonly_dirs = set()
        self.unreadable = set()
        self.clock = 1_700_000_000
        self.channel = MagicMock(closed=False)
        self.closed = False
        self.fail_writes_after: Optional[int] = None
        self.posix_rename_supported = True

    def _store(self, path: str, data: bytes):
        self.clock += 1
        self.files[path] = bytes(data)
        self.mtimes[path] = self.clock

    def _check_parent(self, path: str, write: bool = False):
        parent = posixpath.dirname(path) or "/"
        if parent not in self.dirs:
            raise IOError(errno.ENOENT, "No such file")
        if write and parent in self.readonly_dirs:
            raise IOError(errno.EACCES, "Permission denied")

    def put_file(self, path: str, data: bytes):
        self._store(path, data)

    def mkdir(self, path: str):
        self.dirs.add(path)

    def get_channel(self):
        return self.channel

    def normalize(self, path):
        return self.home if path == "." else path

    def listdir_attr(self, path="."):
        if path in self.unreadable:
            raise IOError(errno.EACCES, "Permission denied")
        if path not in self.dirs:
            raise IOError(errno.ENOENT, "No such file")
        prefix = path.rstrip("/") + "/"
        entries = []
        for directory in self.dirs:
            if directory != path and directory.startswith(prefix) and "/" not in directory[len(prefix):]:
                entries.append(self._attr(directory))
        for name in self.files:
            if name.startswith(prefix) and "/" not in name[len(prefix):]:
                entries.append(self._attr(name))
        return entries

    def _attr(self, path: str) -> paramiko.SFTPAttributes:
        attr = paramiko.SFTPAttributes()
        attr.filename = posixpath.basename(path)
        if path in self.dirs:
            attr.st_mode = stat.S_IFDIR | 0o755
            attr.st_size = 4096
            attr.st_mtime = self.clock
        else:
            attr.st_mode = stat.S_IFREG | 0o644
            attr.st_size = len(self.files[path])
            attr.st_mtime = self.mtimes[path]
        return attr

    def stat(self, path):
        if path not in self.dirs and path not in self.files:
            raise IOError(errno.ENOENT, "No such file")
        return self._attr(path)

    def open(self, path, mode="r"):
        if "w" in mode:
            self._check_parent(path, write=True)
        elif path not in self.files:
            raise IOError(errno.ENOENT, "No such file")
        return FakeSFTPFile(self, path, mode)

    def posix_rename(self, old, new):
        if not self.posix_rename_supported:
            raise IOError("Operation unsupported")
        self._move(old, new)

    def rename(self, old, new):
        if new in self.files:
            raise IOError("Failure")
        self._move(old, new)

    def _move(self, old, new):
        if old not in self.files:
            raise IOError(errno.ENOENT, "No such file")
        self._check_parent(new, write=True)
        self.files[new] = self.files.pop(old)
        self.mtimes[new] = self.mtimes.pop(old)

    def remove(self, path):
        if path not in self.files:
            raise IOError(errno.ENOENT, "No such file")
        del self.files[path]
        del self.mtimes[path]

    def close(self):
        self.closed = True
        self.channel.closed = True


class FakeTransport:
    def __init__(self, commands: Optional[Dict] = None, sftp: Optional[FakeSFTP] = None):
        self.active = False
        self.commands = commands if commands is not None else {}
        self.executed: List[str] = []
        self.channels: List[FakeChannel] = []
        self.refusals = 0
        self.echo = True
        self.sftp = sftp or FakeSFTP()
        self.keepalive = None
        self.open_timeouts: List[Optional[float]] = []

    def is_active(self):
        return self.active

    def set_keepalive(self, interval):
        self.keepalive = interval

    def open_session(self, timeout=None):
        self.open_timeouts.append(timeout)
        if not self.active:
            raise paramiko.SSHException("SSH session not active")
        if self.refusals > 0:
            self.refusals -= 1
            raise paramiko.ChannelException(1, "Administratively prohibited")
        channel = FakeChannel(self)
        self.channels.append(channel)
        return channel


class FakeClient:
    def __init__(self, transport: FakeTransport):
        self._transport = transport
        self.closed = False

    def get_transport(self):
        return None if self.closed else self._transport

    def close(self):
        self.closed = True
        self._transport.active = False


class FakeClientFactory:
    """Stands in for SSHClientFactory; accepts one password."""

    def __init__(self, password: str = "secret"):
        self.password = password
        self.commands: Dict = {}
        self.unreachable = set()
        self.clients: List[FakeClient] = []
        self.sockets: List[MagicMock] = []
        self.auth_hook: Optional[Callable] = None
        self.host_key_verify_callback = None

    def set_host_key_verify_callback(self, callback):
        self.host_key_verify_callback = callback

    def open_socket(self, host, port):
        if host in self.unreachable:
            raise NetworkUnreachable(f"Connection refused by {host}:{port}")
        sock = MagicMock(name=f"socket-{host}")
        self.sockets.append(sock)
        return sock

    def create_client(self):
        client = FakeClient(FakeTransport(commands=self.commands))
        self.clients.append(client)
        return client

    def authenticate(self, client, sock, connection_config):
        if self.auth_hook is not None:
            self.auth_hook(client, connection_config)
        credentials = connection_config.credentials
        if isinstance(credentials, PasswordAuth) and credentials.password != self.password:
            raise AuthFailure("Authentication failed, check username and password/key")
        if not client.closed:
            client._transport.active = True


@pytest.fixture
def config(tmp_path):
    config = Config(tmp_path / "home")
    config.command_timeout = 2
    config.channel_open_backoff = 0.001
    config.shell_poll_interval = 0.001
    config.watch_interval = 0.05
    config.monitor_interval = 0.05
    config.encryption_key_iterations = 1000
    return config


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def manager(config, factory):
    manager = ConnectionManager(config, client_factory=factory)
    yield manager
    manager.disconnect_all()


@pytest.fixture
def bus(config):
    return EventBus(config.event_queue_size, config.event_idle_timeout)


@pytest.fixture(autouse=True)
def fake_open_sftp(monkeypatch):
    """SFTP handles come from the fake transport's in-memory server."""
    monkeypatch.setattr(file_transfer, "open_sftp", lambda transport: transport.sftp)


def connection_params(connection_id: str = "c1", **overrides):
    params = {
        "id": connection_id,
        "host": "example.com",
        "port": 22,
        "username": "user",
        "authType": "password",
        "password": "secret",
    }
    params.update(overrides)
    return params


@pytest.fixture
def connect(manager):
    """Connect through the manager and return the live Connection."""

    def _connect(connection_id: str = "c1", **overrides):
        result = manager.connect(connection_params(connection_id, **overrides))
        assert result == {"success": True, "connectionId": connection_id}
        return manager.get(connection_id)

    return _connect
