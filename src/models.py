"""Data models for connections, files and telemetry."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from .exceptions import ConfigurationError, SessionError
from .keys import read_key_file


class ConnectionStatus(str, Enum):
    """Lifecycle states of a connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.FAILED,
        ConnectionStatus.CANCELLED,
    },
    ConnectionStatus.CONNECTED: {
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.FAILED,
    },
}

# Terminal states an id may be reconnected from
REPLACEABLE_STATUSES = frozenset({
    ConnectionStatus.FAILED,
    ConnectionStatus.CANCELLED,
    ConnectionStatus.DISCONNECTED,
})


@dataclass(frozen=True)
class PasswordAuth:
    """Password credentials."""

    auth_type: ClassVar[str] = "password"

    password: str = field(repr=False)


@dataclass(frozen=True)
class KeyAuth:
    """Private key credentials (key text, optionally passphrase protected)."""

    auth_type: ClassVar[str] = "key"

    key_content: str = field(repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)


Credentials = Union[PasswordAuth, KeyAuth]


def _present(value: Any) -> bool:
    return value is not None and value != ""


@dataclass(frozen=True)
class ConnectionConfig:
    """Validated parameters for one connect attempt."""

    id: str
    host: str
    username: str
    credentials: Credentials
    port: int = 22
    name: str = ""

    @property
    def auth_type(self) -> str:
        return self.credentials.auth_type

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_port: int = 22,
                  max_key_size: int = 64 * 1024) -> "ConnectionConfig":
        """Build a config from caller-supplied fields.

        Accepts ``authType`` plus ``password`` for password auth, or exactly
        one of ``keyContent``/``privateKey`` (inline text) and ``keyPath``
        for key auth. Mixed or missing credentials are rejected.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Connection parameters must be an object")

        for required in ("id", "host", "username"):
            if not _present(data.get(required)):
                raise ConfigurationError(f"Missing required field: {required}")

        port = data.get("port") or default_port
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid port number: {data.get('port')}")
        if not 1 <= port <= 65535:
            raise ConfigurationError(f"Port must be between 1 and 65535, got {port}")

        auth_type = data.get("authType") or "password"
        password = data.get("password")
        inline_key = data.get("keyContent") or data.get("privateKey")
        key_path = data.get("keyPath")

        if auth_type == "password":
            if _present(inline_key) or _present(key_path):
                raise ConfigurationError("Password authentication does not accept key material")
            if not _present(password):
                raise ConfigurationError("Missing credentials: password is required")
            credentials = PasswordAuth(password=password)
        elif auth_type == "key":
            if _present(password):
                raise ConfigurationError("Key authentication does not accept a password")
            if _present(inline_key) and _present(key_path):
                raise ConfigurationError("Provide either key content or a key path, not both")
            if _present(inline_key):
                key_content = inline_key
            elif _present(key_path):
                key_content = read_key_file(key_path, max_key_size)
            else:
                raise ConfigurationError("Missing credentials: private key is required")
            credentials = KeyAuth(key_content=key_content, passphrase=data.get("passphrase") or None)
        else:
            raise ConfigurationError(f"Unknown authType: {auth_type}")

        return cls(
            id=str(data["id"]),
            host=str(data["host"]).strip(),
            username=str(data["username"]),
            credentials=credentials,
            port=port,
            name=data.get("name") or f"{data['username']}@{data['host']}",
        )


@dataclass
class FileNode:
    """One entry of a remote directory listing."""

    name: str
    path: str
    type: str
    size: Optional[int] = None
    modified: Optional[str] = None
    permissions: Optional[str] = None
    children: Optional[List["FileNode"]] = None

    @property
    def is_directory(self) -> bool:
        return self.type == "directory"

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name, "path": self.path, "type": self.type}
        for key in ("size", "modified", "permissions"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.children is not None:
            result["children"] = [child.to_dict() for child in self.children]
        return result


@dataclass
class SystemInfo:
    """Latest telemetry snapshot of a remote host."""

    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0
    network_up: float = 0.0
    network_down: float = 0.0
    last_update: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu": self.cpu,
            "memory": self.memory,
            "disk": self.disk,
            "networkUp": self.network_up,
            "networkDown": self.network_down,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
        }


@dataclass
class NetworkHistory:
    """Previous cumulative byte counters, used only to derive rates."""

    last_network_down: int
    last_network_up: int
    last_update_time: float


@dataclass
class CommandResult:
    """Outcome of a one-shot remote command."""

    output: str
    stderr: str
    exit_code: int

    def to_dict(self) -> Dict[str, Any]:
        return {"output": self.output, "stderr": self.stderr, "exitCode": self.exit_code}


class Connection:
    """Live state of one SSH connection.

    Subordinate handles (``client``, ``shell``, ``sftp``) belong to this
    connection only and are guarded by ``lock``.
    """

    def __init__(self, config: ConnectionConfig, output_limit: int = 1000, output_keep: int = 500):
        self.config = config
        self.status = ConnectionStatus.CONNECTING
        self.connect_step = 0
        self.error_message: Optional[str] = None
        self.connected_at: Optional[datetime] = None
        self.last_activity = datetime.now()

        self.socket = None
        self.client = None
        self.gate = None
        self.shell = None
        self.sftp = None

        self.current_working_directory: Optional[str] = None
        self.terminal_output: List[Dict[str, Any]] = []
        self.current_command = ""
        self.output_limit = output_limit
        self.output_keep = output_keep

        self.system_info = SystemInfo()
        self.network_history: Optional[NetworkHistory] = None

        self.lock = threading.RLock()

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def transport(self):
        """The underlying paramiko transport, if the client is open."""
        if self.client is None:
            return None
        return self.client.get_transport()

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def transition(self, new_status: ConnectionStatus):
        """Move to ``new_status``; raises SessionError for undefined transitions."""
        with self.lock:
            if new_status not in _TRANSITIONS.get(self.status, ()):
                raise SessionError(
                    f"Invalid status transition for {self.id}: "
                    f"{self.status.value} -> {new_status.value}"
                )
            self.status = new_status
            self.last_activity = datetime.now()

    def touch(self):
        self.last_activity = datetime.now()

    def add_terminal_output(self, kind: str, content: str):
        """Append a status line, trimming the history when it grows too long."""
        with self.lock:
            self.terminal_output.append({
                "type": kind,
                "content": content,
                "timestamp": datetime.now().isoformat(),
            })
            if len(self.terminal_output) > self.output_limit:
                self.terminal_output = self.terminal_output[-self.output_keep:]

    def to_dict(self) -> Dict[str, Any]:
        """Caller-visible snapshot; never includes credentials or handles."""
        with self.lock:
            return {
                "id": self.id,
                "name": self.config.name,
                "host": self.config.host,
                "port": self.config.port,
                "username": self.config.username,
                "authType": self.config.auth_type,
                "status": self.status.value,
                "connectStep": self.connect_step,
                "errorMessage": self.error_message,
                "connectedAt": self.connected_at.isoformat() if self.connected_at else None,
                "lastActivity": self.last_activity.isoformat(),
                "currentWorkingDirectory": self.current_working_directory,
                "currentCommand": self.current_command,
                "hasShell": self.shell is not None,
                "hasSftp": self.sftp is not None,
                "systemInfo": self.system_info.to_dict(),
                "terminalOutput": list(self.terminal_output),
            }
