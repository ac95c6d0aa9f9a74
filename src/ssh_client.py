"""Transport setup on top of Paramiko: sockets, host keys, authentication."""

import binascii
import hashlib
import ipaddress
import re
import socket
import threading
from typing import Callable, Optional

import paramiko

from .config import Config
from .exceptions import AuthFailure, ConfigurationError, NetworkUnreachable, OperationTimeout
from .keys import load_private_key
from .logger import Logger
from .models import ConnectionConfig, KeyAuth, PasswordAuth

HOSTNAME_PATTERN = re.compile(
    r'^(?=.{1,253}$)(?!-)[a-zA-Z0-9-]{1,63}(?<!-)(\.[a-zA-Z0-9-]{1,63})*$'
)

SFTP_WINDOW_SIZE = 16 * 1024 * 1024
SFTP_MAX_PACKET_SIZE = 32 * 1024


def key_fingerprint(key: paramiko.PKey) -> str:
    """SHA256 fingerprint in OpenSSH notation."""
    digest = hashlib.sha256(key.asbytes()).digest()
    encoded = binascii.b2a_base64(digest).decode('utf-8').strip().rstrip('=')
    return f"SHA256:{encoded}"


class HostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Decides about host keys that are not in known_hosts yet.

    With a verification callback the caller decides. Without one, unknown
    keys are trusted on first use unless strict checking is enabled.
    Keys that contradict known_hosts never reach this policy; paramiko
    rejects them with BadHostKeyException.
    """

    def __init__(self, verify_callback: Optional[Callable[[str, str, str], bool]] = None,
                 strict: bool = False):
        self.verify_callback = verify_callback
        self.strict = strict
        self.logger = Logger.get_logger(__name__)

    def missing_host_key(self, client, hostname, key):
        fingerprint = key_fingerprint(key)
        key_type = key.get_name()

        if self.verify_callback is not None:
            accepted = self.verify_callback(hostname, key_type, fingerprint)
        elif self.strict:
            accepted = False
        else:
            self.logger.warning(f"Trusting new host key for {hostname}: {key_type} {fingerprint}")
            accepted = True

        if not accepted:
            raise paramiko.SSHException(f"Host key verification failed for {hostname}")
        client.get_host_keys().add(hostname, key_type, key)


class SSHClientFactory:
    """Opens sockets and authenticated ``paramiko.SSHClient`` instances."""

    _known_hosts_lock = threading.Lock()

    def __init__(self, config: Config):
        self.config = config
        self.logger = Logger.get_logger(__name__)
        self.host_key_verify_callback: Optional[Callable[[str, str, str], bool]] = None

    def set_host_key_verify_callback(self, callback: Callable[[str, str, str], bool]):
        """Set the callback for host key verification."""
        self.host_key_verify_callback = callback

    def open_socket(self, host: str, port: int) -> socket.socket:
        """Open the TCP connection with the configured timeout."""
        if not self.validate_hostname(host):
            raise ConfigurationError(f"Invalid hostname format: {host}")

        try:
            return socket.create_connection((host, port), timeout=self.config.connection_timeout)
        except socket.gaierror as e:
            raise NetworkUnreachable(f"Host could not be resolved: {host} ({e})")
        except socket.timeout:
            raise OperationTimeout(
                f"Connection to {host}:{port} timed out after {self.config.connection_timeout}s"
            )
        except ConnectionRefusedError:
            raise NetworkUnreachable(f"Connection refused by {host}:{port}")
        except OSError as e:
            raise NetworkUnreachable(f"Network error connecting to {host}:{port}: {e}")

    def create_client(self) -> paramiko.SSHClient:
        """New client with known hosts loaded and the host key policy set."""
        client = paramiko.SSHClient()
        self._load_known_hosts(client)
        client.set_missing_host_key_policy(
            HostKeyPolicy(self.host_key_verify_callback, self.config.strict_host_key_checking)
        )
        return client

    def authenticate(self, client: paramiko.SSHClient, sock: socket.socket,
                     connection_config: ConnectionConfig):
        """Run the SSH handshake and authentication over ``sock``."""
        connect_kwargs = {
            'hostname': connection_config.host,
            'port': connection_config.port,
            'username': connection_config.username,
            'sock': sock,
            'timeout': self.config.connection_timeout,
            'banner_timeout': self.config.connection_timeout,
            'auth_timeout': self.config.auth_timeout,
            'allow_agent': False,
            'look_for_keys': False,
        }

        credentials = connection_config.credentials
        if isinstance(credentials, PasswordAuth):
            connect_kwargs['password'] = credentials.password
        elif isinstance(credentials, KeyAuth):
            connect_kwargs['pkey'] = load_private_key(credentials.key_content, credentials.passphrase)

        target = f"{connection_config.host}:{connection_config.port}"
        self.logger.info(f"Authenticating to {target} as {connection_config.username} "
                         f"({connection_config.auth_type})")
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise AuthFailure(f"Authentication failed, check username and password/key ({e})")
        except paramiko.BadHostKeyException as e:
            raise NetworkUnreachable(f"Host key mismatch for {connection_config.host}: {e}")
        except socket.timeout:
            raise OperationTimeout(f"SSH handshake with {target} timed out")
        except paramiko.SSHException as e:
            raise NetworkUnreachable(f"SSH negotiation with {target} failed: {e}")
        except (OSError, EOFError) as e:
            raise NetworkUnreachable(f"Network error during SSH handshake with {target}: {e}")

        self._save_known_hosts(client)

        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(self.config.keepalive_interval)

    def _load_known_hosts(self, client: paramiko.SSHClient):
        known_hosts_file = self.config.known_hosts_file
        try:
            if known_hosts_file.exists():
                with self._known_hosts_lock:
                    client.load_host_keys(str(known_hosts_file))
        except (OSError, paramiko.SSHException) as e:
            self.logger.warning(f"Error loading known hosts: {e}")

    def _save_known_hosts(self, client: paramiko.SSHClient):
        known_hosts_file = self.config.known_hosts_file
        try:
            self.config.ensure_config_dir()
            with self._known_hosts_lock:
                client.save_host_keys(str(known_hosts_file))
            known_hosts_file.chmod(0o600)
        except OSError as e:
            self.logger.error(f"Error saving known hosts: {e}")

    @staticmethod
    def validate_hostname(hostname: str) -> bool:
        """Accept IPv4/IPv6 literals and RFC 1123 host names."""
        if not hostname or not isinstance(hostname, str):
            return False
        try:
            ipaddress.ip_address(hostname)
            return True
        except ValueError:
            pass
        return bool(HOSTNAME_PATTERN.match(hostname))


def open_sftp(transport: paramiko.Transport) -> paramiko.SFTPClient:
    """Open an SFTP client tuned for bulk transfers."""
    sftp = paramiko.SFTPClient.from_transport(
        transport,
        window_size=SFTP_WINDOW_SIZE,
        max_packet_size=SFTP_MAX_PACKET_SIZE,
    )
    if sftp is None:
        raise paramiko.SSHException("SFTP subsystem unavailable")
    return sftp
