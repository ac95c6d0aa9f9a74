"""Connection lifecycle management for SSHCode."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from .channels import ChannelGate
from .config import Config
from .exceptions import (
    ConnectionCancelled,
    NotConnected,
    SessionError,
    SSHCodeError,
    format_error,
)
from .logger import Logger
from .models import REPLACEABLE_STATUSES, Connection, ConnectionConfig, ConnectionStatus
from .registry import ConnectionRegistry
from .ssh_client import SSHClientFactory


class ConnectionManager:
    """Opens, supervises and tears down SSH connections.

    Subsystems holding per-connection resources (shells, sftp handles,
    watchers, the monitor) are attached with ``bind_services`` so that
    disconnect can release them before the registry entry goes away.
    """

    def __init__(self, config: Config, registry: Optional[ConnectionRegistry] = None,
                 client_factory: Optional[SSHClientFactory] = None):
        self.config = config
        self.logger = Logger.get_logger(__name__)
        self.registry = registry or ConnectionRegistry()
        self.client_factory = client_factory or SSHClientFactory(config)

        self.shells = None
        self.transfers = None
        self.watchers = None
        self.monitor = None

    def bind_services(self, shells=None, transfers=None, watchers=None, monitor=None):
        self.shells = shells
        self.transfers = transfers
        self.watchers = watchers
        self.monitor = monitor

    def set_host_key_verify_callback(self, callback):
        """Set the callback for host key verification."""
        self.client_factory.set_host_key_verify_callback(callback)

    # Connect

    def connect(self, params: Union[Dict[str, Any], ConnectionConfig]) -> Dict[str, Any]:
        """Connect and register a connection; returns a result dict, never raises."""
        try:
            if isinstance(params, ConnectionConfig):
                connection_config = params
            else:
                connection_config = ConnectionConfig.from_dict(
                    params,
                    default_port=self.config.default_port,
                    max_key_size=self.config.max_key_file_size,
                )
        except SSHCodeError as e:
            self.logger.error(f"Rejected connection parameters: {e}")
            return {'success': False, 'error': format_error(e)}

        connection = Connection(
            connection_config,
            output_limit=self.config.terminal_output_limit,
            output_keep=self.config.terminal_output_keep,
        )
        connection.gate = ChannelGate(self.config.channel_open_retries, self.config.channel_open_backoff)

        try:
            displaced = self.registry.insert(
                connection, can_replace=lambda existing: existing.status in REPLACEABLE_STATUSES
            )
        except SessionError as e:
            self.logger.warning(f"Connect rejected for {connection.id}: {e}")
            return {'success': False, 'error': format_error(e)}

        if displaced is not None:
            self.logger.info(f"Replacing {displaced.status.value} connection {displaced.id}")
            self._release(displaced)

        try:
            self._establish(connection)
        except SSHCodeError as e:
            self._fail(connection, e)
            return {'success': False, 'error': format_error(e)}
        except Exception as e:
            self.logger.exception(f"Unexpected error connecting {connection.id}")
            self._fail(connection, e)
            return {'success': False, 'error': format_error(e)}

        return {'success': True, 'connectionId': connection.id}

    def _establish(self, connection: Connection):
        config = connection.config
        self.logger.info(f"Connecting {connection.id} to {config.host}:{config.port}")
        connection.connect_step = 1
        connection.error_message = None
        connection.add_terminal_output('info', f"Connecting to {config.host}...")

        sock = self.client_factory.open_socket(config.host, config.port)
        with connection.lock:
            if connection.status == ConnectionStatus.CANCELLED:
                sock.close()
                raise ConnectionCancelled("Connection cancelled by user")
            connection.socket = sock
            client = self.client_factory.create_client()
            connection.client = client
            connection.connect_step = 2

        try:
            self.client_factory.authenticate(client, sock, config)
        except SSHCodeError:
            if connection.status == ConnectionStatus.CANCELLED:
                raise ConnectionCancelled("Connection cancelled by user")
            raise

        with connection.lock:
            if connection.status == ConnectionStatus.CANCELLED:
                self._close_transport(connection)
                raise ConnectionCancelled("Connection cancelled by user")
            connection.transition(ConnectionStatus.CONNECTED)
            connection.connect_step = 3
            connection.connected_at = datetime.now()
            connection.socket = None

        connection.add_terminal_output('success', f"Connected to {config.host}")
        connection.add_terminal_output('info', f"Welcome {config.username}@{config.host}")
        self.logger.info(f"Connection {connection.id} established")

        if self.monitor is not None:
            self.monitor.start(connection)

    def _fail(self, connection: Connection, error: Exception):
        with connection.lock:
            self._close_transport(connection)
            if connection.status == ConnectionStatus.CONNECTING:
                connection.transition(ConnectionStatus.FAILED)
                connection.error_message = str(error)
            elif connection.error_message is None:
                connection.error_message = str(error)
        connection.add_terminal_output('error', f"Connection failed: {error}")
        self.logger.error(f"Connection {connection.id} failed: {error}")

    def cancel(self, connection_id: str) -> bool:
        """Cancel an in-flight connect; False unless the id is connecting."""
        connection = self.registry.get(connection_id)
        if connection is None:
            return False

        with connection.lock:
            if connection.status != ConnectionStatus.CONNECTING:
                return False
            connection.transition(ConnectionStatus.CANCELLED)
            connection.error_message = "Connection cancelled by user"
            self._close_transport(connection)

        connection.add_terminal_output('warning', "Connection cancelled by user")
        self.logger.info(f"Connection {connection_id} cancelled")
        return True

    # Lookup

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.registry.get(connection_id)

    def require_connected(self, connection_id: str) -> Connection:
        """Return the connection or raise NotConnected."""
        connection = self.registry.get(connection_id)
        if connection is None:
            raise NotConnected(f"Connection {connection_id} does not exist")
        if connection.status != ConnectionStatus.CONNECTED:
            raise NotConnected(f"Connection {connection_id} is {connection.status.value}")

        transport = connection.transport
        if transport is None or not transport.is_active():
            self.handle_transport_drop(connection_id, "Connection lost")
            raise NotConnected(f"Connection {connection_id} was lost")

        connection.touch()
        return connection

    def get_status(self, connection_id: str) -> Optional[Dict[str, Any]]:
        connection = self.registry.get(connection_id)
        return connection.to_dict() if connection else None

    def list_connections(self) -> List[Dict[str, Any]]:
        return [connection.to_dict() for connection in self.registry.all()]

    # Teardown

    def disconnect(self, connection_id: str):
        """Tear down a connection; unknown or already removed ids are a no-op."""
        connection = self.registry.get(connection_id)
        if connection is None:
            self.logger.debug(f"Disconnect of unknown connection {connection_id} ignored")
            return

        if connection.status == ConnectionStatus.CONNECTING:
            self.cancel(connection_id)

        self._release(connection)

        with connection.lock:
            if connection.status == ConnectionStatus.CONNECTED:
                connection.transition(ConnectionStatus.DISCONNECTED)
        connection.add_terminal_output('info', "Disconnected")

        self.registry.remove(connection_id, expected=connection)
        self.logger.info(f"Connection {connection_id} disconnected")

    def handle_transport_drop(self, connection_id: str, reason: str):
        """Mark a connected connection as failed after its transport died."""
        connection = self.registry.get(connection_id)
        if connection is None:
            return

        with connection.lock:
            if connection.status != ConnectionStatus.CONNECTED:
                return
            connection.transition(ConnectionStatus.FAILED)
            connection.error_message = reason

        self.logger.warning(f"Connection {connection_id} dropped: {reason}")
        connection.add_terminal_output('warning', f"Connection lost: {reason}")
        self._release(connection)

    def disconnect_all(self):
        """Disconnect all connections."""
        self.logger.info("Disconnecting all connections")
        for connection_id in self.registry.ids():
            try:
                self.disconnect(connection_id)
            except Exception as e:
                self.logger.error(f"Error disconnecting {connection_id}: {e}")

    def _release(self, connection: Connection):
        """Stop watchers, monitor, shell and sftp, then close the transport."""
        if self.watchers is not None:
            self.watchers.stop_for_connection(connection.id)
        if self.monitor is not None:
            self.monitor.stop(connection.id)
        if self.shells is not None:
            self.shells.release(connection)
        if self.transfers is not None:
            self.transfers.release(connection)
        with connection.lock:
            self._close_transport(connection)

    def _close_transport(self, connection: Connection):
        client, sock = connection.client, connection.socket
        connection.client = None
        connection.socket = None
        if client is not None:
            try:
                client.close()
            except Exception as e:
                self.logger.error(f"Error closing client for {connection.id}: {e}")
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                self.logger.error(f"Error closing socket for {connection.id}: {e}")
