"""In-memory table of live connections."""

import threading
from typing import Callable, Dict, List, Optional

from .exceptions import SessionError
from .logger import Logger
from .models import Connection


class ConnectionRegistry:
    """Connections keyed by id.

    Insert and remove are the only operations that need mutual exclusion;
    lookups return the entry as it is at call time.
    """

    def __init__(self, max_connections: int = 256):
        self.logger = Logger.get_logger(__name__)
        self.max_connections = max_connections
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    def insert(self, connection: Connection,
               can_replace: Optional[Callable[[Connection], bool]] = None) -> Optional[Connection]:
        """Insert ``connection`` atomically.

        If the id is taken, ``can_replace(existing)`` decides whether the new
        entry takes its place; the displaced entry is returned so the caller
        can release it. Raises SessionError when the id is taken and may not
        be replaced, or when the table is full.
        """
        with self._lock:
            existing = self._connections.get(connection.id)
            if existing is not None:
                if can_replace is None or not can_replace(existing):
                    raise SessionError(
                        f"Connection {connection.id} is already {existing.status.value}"
                    )
            elif len(self._connections) >= self.max_connections:
                raise SessionError(f"Connection limit reached ({self.max_connections})")
            self._connections[connection.id] = connection

        self.logger.debug(f"Registered connection {connection.id}")
        return existing

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def remove(self, connection_id: str, expected: Optional[Connection] = None) -> Optional[Connection]:
        """Remove an entry; with ``expected``, only if it is still that instance."""
        with self._lock:
            current = self._connections.get(connection_id)
            if current is None or (expected is not None and current is not expected):
                return None
            del self._connections[connection_id]

        self.logger.debug(f"Removed connection {connection_id}")
        return current

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    def all(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)
