"""File watcher for keeping downloaded copies in sync with the server."""

import hashlib
import itertools
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import Config
from .events import FILE_CHANGED, EventBus
from .exceptions import ConfigurationError, NotConnected, SSHCodeError
from .file_transfer import FileTransferService
from .logger import Logger


@dataclass
class Watch:
    """One watched remote file and the local copy it feeds."""

    watcher_id: str
    connection_id: str
    remote_path: str
    local_path: str
    signature: Optional[Tuple[Optional[int], Optional[int]]] = None
    content_hash: Optional[str] = None
    signature_seen_at: float = 0.0
    stop_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None


class FileWatcher:
    """Polls remote files for changes and refreshes their local copies."""

    def __init__(self, config: Config, transfers: FileTransferService, bus: EventBus):
        self.config = config
        self.transfers = transfers
        self.bus = bus
        self.logger = Logger.get_logger(__name__)
        self.check_interval = config.watch_interval
        self.settle_window = config.watch_settle_window
        self._watches: Dict[str, Watch] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def start(self, remote_path: str, local_path: str, connection_id: Optional[str] = None) -> str:
        """Start watching ``remote_path``; returns the watcher id.

        A second start for the same local path returns the existing id.
        """
        key = str(Path(local_path))
        with self._lock:
            existing = self._watches.get(key)
            if existing is not None:
                if existing.remote_path != remote_path:
                    self.logger.warning(
                        f"Already watching {key} for {existing.remote_path}, ignoring {remote_path}"
                    )
                return existing.watcher_id

        if connection_id is None:
            mapping = self.transfers.lookup_download(key)
            if mapping is None:
                raise ConfigurationError(f"No connection known for local file {key}")
            connection_id = mapping[0]

        # Baseline so the first poll only reports later changes
        attrs = self.transfers.stat(connection_id, remote_path)
        signature = (attrs.st_mtime, attrs.st_size)
        content_hash = self.transfers.checksum(connection_id, remote_path)

        with self._lock:
            existing = self._watches.get(key)
            if existing is not None:
                return existing.watcher_id
            watch = Watch(
                watcher_id=f"watcher_{next(self._ids)}",
                connection_id=connection_id,
                remote_path=remote_path,
                local_path=key,
                signature=signature,
                content_hash=content_hash,
                signature_seen_at=time.monotonic(),
            )
            watch.thread = threading.Thread(
                target=self._watch_loop, args=(watch,), name=watch.watcher_id, daemon=True
            )
            self._watches[key] = watch
            watch.thread.start()

        self.logger.info(f"Watching {remote_path} on {connection_id} -> {key}")
        return watch.watcher_id

    def stop(self, local_path: str) -> bool:
        """Stop the watcher of ``local_path``; False if none was running."""
        with self._lock:
            watch = self._watches.pop(str(Path(local_path)), None)
        if watch is None:
            return False
        self._join(watch)
        self.logger.info(f"Stopped watching {watch.local_path}")
        return True

    def stop_for_connection(self, connection_id: str):
        with self._lock:
            keys = [key for key, watch in self._watches.items() if watch.connection_id == connection_id]
            watches = [self._watches.pop(key) for key in keys]
        for watch in watches:
            self._join(watch)
        if watches:
            self.logger.info(f"Stopped {len(watches)} watcher(s) for {connection_id}")

    def stop_all(self):
        with self._lock:
            watches = list(self._watches.values())
            self._watches.clear()
        for watch in watches:
            self._join(watch)

    def get(self, local_path: str) -> Optional[Watch]:
        with self._lock:
            return self._watches.get(str(Path(local_path)))

    def list(self) -> List[Watch]:
        with self._lock:
            return list(self._watches.values())

    def _join(self, watch: Watch):
        watch.stop_event.set()
        thread = watch.thread
        if thread is not None and thread is not threading.current_thread() and thread.is_alive():
            thread.join(timeout=self.check_interval + 1)

    def _watch_loop(self, watch: Watch):
        """Main watch loop; one remote stat per interval."""
        while not watch.stop_event.wait(self.check_interval):
            try:
                self._check(watch)
            except NotConnected as e:
                self.logger.info(f"Watcher {watch.watcher_id} ending: {e}")
                break
            except SSHCodeError as e:
                self.logger.warning(f"Error checking {watch.remote_path}: {e}")
            except Exception as e:
                self.logger.error(f"Error in file watcher loop for {watch.remote_path}: {e}")

        with self._lock:
            if self._watches.get(watch.local_path) is watch:
                del self._watches[watch.local_path]

    def _check(self, watch: Watch):
        attrs = self.transfers.stat(watch.connection_id, watch.remote_path)
        signature = (attrs.st_mtime, attrs.st_size)
        now = time.monotonic()
        if signature == watch.signature:
            # mtime has one-second resolution: a same-size rewrite within
            # that second only shows up in the content
            if now - watch.signature_seen_at >= self.settle_window:
                return
            if self.transfers.checksum(watch.connection_id, watch.remote_path) == watch.content_hash:
                return
        else:
            watch.signature_seen_at = now

        self.transfers.download(watch.connection_id, watch.remote_path, watch.local_path, register=False)
        watch.signature = signature
        watch.content_hash = _file_digest(watch.local_path)
        if watch.stop_event.is_set():
            return
        self.logger.info(f"File changed: {watch.remote_path}")
        self.bus.publish(FILE_CHANGED, {
            'localPath': watch.local_path,
            'remotePath': watch.remote_path,
            'connectionId': watch.connection_id,
        })


def _file_digest(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
    return digest.hexdigest()
