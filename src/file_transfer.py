"""SFTP-backed directory listing, upload and download."""

import errno
import hashlib
import os
import posixpath
import re
import shutil
import stat
import tempfile
import threading
import uuid
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import paramiko

from .config import Config
from .connection_manager import ConnectionManager
from .exceptions import (
    ConfigurationError,
    NotConnected,
    PathNotFound,
    PermissionDenied,
    SSHCodeError,
    TransferInterrupted,
)
from .logger import Logger
from .models import Connection, ConnectionStatus, FileNode
from .ssh_client import open_sftp

CHUNK_SIZE = 32768

Source = Union[str, os.PathLike, bytes, bytearray, memoryview]


def map_sftp_error(error: Exception, path: str, default=TransferInterrupted) -> SSHCodeError:
    """Translate an SFTP/OS error into the error taxonomy."""
    if isinstance(error, SSHCodeError):
        return error
    code = getattr(error, 'errno', None)
    if isinstance(error, FileNotFoundError) or code == errno.ENOENT:
        return PathNotFound(f"No such file or directory: {path}")
    if isinstance(error, PermissionError) or code in (errno.EACCES, errno.EPERM):
        return PermissionDenied(f"Permission denied: {path}")
    return default(f"{path}: {error}")


class FileTransferService:
    """File browsing and transfer over each connection's SFTP handle."""

    def __init__(self, config: Config, manager: ConnectionManager,
                 opener: Optional[Callable[[str], None]] = None):
        self.config = config
        self.manager = manager
        self.opener = opener
        self.logger = Logger.get_logger(__name__)
        self._downloads: Dict[str, Tuple[str, str]] = {}
        self._downloads_lock = threading.Lock()

    # SFTP handle

    def _sftp(self, connection: Connection) -> paramiko.SFTPClient:
        """Return the connection's SFTP client, opening it on first use.

        The subsystem is opened outside ``connection.lock`` and attached
        under it; a concurrent opener that loses the race closes its handle.
        """
        with connection.lock:
            sftp = connection.sftp
            if sftp is not None and not sftp.get_channel().closed:
                return sftp
            transport = connection.transport
        if transport is None:
            raise NotConnected(f"Connection {connection.id} has no transport")

        opened = connection.gate.open(lambda: open_sftp(transport), what="sftp channel")
        with connection.lock:
            current = connection.sftp
            if current is not None and not current.get_channel().closed:
                sftp, attached = current, False
            elif connection.status != ConnectionStatus.CONNECTED:
                sftp, attached = None, False
            else:
                connection.sftp = sftp = opened
                attached = True
        if not attached:
            if opened is not sftp:
                opened.close()
            if sftp is None:
                raise NotConnected(f"Connection {connection.id} closed while opening SFTP")
            return sftp
        self.logger.info(f"SFTP client opened for {connection.id}")
        return sftp

    def release(self, connection: Connection):
        """Close the SFTP handle of a connection, if one is open."""
        with connection.lock:
            sftp = connection.sftp
            connection.sftp = None
        if sftp is not None:
            try:
                sftp.close()
            except Exception as e:
                self.logger.error(f"Error closing SFTP for {connection.id}: {e}")
        with self._downloads_lock:
            for local_path in [p for p, (cid, _) in self._downloads.items() if cid == connection.id]:
                del self._downloads[local_path]

    # Listing

    def list(self, connection_id: str, path: Optional[str] = None) -> List[FileNode]:
        """List one directory level, directories first, then by name."""
        connection = self.manager.require_connected(connection_id)
        sftp = self._sftp(connection)

        target = path
        try:
            if not target:
                target = sftp.normalize('.')
            entries = sftp.listdir_attr(target)
        except (OSError, paramiko.SSHException) as e:
            self.logger.error(f"Error listing directory {target} on {connection_id}: {e}")
            raise map_sftp_error(e, target, default=PathNotFound)

        nodes = [self._to_node(sftp, target, attr) for attr in entries]
        nodes.sort(key=lambda node: (not node.is_directory, node.name))
        connection.current_working_directory = target
        return nodes

    def _to_node(self, sftp: paramiko.SFTPClient, directory: str,
                 attr: paramiko.SFTPAttributes) -> FileNode:
        path = posixpath.join(directory, attr.filename)
        mode = attr.st_mode or 0
        is_dir = stat.S_ISDIR(mode)
        if stat.S_ISLNK(mode):
            try:
                is_dir = stat.S_ISDIR(sftp.stat(path).st_mode or 0)
            except OSError:
                is_dir = False

        modified = None
        if attr.st_mtime is not None:
            modified = datetime.fromtimestamp(attr.st_mtime).isoformat()

        return FileNode(
            name=attr.filename,
            path=path,
            type='directory' if is_dir else 'file',
            size=attr.st_size,
            modified=modified,
            permissions=stat.filemode(mode) if mode else None,
        )

    def stat(self, connection_id: str, remote_path: str) -> paramiko.SFTPAttributes:
        connection = self.manager.require_connected(connection_id)
        sftp = self._sftp(connection)
        try:
            return sftp.stat(remote_path)
        except (OSError, paramiko.SSHException) as e:
            raise map_sftp_error(e, remote_path, default=PathNotFound)

    def checksum(self, connection_id: str, remote_path: str) -> str:
        """SHA-256 hex digest of a remote file, streamed without touching disk."""
        connection = self.manager.require_connected(connection_id)
        sftp = self._sftp(connection)
        digest = hashlib.sha256()
        try:
            with sftp.open(remote_path, 'rb') as remote_file:
                for chunk in iter(lambda: remote_file.read(CHUNK_SIZE), b''):
                    digest.update(chunk)
        except (OSError, paramiko.SSHException, EOFError) as e:
            raise map_sftp_error(e, remote_path, default=PathNotFound)
        return digest.hexdigest()

    # Upload

    def upload(self, connection_id: str, source: Source, remote_path: str) -> int:
        """Upload a local file or an in-memory blob to ``remote_path``.

        Content goes to a hidden temporary name first and is renamed into
        place only after the full size is confirmed. Returns bytes written.
        """
        connection = self.manager.require_connected(connection_id)
        directory, name = posixpath.split(remote_path)
        if not name:
            raise ConfigurationError(f"Remote path must name a file: {remote_path}")

        if isinstance(source, (bytes, bytearray, memoryview)):
            payload = bytes(source)
            expected = len(payload)
            open_source = lambda: BytesIO(payload)  # noqa: E731
            label = f"<{expected} bytes>"
        else:
            local_path = Path(source)
            if not local_path.is_file():
                raise PathNotFound(f"Local file not found: {local_path}")
            expected = local_path.stat().st_size
            open_source = lambda: open(local_path, 'rb')  # noqa: E731
            label = str(local_path)

        sftp = self._sftp(connection)
        temp_path = posixpath.join(directory, f".{name}.{uuid.uuid4().hex[:8]}.part")
        try:
            with open_source() as local_file, sftp.open(temp_path, 'wb') as remote_file:
                remote_file.set_pipelined(True)
                shutil.copyfileobj(local_file, remote_file, CHUNK_SIZE)

            written = sftp.stat(temp_path).st_size
            if written != expected:
                raise TransferInterrupted(
                    f"Size mismatch uploading {remote_path}: wrote {written} of {expected} bytes"
                )
            self._replace(sftp, temp_path, remote_path)
        except Exception as e:
            self._remove_quietly(sftp, temp_path)
            self.logger.error(f"Upload of {label} to {remote_path} failed: {e}")
            if isinstance(e, (OSError, paramiko.SSHException, EOFError, SSHCodeError)):
                raise map_sftp_error(e, remote_path)
            raise

        connection.touch()
        self.logger.info(f"Uploaded {label} to {remote_path} on {connection_id}")
        return expected

    def _replace(self, sftp: paramiko.SFTPClient, temp_path: str, remote_path: str):
        try:
            sftp.posix_rename(temp_path, remote_path)
        except OSError as e:
            # Without posix-rename@openssh.com the server refuses to overwrite
            if e.errno is not None and "unsupported" not in str(e).lower():
                raise
            try:
                sftp.remove(remote_path)
            except OSError:
                pass
            sftp.rename(temp_path, remote_path)

    def _remove_quietly(self, sftp: paramiko.SFTPClient, remote_path: str):
        try:
            sftp.remove(remote_path)
        except (OSError, paramiko.SSHException, EOFError):
            pass

    # Download

    def default_local_path(self, connection_id: str, remote_path: str) -> Path:
        """Per-connection location under the system temp directory."""
        safe_id = re.sub(r'[^A-Za-z0-9_.-]', '_', connection_id)
        name = posixpath.basename(remote_path.rstrip('/')) or 'download'
        return Path(tempfile.gettempdir()) / self.config.temp_dir_name / safe_id / name

    def download(self, connection_id: str, remote_path: str,
                 local_path: Optional[Union[str, os.PathLike]] = None,
                 register: bool = True) -> str:
        """Stream a remote file to ``local_path`` (default: temp location)."""
        connection = self.manager.require_connected(connection_id)
        sftp = self._sftp(connection)

        target = Path(local_path) if local_path else self.default_local_path(connection_id, remote_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + '.part')

        try:
            size = sftp.stat(remote_path).st_size
            with sftp.open(remote_path, 'rb') as remote_file, open(partial, 'wb') as local_file:
                if size:
                    remote_file.prefetch(size)
                shutil.copyfileobj(remote_file, local_file, CHUNK_SIZE)
            if size is not None and partial.stat().st_size != size:
                raise TransferInterrupted(
                    f"Size mismatch downloading {remote_path}: got {partial.stat().st_size} of {size} bytes"
                )
            os.replace(partial, target)
        except (OSError, paramiko.SSHException, EOFError, SSHCodeError) as e:
            try:
                partial.unlink()
            except FileNotFoundError:
                pass
            self.logger.error(f"Download of {remote_path} from {connection_id} failed: {e}")
            raise map_sftp_error(e, remote_path)

        if register:
            with self._downloads_lock:
                self._downloads[str(target)] = (connection_id, remote_path)

        connection.touch()
        self.logger.info(f"Downloaded {remote_path} from {connection_id} to {target}")
        return str(target)

    def download_and_open(self, connection_id: str, remote_path: str) -> str:
        """Download to the temp location and hand the file to the opener."""
        local_path = self.download(connection_id, remote_path)
        if self.opener is not None:
            self.opener(local_path)
        return local_path

    def lookup_download(self, local_path: Union[str, os.PathLike]) -> Optional[Tuple[str, str]]:
        """``(connection_id, remote_path)`` that produced ``local_path``, if known."""
        with self._downloads_lock:
            return self._downloads.get(str(Path(local_path)))
