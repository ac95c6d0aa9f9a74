"""API layer exposed to the SSHCode web interface."""

import base64
import binascii
import json
import platform
import posixpath
import subprocess
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import webview

from .app_config import AppConfigStore
from .config import Config
from .connection_manager import ConnectionManager
from .events import CHANNELS, EventBus, WindowEventBridge
from .exceptions import ConfigurationError, NotConnected, SSHCodeError, format_error
from .executor import CommandExecutor
from .file_transfer import FileTransferService
from .file_watcher import FileWatcher
from .keys import expand_key_path, read_key_file
from .logger import Logger
from .session_store import SessionStore
from .shell import ShellManager
from .system_monitor import SystemMonitor

HOST_KEY_VERIFY_TIMEOUT = 60


def open_with_default_app(file_path: str):
    """Open a file with the desktop's default application."""
    system = platform.system().lower()
    if system == 'windows':
        command = ['cmd', '/c', 'start', '', file_path]
    elif system == 'darwin':
        command = ['open', file_path]
    else:
        command = ['xdg-open', file_path]

    logger = Logger.get_logger(__name__)

    def run():
        try:
            subprocess.run(command, check=False)
        except OSError as e:
            logger.error(f"Failed to open {file_path}: {e}")

    threading.Thread(target=run, daemon=True).start()
    logger.info(f"Opened file in default application: {file_path}")


def remote_join(directory: str, name: str) -> str:
    """Destination path for ``name`` uploaded into ``directory``."""
    if not directory:
        return name
    return posixpath.join(directory, name)


class SSHCodeAPI:
    """API exposed to the JavaScript frontend.

    Every public method returns a JSON envelope
    ``{"success": bool, "data": ..., "error": "Kind: message"}``.
    """

    def __init__(self, config: Config, ai_tester: Optional[Callable[[Dict[str, Any]], Any]] = None,
                 opener: Optional[Callable[[str], None]] = None):
        self.config = config
        self.logger = Logger.get_logger(__name__)

        self.bus = EventBus(config.event_queue_size, config.event_idle_timeout)
        self.manager = ConnectionManager(config)
        self.executor = CommandExecutor(config, self.manager)
        self.shells = ShellManager(config, self.manager, self.bus)
        self.transfers = FileTransferService(config, self.manager, opener=opener or open_with_default_app)
        self.watchers = FileWatcher(config, self.transfers, self.bus)
        self.monitor = SystemMonitor(config, self.manager, self.executor)
        self.manager.bind_services(
            shells=self.shells,
            transfers=self.transfers,
            watchers=self.watchers,
            monitor=self.monitor,
        )

        self.session_store = SessionStore(config)
        self.app_config = AppConfigStore(config)
        self.ai_tester = ai_tester

        # Window reference (set by main.py); underscored so pywebview does not expose it
        self._window = None
        self._bridge: Optional[WindowEventBridge] = None
        self._pending_verifications: Dict[str, Dict[str, Any]] = {}
        self._verification_lock = threading.Lock()

        self.logger.info("SSHCode API initialized")

    # Envelope helpers

    def _ok(self, data: Any = None) -> str:
        result = {'success': True}
        if data is not None:
            result['data'] = data
        return json.dumps(result)

    def _error(self, error: Exception) -> str:
        return json.dumps({'success': False, 'error': format_error(error)})

    def _call(self, what: str, func: Callable[..., Any], *args, **kwargs) -> str:
        try:
            return self._ok(func(*args, **kwargs))
        except SSHCodeError as e:
            self.logger.error(f"API: {what} failed: {e}")
            return self._error(e)
        except Exception as e:
            self.logger.exception(f"API: unexpected error in {what}")
            return self._error(e)

    @staticmethod
    def _parse(value: Any, what: str) -> Any:
        """Accept a JSON string or an already decoded object."""
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Invalid {what}: {e}")
        return value

    # Window integration

    def set_window(self, window):
        """Attach the webview window: event push, dialogs, host key prompts."""
        self._window = window
        if self._bridge is not None:
            self._bridge.stop()
        self._bridge = WindowEventBridge(self.bus, window)
        self._bridge.start()
        self.manager.set_host_key_verify_callback(self._handle_host_key_verification)

    def _handle_host_key_verification(self, hostname: str, key_type: str, fingerprint: str) -> bool:
        """Block the connecting thread until the UI accepts or rejects the key."""
        verification_id = uuid.uuid4().hex
        decided = threading.Event()
        with self._verification_lock:
            self._pending_verifications[verification_id] = {
                'hostname': hostname,
                'keyType': key_type,
                'fingerprint': fingerprint,
                'accepted': False,
                'event': decided,
            }

        try:
            if not decided.wait(HOST_KEY_VERIFY_TIMEOUT):
                self.logger.warning(f"Host key verification for {hostname} timed out")
                return False
            with self._verification_lock:
                return self._pending_verifications[verification_id]['accepted']
        finally:
            with self._verification_lock:
                self._pending_verifications.pop(verification_id, None)

    def getPendingHostVerification(self) -> str:
        with self._verification_lock:
            for verification_id, details in self._pending_verifications.items():
                if not details['event'].is_set():
                    return self._ok({
                        'verificationId': verification_id,
                        'hostname': details['hostname'],
                        'keyType': details['keyType'],
                        'fingerprint': details['fingerprint'],
                    })
        return self._ok(None)

    def verifyHostKey(self, verification_id: str, accepted: bool) -> str:
        with self._verification_lock:
            details = self._pending_verifications.get(verification_id)
            if details is None:
                return self._error(ConfigurationError(f"Verification not found: {verification_id}"))
            details['accepted'] = bool(accepted)
            details['event'].set()
        return self._ok()

    # App config and saved sessions

    def getConfig(self) -> str:
        return self._call("getConfig", self.app_config.get)

    def saveConfig(self, config) -> str:
        return self._call("saveConfig", lambda: self.app_config.save(self._parse(config, "config")))

    def getSessions(self) -> str:
        return self._call("getSessions", self.session_store.load_sessions)

    def saveSession(self, data) -> str:
        return self._call("saveSession", lambda: self.session_store.save_session(self._parse(data, "session")))

    def deleteSession(self, session_id: str) -> str:
        return self._call("deleteSession", lambda: {'deleted': self.session_store.delete_session(session_id)})

    # Connections

    def sshConnect(self, config) -> str:
        try:
            params = self._parse(config, "connection parameters")
        except SSHCodeError as e:
            return self._error(e)

        self.logger.info(f"API: Connecting {params.get('id') if isinstance(params, dict) else '?'}")
        result = self.manager.connect(params)
        if not result['success']:
            return json.dumps({'success': False, 'error': result['error']})
        return self._ok({'connectionId': result['connectionId']})

    def sshCancelConnect(self, connection_id: str) -> str:
        return self._call("sshCancelConnect", lambda: {'cancelled': self.manager.cancel(connection_id)})

    def sshDisconnect(self, connection_id: str) -> str:
        return self._call("sshDisconnect", self.manager.disconnect, connection_id)

    def getConnectionStatus(self, connection_id: str) -> str:
        def status():
            result = self.manager.get_status(connection_id)
            if result is None:
                raise NotConnected(f"Connection {connection_id} does not exist")
            return result
        return self._call("getConnectionStatus", status)

    def listConnections(self) -> str:
        return self._call("listConnections", self.manager.list_connections)

    def sshExecute(self, connection_id: str, command: str, timeout: Optional[float] = None) -> str:
        return self._call(
            "sshExecute",
            lambda: self.executor.execute(connection_id, command, timeout=timeout).to_dict(),
        )

    # Shell

    def sshCreateShell(self, connection_id: str, options=None) -> str:
        def create():
            opts = self._parse(options, "shell options") or {}
            self.shells.create(connection_id, rows=opts.get('rows'), cols=opts.get('cols'),
                               term=opts.get('term'))
            return {'connectionId': connection_id}
        return self._call("sshCreateShell", create)

    def sshShellWrite(self, connection_id: str, data: str) -> str:
        return self._call("sshShellWrite", self.shells.write, connection_id, data)

    def sshShellResize(self, connection_id: str, rows: int, cols: int) -> str:
        return self._call("sshShellResize", self.shells.resize, connection_id, rows, cols)

    def sshShellClose(self, connection_id: str) -> str:
        return self._call("sshShellClose", self.shells.close, connection_id)

    # Files

    def getFileList(self, connection_id: str, path: Optional[str] = None) -> str:
        return self._call(
            "getFileList",
            lambda: [node.to_dict() for node in self.transfers.list(connection_id, path)],
        )

    def _upload_into(self, connection_id: str, source, name: str, remote_dir: str) -> Dict[str, Any]:
        remote_path = remote_join(remote_dir, name)
        size = self.transfers.upload(connection_id, source, remote_path)
        return {'remotePath': remote_path, 'size': size}

    def uploadFile(self, connection_id: str, local_path: str, remote_path: str) -> str:
        return self._call(
            "uploadFile",
            lambda: self._upload_into(connection_id, local_path, Path(local_path).name, remote_path),
        )

    def uploadDroppedFile(self, connection_id: str, blob, remote_path: str) -> str:
        def upload():
            data = self._parse(blob, "dropped file")
            if not isinstance(data, dict) or not data.get('name'):
                raise ConfigurationError("Dropped file must have a name")
            name = Path(data['name']).name
            if data.get('content') is not None:
                try:
                    content = base64.b64decode(data['content'], validate=True)
                except (binascii.Error, ValueError) as e:
                    raise ConfigurationError(f"Dropped file content is not valid base64: {e}")
                return self._upload_into(connection_id, content, name, remote_path)
            if data.get('path'):
                return self._upload_into(connection_id, data['path'], name, remote_path)
            raise ConfigurationError("Dropped file has neither content nor path")
        return self._call("uploadDroppedFile", upload)

    def selectAndUploadFile(self, connection_id: str, remote_path: str) -> str:
        if self._window is None:
            return self._error(ConfigurationError("No window available for file selection"))
        try:
            selected = self._window.create_file_dialog(webview.OPEN_DIALOG, allow_multiple=False)
        except Exception as e:
            self.logger.error(f"API: Error showing open dialog: {e}")
            return self._error(e)
        if not selected:
            return json.dumps({'success': False, 'error': 'Cancelled: No file selected'})
        local_path = selected[0] if isinstance(selected, (list, tuple)) else selected
        return self.uploadFile(connection_id, local_path, remote_path)

    def downloadFile(self, connection_id: str, remote_path: str) -> str:
        local_path = None
        if self._window is not None:
            try:
                chosen = self._window.create_file_dialog(
                    webview.SAVE_DIALOG, save_filename=posixpath.basename(remote_path)
                )
            except Exception as e:
                self.logger.error(f"API: Error showing save dialog: {e}")
                return self._error(e)
            if not chosen:
                return json.dumps({'success': False, 'error': 'Cancelled: Save cancelled'})
            local_path = chosen[0] if isinstance(chosen, (list, tuple)) else chosen
        return self._call(
            "downloadFile",
            lambda: {'localPath': self.transfers.download(connection_id, remote_path, local_path)},
        )

    def downloadAndOpenFile(self, connection_id: str, remote_path: str) -> str:
        return self._call(
            "downloadAndOpenFile",
            lambda: {'localPath': self.transfers.download_and_open(connection_id, remote_path)},
        )

    def startFileWatcher(self, remote_path: str, local_path: str,
                         connection_id: Optional[str] = None) -> str:
        return self._call(
            "startFileWatcher",
            lambda: {'watcherId': self.watchers.start(remote_path, local_path, connection_id)},
        )

    def stopFileWatcher(self, local_path: str) -> str:
        return self._call("stopFileWatcher", lambda: {'stopped': self.watchers.stop(local_path)})

    # Misc

    def readSSHKey(self, key_path: str) -> str:
        return self._call(
            "readSSHKey",
            lambda: {
                'path': str(expand_key_path(key_path)),
                'content': read_key_file(key_path, self.config.max_key_file_size),
            },
        )

    def testAIConnection(self, config) -> str:
        def test():
            if self.ai_tester is None:
                raise ConfigurationError("No AI connection tester configured")
            return self.ai_tester(self._parse(config, "AI config"))
        return self._call("testAIConnection", test)

    # Events

    def subscribe(self, channel: str) -> str:
        return self._call("subscribe", lambda: {'subscriptionId': self.bus.subscribe(channel).id})

    def pollEvents(self, subscription_id: str, max_items: Optional[int] = None) -> str:
        def poll():
            subscription = self.bus.get_subscription(subscription_id)
            if subscription is None:
                raise ConfigurationError(f"Unknown subscription: {subscription_id}")
            return {'events': subscription.drain(max_items), 'dropped': subscription.dropped}
        return self._call("pollEvents", poll)

    def unsubscribe(self, subscription_id: str) -> str:
        return self._call("unsubscribe", lambda: {'unsubscribed': self.bus.unsubscribe(subscription_id)})

    def removeAllListeners(self, channel: str) -> str:
        def remove():
            if channel not in CHANNELS:
                raise ConfigurationError(f"Unknown event channel: {channel}")
            return {'removed': self.bus.remove_all_listeners(channel)}
        return self._call("removeAllListeners", remove)

    def cleanup(self):
        """Cleanup resources on shutdown."""
        self.logger.info("API: Cleaning up resources")
        if self._bridge is not None:
            self._bridge.stop()
            self._bridge = None
        self.watchers.stop_all()
        self.manager.disconnect_all()
        self.monitor.stop_all()
