"""Saved session profiles with encrypted secrets."""

import base64
import json
import os
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import Config
from .exceptions import ConfigurationError, EncryptionError, SessionError
from .logger import Logger

SECRET_FIELDS = ('password', 'keyContent', 'privateKey', 'passphrase')
ENCRYPTED_MARKER = 'encryptedFields'


class SessionStore:
    """Manages saved session profiles in ``sessions.json``.

    Records are kept as a JSON list and upserted by ``id``. Secret fields
    are Fernet-encrypted at rest and decrypted on load.
    """

    def __init__(self, config: Config):
        self.config = config
        self.logger = Logger.get_logger(__name__)
        self._ensure_config_dir()
        self.cipher = self._get_cipher()

    def _ensure_config_dir(self):
        """Create config directory if it doesn't exist."""
        try:
            self.config.config_dir.mkdir(
                mode=self.config.config_dir_permissions,
                parents=True,
                exist_ok=True
            )
        except OSError as e:
            self.logger.error(f"Error creating config directory: {e}")
            raise ConfigurationError(f"Failed to create config directory: {e}")

    def _get_cipher(self) -> Fernet:
        """Get or create the encryption cipher for secrets."""
        try:
            if self.config.key_file.exists():
                key = self.config.key_file.read_bytes()
            else:
                salt = os.urandom(16)
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=32,
                    salt=salt,
                    iterations=self.config.encryption_key_iterations,
                )
                key = base64.urlsafe_b64encode(kdf.derive(os.urandom(32)))

                fd = os.open(self.config.key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
                             self.config.key_file_permissions)
                with os.fdopen(fd, 'wb') as f:
                    f.write(key)

            return Fernet(key)
        except (OSError, ValueError) as e:
            self.logger.error(f"Error setting up encryption: {e}")
            raise EncryptionError(f"Failed to setup encryption: {e}")

    def _read(self) -> List[Dict[str, Any]]:
        if not self.config.sessions_file.exists():
            return []
        try:
            with open(self.config.sessions_file, 'r', encoding='utf-8') as f:
                sessions = json.load(f)
        except (OSError, ValueError) as e:
            self.logger.error(f"Error loading sessions: {e}")
            raise SessionError(f"Failed to read sessions: {e}")
        if not isinstance(sessions, list):
            raise SessionError("Sessions file does not contain a list")
        return sessions

    def _write(self, sessions: List[Dict[str, Any]]):
        self._ensure_config_dir()
        temp_file = self.config.sessions_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(sessions, f, indent=2, ensure_ascii=False)
            os.chmod(temp_file, self.config.key_file_permissions)
            os.replace(temp_file, self.config.sessions_file)
        except OSError as e:
            self.logger.error(f"Error writing sessions: {e}")
            raise SessionError(f"Failed to write sessions: {e}")

    def _encrypt(self, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(record)
        encrypted = []
        for name in SECRET_FIELDS:
            value = stored.get(name)
            if value:
                stored[name] = self.cipher.encrypt(str(value).encode()).decode()
                encrypted.append(name)
        stored.pop(ENCRYPTED_MARKER, None)
        if encrypted:
            stored[ENCRYPTED_MARKER] = encrypted
        return stored

    def _decrypt(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(stored)
        for name in record.pop(ENCRYPTED_MARKER, None) or []:
            value = record.get(name)
            if not value:
                continue
            try:
                record[name] = self.cipher.decrypt(value.encode()).decode()
            except (InvalidToken, ValueError) as e:
                self.logger.error(f"Error decrypting {name} for session {record.get('id')}: {e}")
                record[name] = ''
        return record

    def load_sessions(self) -> List[Dict[str, Any]]:
        """Load all saved sessions with secrets decrypted."""
        return [self._decrypt(stored) for stored in self._read() if isinstance(stored, dict)]

    def save_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace the record with the same ``id``."""
        if not isinstance(session, dict) or not session.get('id'):
            raise ConfigurationError("Session data must include an id")

        stored = self._encrypt(session)
        sessions = self._read()
        for index, existing in enumerate(sessions):
            if isinstance(existing, dict) and existing.get('id') == session['id']:
                sessions[index] = stored
                break
        else:
            sessions.append(stored)

        self._write(sessions)
        self.logger.info(f"Session saved: {session['id']}")
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a saved session; False if it did not exist."""
        sessions = self._read()
        remaining = [s for s in sessions if not (isinstance(s, dict) and s.get('id') == session_id)]
        if len(remaining) == len(sessions):
            self.logger.warning(f"Session not found: {session_id}")
            return False
        self._write(remaining)
        self.logger.info(f"Session deleted: {session_id}")
        return True

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get a specific session by id."""
        for session in self.load_sessions():
            if session.get('id') == session_id:
                return session
        return None
