"""Application settings shown to the UI, persisted as YAML."""

import copy
import threading
from typing import Any, Dict

import yaml

from .config import Config
from .exceptions import ConfigurationError
from .logger import Logger

DEFAULT_APP_CONFIG: Dict[str, Any] = {
    'ai': {
        'provider': 'openai',
        'baseUrl': 'https://api.openai.com/v1',
        'apiKey': '',
        'model': 'gpt-3.5-turbo',
        'maxTokens': 2000,
        'temperature': 0.7,
    },
    'general': {
        'language': 'en-US',
        'theme': 'dark',
        'autoSave': True,
        'autoSaveSessions': True,
        'checkUpdates': True,
    },
    'terminal': {
        'font': 'Consolas',
        'fontSize': 14,
        'fontFamily': 'Consolas',
        'copyOnSelect': False,
        'bell': False,
        'cursorBlink': True,
    },
    'security': {
        'passwordEncryption': False,
        'encryptPasswords': False,
        'sessionTimeout': 30,
        'confirmDangerousCommands': True,
    },
}


class AppConfigStore:
    """Loads, merges and saves ``app.yml``."""

    def __init__(self, config: Config):
        self.config = config
        self.path = config.app_config_file
        self.logger = Logger.get_logger(__name__)
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            data = copy.deepcopy(DEFAULT_APP_CONFIG)
            try:
                self._write(data)
            except ConfigurationError as e:
                self.logger.warning(f"Could not write default app config: {e}")
            return data

        try:
            with open(self.path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Error loading app config, using defaults: {e}")
            return copy.deepcopy(DEFAULT_APP_CONFIG)

        if not isinstance(data, dict):
            self.logger.warning(f"App config {self.path} is not a mapping, using defaults")
            return copy.deepcopy(DEFAULT_APP_CONFIG)
        return data

    def _write(self, data: Dict[str, Any]):
        if not self.config.ensure_config_dir():
            raise ConfigurationError(f"Config directory unavailable: {self.config.config_dir}")
        try:
            with open(self.path, 'w', encoding='utf-8') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to save app config: {e}")

    def get(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def save(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the given top-level sections and persist the result."""
        if not isinstance(partial, dict):
            raise ConfigurationError("Config must be an object")
        with self._lock:
            merged = {**self._data, **copy.deepcopy(partial)}
            self._write(merged)
            self._data = merged
            self.logger.info(f"App config saved ({', '.join(partial) or 'no changes'})")
            return copy.deepcopy(merged)
