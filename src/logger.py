"""Logging configuration for SSHCode."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


class Logger:
    """Centralized logging management."""

    def __init__(self, log_file: Optional[str] = None, log_level: int = logging.INFO,
                 max_bytes: int = 5 * 1024 * 1024, backup_count: int = 3):
        self.log_file = log_file
        self.log_level = self._level_from_env(log_level)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._setup_logging()

    @staticmethod
    def _level_from_env(default: int) -> int:
        name = os.environ.get("SSHCODE_LOG_LEVEL")
        if not name:
            return default
        level = logging.getLevelName(name.upper())
        return level if isinstance(level, int) else default

    def _setup_logging(self):
        """Setup logging configuration."""
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

        if self.log_file:
            try:
                log_path = Path(self.log_file)
                log_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = RotatingFileHandler(
                    log_path, maxBytes=self.max_bytes, backupCount=self.backup_count
                )
                file_handler.setLevel(self.log_level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)
            except OSError as e:
                print(f"Warning: Could not setup file logging: {e}")

        # paramiko logs every channel open at INFO
        logging.getLogger("paramiko").setLevel(max(self.log_level, logging.WARNING))

    @staticmethod
    def get_logger(name: str) -> logging.Logger:
        """Get logger for specific module."""
        return logging.getLogger(name)
