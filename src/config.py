"""Configuration management for SSHCode."""

import os
from pathlib import Path
from typing import Optional


class Config:
    """Centralized runtime configuration."""

    def __init__(self, config_dir: Optional[Path] = None):
        self.app_name = "sshcode"
        home = os.environ.get("SSHCODE_HOME")
        if config_dir is not None:
            self.config_dir = Path(config_dir)
        elif home:
            self.config_dir = Path(home).expanduser()
        else:
            self.config_dir = Path.home() / f".{self.app_name}"
        self.sessions_file = self.config_dir / "sessions.json"
        self.app_config_file = self.config_dir / "app.yml"
        self.known_hosts_file = self.config_dir / "known_hosts"
        self.key_file = self.config_dir / ".key"
        self.log_file = self.config_dir / "sshcode.log"

        # Default settings
        self.default_port = 22
        self.encryption_key_iterations = 100000
        self.config_dir_permissions = 0o700
        self.key_file_permissions = 0o600

        # Connection settings (seconds)
        self.connection_timeout = 30
        self.auth_timeout = 30
        self.keepalive_interval = 30
        self.strict_host_key_checking = False

        # Channel settings
        self.command_timeout = 30
        self.channel_open_retries = 3
        self.channel_open_backoff = 0.2

        # Terminal settings
        self.terminal_type = "xterm-256color"
        self.terminal_rows = 24
        self.terminal_cols = 80
        self.shell_poll_interval = 0.01
        self.shell_read_size = 4096
        self.shell_write_buffer_limit = 1024 * 1024
        self.terminal_output_limit = 1000
        self.terminal_output_keep = 500

        # Background loops (seconds)
        self.watch_interval = 2.0
        self.watch_settle_window = 2.0
        self.monitor_interval = 3.0

        # Transfers
        self.temp_dir_name = "sshcode-files"
        self.max_key_file_size = 64 * 1024

        # Event delivery
        self.event_queue_size = 10000
        self.event_idle_timeout = 600.0

        # Window settings
        self.window_width = 1200
        self.window_height = 750
        self.window_min_width = 1000
        self.window_min_height = 650

    def ensure_config_dir(self) -> bool:
        """Ensure configuration directory exists."""
        try:
            self.config_dir.mkdir(mode=self.config_dir_permissions, parents=True, exist_ok=True)
            return True
        except OSError as e:
            print(f"Error creating config directory: {e}")
            return False

    def get_app_title(self) -> str:
        """Get application title."""
        return "SSHCode - Multi-session SSH Client"
