"""SSHCode: multi-session SSH client backend."""

__version__ = "0.1.0"
