"""Custom exceptions for SSHCode."""


class SSHCodeError(Exception):
    """Base exception for SSHCode.

    ``kind`` is the stable error name reported across the API boundary.
    """

    kind = "Error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.kind


class AuthFailure(SSHCodeError):
    """Raised when SSH authentication fails."""

    kind = "AuthFailure"


class NetworkUnreachable(SSHCodeError):
    """Raised when the remote host cannot be reached or the handshake fails."""

    kind = "NetworkUnreachable"


class OperationTimeout(SSHCodeError):
    """Raised when a connect attempt or command exceeds its time bound."""

    kind = "Timeout"


class NotConnected(SSHCodeError):
    """Raised for operations on a missing or non-connected connection id."""

    kind = "NotConnected"


class ConnectionCancelled(SSHCodeError):
    """Raised when a connect attempt was cancelled by the caller."""

    kind = "Cancelled"


class ChannelLimitExceeded(SSHCodeError):
    """Raised when the transport keeps refusing to open a channel."""

    kind = "ChannelLimitExceeded"


class PermissionDenied(SSHCodeError):
    """Raised when a remote file operation is not permitted."""

    kind = "PermissionDenied"


class PathNotFound(SSHCodeError):
    """Raised when a remote or local path does not exist."""

    kind = "PathNotFound"


class TransferInterrupted(SSHCodeError):
    """Raised when an upload or download fails part way."""

    kind = "TransferInterrupted"


class ConfigurationError(SSHCodeError):
    """Raised when configuration or connection parameters are invalid."""

    kind = "ConfigurationError"


class SessionError(SSHCodeError):
    """Raised when session state operations fail."""

    kind = "SessionError"


class ShellError(SSHCodeError):
    """Raised when shell operations fail."""

    kind = "ShellError"


class BackpressureError(ShellError):
    """Raised when the shell write buffer would exceed its bound."""

    kind = "Backpressure"


class EncryptionError(SSHCodeError):
    """Raised when secret encryption/decryption fails."""

    kind = "EncryptionError"


def format_error(error: Exception) -> str:
    """Render an exception as the ``error`` string of a result envelope."""
    if isinstance(error, SSHCodeError):
        return f"{error.kind}: {error}"
    return f"Error: {error}"
