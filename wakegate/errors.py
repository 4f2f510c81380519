class WakegateError(Exception):
    """Base exception for wake/sleep orchestration errors."""
    pass


class InvalidAddress(WakegateError):
    """Raised when the configured MAC address is malformed."""
    pass


class NetworkSendFailure(WakegateError):
    """Raised when a single Wake-on-LAN destination send fails."""

    def __init__(self, address: str, port: int, reason: str):
        super().__init__(f"{address}:{port}: {reason}")
        self.address = address
        self.port = port
        self.reason = reason


class RemoteExecFailure(WakegateError):
    """Raised when a control-channel command fails."""
    pass


class ExpectedDisconnect(WakegateError):
    """Raised when the control channel drops while the target suspends."""
    pass


class WakeFailure(WakegateError):
    """Raised when a wake attempt reports failure."""
    pass


class ReadinessTimeout(WakegateError):
    """Raised when the target service is not ready within the wake budget."""
    pass


class RequestTimeout(WakegateError):
    """Raised when a proxied request exceeds the request timeout."""
    pass


class ConnectionRefused(WakegateError):
    """Raised when the target service refuses the connection."""
    pass


class ConfigValidationError(WakegateError, ValueError):
    """Raised when auto-sleep or health-check parameters are invalid."""
    pass
