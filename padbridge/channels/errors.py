"""Error types raised at the gateway boundary."""


class BridgeError(RuntimeError):
    """Base for all padbridge gateway errors."""


class ConfigurationError(BridgeError):
    """Missing server URL or auth code for an operation that needs them."""


class TransportError(BridgeError):
    """Network failure talking to the gateway."""


class ProtocolError(BridgeError):
    """Gateway answered, but not with a usable response envelope."""

    def __init__(self, message: str, status_code: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
