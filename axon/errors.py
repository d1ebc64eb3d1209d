class AxonError(Exception):
    """Base class for every error raised by the client core."""


class TransportError(AxonError):
    """The channel to the daemon failed to open, read or write."""


class ProtocolError(AxonError):
    """A single message could not be decoded or did not fit the contract."""


class NotConnected(AxonError):
    def __init__(self, message: str = "not connected") -> None:
        super().__init__(message)


class RequestCancelled(AxonError):
    def __init__(self, message: str = "request cancelled") -> None:
        super().__init__(message)


class RequestTimeout(AxonError):
    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"{method}: no response within {timeout:.1f}s")
        self.method = method
        self.timeout = timeout


class RequestFailed(AxonError):
    """The daemon answered a request with an error."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method
        self.reason = message


class AuthError(AxonError):
    """Credentials were rejected; the session cannot continue."""
