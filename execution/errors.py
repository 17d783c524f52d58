class ApiError(RuntimeError):
    """Base class for everything a gateway round trip can fail with."""


class TransportError(ApiError):
    """Network failure or timeout; the request may or may not have reached the venue."""


class UnexpectedStatusError(ApiError):
    def __init__(self, status_code: int, method: str, path: str, body: str = ""):
        self.status_code = status_code
        self.method = method
        self.path = path
        self.body = body
        super().__init__(f"HTTP {status_code} {method} {path}: {body[:300]}")


class ProtocolError(ApiError):
    """The exchange sent something we can't make sense of."""
