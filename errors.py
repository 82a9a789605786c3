class ProxyError(Exception):
    """Base class for errors raised by the proxy."""


class InvalidConfig(ProxyError):
    """Bad port or target at startup. Fatal."""


class UpstreamStreamError(ProxyError):
    """The upstream failed after the response head was already sent to the client."""

    def __init__(self, target_url: str, cause: Exception):
        super().__init__(f"Upstream stream from {target_url} failed: {cause}")
        self.target_url = target_url
        self.cause = cause
