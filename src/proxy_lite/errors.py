class ProxyError(Exception):
    """Base class for errors raised by the proxy."""


class ConfigError(ProxyError):
    """Filter configuration is missing or malformed."""


class RequestError(ProxyError):
    """The request target does not carry a usable authority."""


class TransportError(ProxyError):
    """Connecting to or talking with an origin server failed."""


class ProtocolError(ProxyError):
    """The client sent malformed HTTP framing."""
