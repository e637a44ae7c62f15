class MeterboardError(Exception):
    """Base class for errors raised by the analytics API."""


class ConfigError(MeterboardError):
    """Raised when required configuration is missing or invalid."""


class InvalidParameter(MeterboardError, ValueError):
    """Raised for request parameters that cannot be parsed or are not supported."""


class BackendError(MeterboardError):
    pass


class BackendUnavailable(BackendError):
    pass


class BackendTimeout(BackendError):
    pass


class UnsupportedQuery(BackendError):
    """Raised when the configured backend cannot answer a query shape."""
