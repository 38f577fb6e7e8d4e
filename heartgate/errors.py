"""Exception types shared by the gateway and the presence client."""
from __future__ import annotations


class HeartgateError(Exception):
    """Base class for heartgate failures."""


class ConfigError(HeartgateError, ValueError):
    """Raised when a configuration source holds an invalid value."""


class FatalError(HeartgateError):
    """Unrecoverable condition; the process is expected to exit."""


__all__ = ["HeartgateError", "ConfigError", "FatalError"]
