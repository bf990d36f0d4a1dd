from __future__ import annotations


class RotawallError(Exception):
    """Base class for errors raised by rotawall."""


class ConfigError(RotawallError, ValueError):
    """Raised when the configuration file contains invalid values."""


class NoCandidatesError(RotawallError):
    """Raised when a selection is requested from an empty pool."""


class DisplayError(RotawallError):
    """Raised when a display engine fails to present a file."""


class ProbeError(RotawallError):
    """Raised when ffprobe cannot report the properties of a media file."""


class EncodeError(RotawallError):
    """Raised when an encode job fails."""


class EncodeCancelled(EncodeError):
    """Raised when an encode job observes its cancellation flag."""


__all__ = [
    "ConfigError",
    "DisplayError",
    "EncodeCancelled",
    "EncodeError",
    "NoCandidatesError",
    "ProbeError",
    "RotawallError",
]
