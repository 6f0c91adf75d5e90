"""Error types shared across lmgo subsystems."""

from __future__ import annotations


class LmgoError(RuntimeError):
    """Base class for all supervisor errors.

    Parameters
    ----------
    message : str
        Human-readable description of the failure.
    status_code : int | None, optional
        Optional HTTP status code surfaced to API clients.
    """

    status_code: int | None = None

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ConfigError(LmgoError):
    """Raised when the configuration file is unreadable or invalid."""


class CatalogError(LmgoError):
    """Raised when the model directory cannot be scanned."""


class CatalogEmptyError(CatalogError):
    """Raised when a scan finds no model files."""


class InvalidIndexError(LmgoError):
    """Raised when a catalog index is out of range."""

    status_code = 400


class PortAllocationError(LmgoError):
    """Raised when no port can be assigned to a new instance."""

    status_code = 500


class LoadFailedError(LmgoError):
    """Raised when the inference server process could not be spawned.

    The underlying ``OSError`` is attached as ``__cause__``.
    """

    status_code = 500
