"""Error taxonomy shared by the intake, classification and API layers."""

from __future__ import annotations


class DeepImgError(Exception):
    """Base class for all DeepImg errors."""


class ValidationError(DeepImgError):
    """Bad input: unsupported file type, oversize file, empty label set, unreadable image."""


class NetworkError(DeepImgError):
    """The classification endpoint could not be reached."""


class RemoteError(DeepImgError):
    """The classification endpoint answered with a failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(DeepImgError):
    """Missing or rejected credential, or a model id outside the enumerated options."""


class RunInProgressError(DeepImgError):
    """A classification run was requested while another is still in flight."""
