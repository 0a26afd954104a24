"""Base error definitions for ibackup2fs packages."""

from typing import Any, Dict


class Backup2FSError(Exception):
    """Base exception for all ibackup2fs errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ConfigurationError(Backup2FSError):
    """Configuration could not be loaded or failed validation."""
    pass


class FileProcessingError(Backup2FSError):
    """Base exception for file processing errors."""
    pass


class UnsupportedDigestError(Backup2FSError, ValueError):
    """Requested digest algorithm is not supported."""
    pass
