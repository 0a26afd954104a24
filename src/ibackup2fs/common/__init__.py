"""Common utilities shared by the ibackup2fs packages."""

from .config import ConfigLoader
from .logging import setup_logging, LogContext
from .logging_config import LoggingConfig
from .errors import (
    Backup2FSError, ConfigurationError, FileProcessingError, UnsupportedDigestError
)
from .path_utils import normalize_path
from .digests import (
    SUPPORTED_ALGORITHMS, SKIPPED_LARGE_FILE, MultiDigest,
    normalize_algorithms
)

__all__ = [
    'ConfigLoader',
    'LoggingConfig',
    'setup_logging',
    'LogContext',
    'Backup2FSError',
    'ConfigurationError',
    'FileProcessingError',
    'UnsupportedDigestError',
    'normalize_path',
    'SUPPORTED_ALGORITHMS',
    'SKIPPED_LARGE_FILE',
    'MultiDigest',
    'normalize_algorithms',
]
