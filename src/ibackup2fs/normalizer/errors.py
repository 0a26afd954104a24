"""Error classes for backup normalization."""

import errno

from ibackup2fs.common import Backup2FSError, ConfigurationError, FileProcessingError


class NormalizerError(Backup2FSError):
    """Base error for normalization operations."""
    pass


class PreconditionError(NormalizerError):
    """Run cannot start: bad backup or output root."""
    pass


class ManifestError(PreconditionError):
    """Manifest database is absent, unreadable or has an unexpected schema."""
    pass


class EncryptedBackupError(PreconditionError):
    """Backup is encrypted and cannot be extracted."""
    pass


class SystemicError(NormalizerError):
    """I/O failure not attributable to a single file (e.g. output volume gone)."""
    pass


class FileCopyError(NormalizerError, FileProcessingError):
    """Per-file failure. Tallied, never fatal to the run."""
    pass


class CopyTimeoutError(FileCopyError):
    """File copy exceeded its per-file timeout."""
    pass


class ExtractionCancelled(NormalizerError):
    """Cooperative cancellation was observed at a suspension point."""
    pass


class InvalidStateError(NormalizerError):
    """Control request is not valid in the coordinator's current state."""
    pass


class RunInProgressError(InvalidStateError):
    """Another extraction run is already active in this process."""
    pass


# errno values that mean the destination volume itself is unusable
SYSTEMIC_ERRNOS = frozenset(
    code for code in (
        errno.ENOSPC,
        errno.EROFS,
        getattr(errno, "EDQUOT", None),
        getattr(errno, "ENODEV", None),
    ) if code is not None
)


def is_systemic_os_error(exception: BaseException) -> bool:
    """True for OSErrors that will fail every following file too."""
    return isinstance(exception, OSError) and exception.errno in SYSTEMIC_ERRNOS


def classify_error(exception: BaseException) -> str:
    """
    Classify an exception into an error category.

    Args:
        exception: The exception to classify

    Returns:
        Error category string: 'cancelled', 'precondition', 'systemic',
        'timeout', 'missing', 'per_file', or 'unknown'
    """
    if isinstance(exception, ExtractionCancelled):
        return 'cancelled'
    elif isinstance(exception, (PreconditionError, ConfigurationError)):
        return 'precondition'
    elif isinstance(exception, SystemicError):
        return 'systemic'
    elif isinstance(exception, CopyTimeoutError):
        return 'timeout'
    elif isinstance(exception, FileNotFoundError):
        return 'missing'
    elif isinstance(exception, FileCopyError):
        return 'per_file'
    elif is_systemic_os_error(exception):
        return 'systemic'
    elif isinstance(exception, OSError):
        return 'per_file'
    else:
        return 'unknown'
