"""iOS backup normalization: manifest reading, path mapping, copying and auditing."""

from .config import NormalizerConfig, ExtractionConfig, DomainMappingConfig, ApiConfig
from .coordinator import ExtractionCoordinator
from .copy_engine import CopyEngine
from .audit_log import AuditLog, AuditEntry, read_audit_log, audit_log_is_complete
from .control import RunControl
from .device_info import DeviceInfo, read_device_info, is_backup_encrypted
from .domain_mapper import DomainMapper, DomainTable, DEFAULT_DOMAIN_MAPPINGS, device_path
from .manifest import ManifestReader, list_files, blob_path
from .models import (
    FileRecord, FileType, ResolvedFile, CopyOutcome, CopyStatus,
    RunState, RunSummary, ExtractionRun, ManifestStats,
)
from .errors import (
    NormalizerError, PreconditionError, ManifestError, EncryptedBackupError,
    SystemicError, FileCopyError, CopyTimeoutError,
    ExtractionCancelled, InvalidStateError, RunInProgressError, classify_error,
)

__all__ = [
    'NormalizerConfig',
    'ExtractionConfig',
    'DomainMappingConfig',
    'ApiConfig',
    'ExtractionCoordinator',
    'CopyEngine',
    'AuditLog',
    'AuditEntry',
    'read_audit_log',
    'audit_log_is_complete',
    'RunControl',
    'DeviceInfo',
    'read_device_info',
    'is_backup_encrypted',
    'DomainMapper',
    'DomainTable',
    'DEFAULT_DOMAIN_MAPPINGS',
    'device_path',
    'ManifestReader',
    'list_files',
    'blob_path',
    'FileRecord',
    'FileType',
    'ResolvedFile',
    'CopyOutcome',
    'CopyStatus',
    'RunState',
    'RunSummary',
    'ExtractionRun',
    'ManifestStats',
    'NormalizerError',
    'PreconditionError',
    'ManifestError',
    'EncryptedBackupError',
    'SystemicError',
    'FileCopyError',
    'CopyTimeoutError',
    'ExtractionCancelled',
    'InvalidStateError',
    'RunInProgressError',
    'classify_error',
]
