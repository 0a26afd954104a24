"""Configuration schema for backup normalization."""

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ibackup2fs.common import LoggingConfig, SUPPORTED_ALGORITHMS, normalize_algorithms
from ibackup2fs.common.config_utils import auto_detect_io_workers, expand_path_variables

from .domain_mapper import DEFAULT_DOMAIN_MAPPINGS, FALLBACK_ROOT, DomainTable


class ExtractionConfig(BaseModel):
    """Configuration for the copy loop."""

    model_config = ConfigDict(extra='forbid')

    backup_dir: str = Field(
        default="",
        description="iOS backup directory containing Manifest.db"
    )
    output_dir: str = Field(
        default="",
        description="Root of the reconstructed filesystem tree"
    )
    digest_algorithms: List[str] = Field(
        default_factory=lambda: list(SUPPORTED_ALGORITHMS),
        description="Digests computed for every copied file (md5, sha1, sha256)"
    )
    chunk_size: int = Field(
        default=64 * 1024,
        ge=4096,
        description="Bytes per read/write chunk"
    )
    large_file_threshold_bytes: int = Field(
        default=100 * 1024 * 1024,
        ge=0,
        description="Files above this size are copied without hashing (0 = always hash)"
    )
    file_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Per-file copy timeout, excluding time spent paused"
    )
    sanitize_paths: bool = Field(
        default=True,
        description="Strip characters illegal on the host filesystem from path segments"
    )
    workers: int = Field(
        default=1,
        ge=0,
        description="Copy worker threads (0 = auto-detect)"
    )
    queue_maxsize: int = Field(
        default=1000,
        ge=1,
        description="Bounded work queue size when workers > 1"
    )
    progress_interval: int = Field(
        default=100,
        ge=1,
        description="Report progress every N files"
    )
    audit_log_dir: str | None = Field(
        default=None,
        description="Directory for the CSV audit log (default: the output directory)"
    )
    enable_resume: bool = Field(
        default=False,
        description="Skip files completed by an earlier interrupted run"
    )
    state_file: str | None = Field(
        default=None,
        description="Resume state file (default: under the user state directory)"
    )
    check_free_space: bool = Field(
        default=True,
        description="Refuse to start when the output volume is nearly full"
    )
    min_free_space_mb: int = Field(
        default=100,
        ge=0,
        description="Free space required on the output volume to start"
    )

    @field_validator('backup_dir', 'output_dir', 'audit_log_dir', 'state_file', mode='before')
    @classmethod
    def expand_paths(cls, v):
        """Expand ${USER_HOME} style variables."""
        return expand_path_variables(v) if isinstance(v, str) else v

    @field_validator('digest_algorithms', mode='before')
    @classmethod
    def validate_algorithms(cls, v):
        """Canonicalize digest names; raises for unsupported ones."""
        if v is None:
            return []
        return list(normalize_algorithms(v))

    @field_validator('workers')
    @classmethod
    def resolve_workers(cls, v: int) -> int:
        return v if v > 0 else auto_detect_io_workers()


class DomainMappingConfig(BaseModel):
    """Domain-to-filesystem-root rules."""

    model_config = ConfigDict(extra='forbid')

    mappings: Dict[str, str] = Field(
        default_factory=dict,
        description="Domain (or prefix ending in '-') to on-device root, merged over the defaults"
    )
    use_default_mappings: bool = Field(
        default=True,
        description="Start from the built-in table; false means mappings is the whole table"
    )
    fallback_root: str = Field(
        default=FALLBACK_ROOT,
        description="Root for domains no rule matches"
    )

    def effective_mappings(self) -> Dict[str, str]:
        if not self.use_default_mappings:
            return dict(self.mappings)
        return {**DEFAULT_DOMAIN_MAPPINGS, **self.mappings}

    def to_table(self) -> DomainTable:
        return DomainTable.from_mappings(self.effective_mappings(), self.fallback_root)


class ApiConfig(BaseModel):
    """HTTP control surface settings."""

    model_config = ConfigDict(extra='forbid')

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8765, ge=1, le=65535, description="Bind port")
    log_buffer_size: int = Field(
        default=1000,
        ge=10,
        description="Log messages kept in memory for GET /api/extraction/log"
    )


class NormalizerConfig(BaseModel):
    """Root configuration for ibackup2fs."""

    model_config = ConfigDict(extra='forbid')

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    domains: DomainMappingConfig = Field(default_factory=DomainMappingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
