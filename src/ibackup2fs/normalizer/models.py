"""Data model for a normalization run."""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

# Only the low three bits carry the entry type
FLAG_MASK = 0x7


class FileType(IntEnum):
    """Manifest type flag values (exactly one bit set)."""

    SYMLINK = 1
    DIRECTORY = 2
    FILE = 4


def classify_flags(flags: Optional[int]) -> Optional[FileType]:
    """Return the entry type for a flags value, or None if ambiguous.

    Zero bits set, or several, means the row is corrupt.
    """
    if flags is None:
        return None
    try:
        return FileType(int(flags) & FLAG_MASK)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class FileRecord:
    """One manifest entry."""

    file_id: str
    domain: str
    relative_path: str
    flags: int

    @property
    def file_type(self) -> Optional[FileType]:
        return classify_flags(self.flags)

    @property
    def is_directory(self) -> bool:
        return self.file_type is FileType.DIRECTORY

    @property
    def blob_key(self) -> str:
        """Blob location inside the backup root, e.g. 'ab/ab12...'."""
        return f"{self.file_id[:2]}/{self.file_id}"


@dataclass(frozen=True)
class ResolvedFile:
    """A FileRecord with its blob and destination locations.

    source_path is None only for directory records, which have no blob.
    """

    record: FileRecord
    source_path: Optional[Path]
    destination_path: Path

    @property
    def file_id(self) -> str:
        return self.record.file_id


@dataclass(frozen=True)
class SkippedRow:
    """Manifest row dropped as ambiguous or corrupt."""

    file_id: str
    domain: str
    relative_path: str
    flags: Any
    reason: str


class CopyStatus(str, Enum):
    """Per-file outcome tags, also written to the audit log."""

    SUCCESS = "success"
    DIRECTORY = "directory"
    RESUMED = "resumed"
    MISSING = "missing"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def succeeded(self) -> bool:
        return self in (CopyStatus.SUCCESS, CopyStatus.DIRECTORY, CopyStatus.RESUMED)


@dataclass(frozen=True)
class CopyOutcome:
    """Result of copying one file."""

    status: CopyStatus
    digests: Mapping[str, str] = field(default_factory=dict)
    reason: str = ""
    bytes_copied: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status.succeeded

    @classmethod
    def success(cls, digests: Optional[Mapping[str, str]] = None, bytes_copied: int = 0) -> "CopyOutcome":
        return cls(CopyStatus.SUCCESS, dict(digests or {}), "", bytes_copied)

    @classmethod
    def failure(cls, reason: str, status: CopyStatus = CopyStatus.FAILED) -> "CopyOutcome":
        return cls(status, {}, reason, 0)


class RunState(str, Enum):
    """Coordinator states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (RunState.RUNNING, RunState.PAUSED)


@dataclass
class ManifestStats:
    """Counters kept while streaming the manifest."""

    rows_read: int = 0
    symlinks: int = 0
    empty_paths: int = 0
    ambiguous: int = 0

    @property
    def excluded(self) -> int:
        return self.symlinks + self.empty_paths + self.ambiguous


@dataclass(frozen=True)
class RunCounters:
    """Point-in-time copy of the run counters."""

    total: int
    processed: int
    succeeded: int
    failed: int
    resumed: int = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return min(100, self.processed * 100 // self.total)


class ExtractionRun:
    """Mutable state of the single active run.

    Counters are only touched under the run lock so worker threads can
    report outcomes concurrently.
    """

    def __init__(
        self,
        backup_root: Path,
        output_root: Path,
        digest_algorithms: Tuple[str, ...],
        total: int = 0,
    ) -> None:
        self.run_id = uuid.uuid4().hex[:12]
        self.backup_root = backup_root
        self.output_root = output_root
        self.digest_algorithms = digest_algorithms
        self.total = total
        self.started_at = datetime.now()
        self.audit_log_path: Optional[Path] = None
        self._lock = threading.Lock()
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._resumed = 0

    def record(self, outcome: CopyOutcome) -> RunCounters:
        """Tally one processed file and return the counters after it."""
        with self._lock:
            self._processed += 1
            # Rows added to the manifest after counting still keep processed <= total
            if self._processed > self.total:
                self.total = self._processed
            if outcome.succeeded:
                self._succeeded += 1
                if outcome.status is CopyStatus.RESUMED:
                    self._resumed += 1
            else:
                self._failed += 1
            return self._snapshot()

    def snapshot(self) -> RunCounters:
        with self._lock:
            return self._snapshot()

    def settle_total(self) -> None:
        """Make total equal processed once the manifest is exhausted."""
        with self._lock:
            self.total = self._processed

    def _snapshot(self) -> RunCounters:
        return RunCounters(
            total=self.total,
            processed=self._processed,
            succeeded=self._succeeded,
            failed=self._failed,
            resumed=self._resumed,
        )


@dataclass(frozen=True)
class RunSummary:
    """Final report of a run, produced for every terminal state."""

    run_id: str
    state: RunState
    total: int
    processed: int
    succeeded: int
    failed: int
    resumed: int = 0
    skipped_rows: int = 0
    reason: str = ""
    audit_log_path: Optional[Path] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def outcome(self) -> str:
        """'completed', 'completed_with_errors', 'cancelled' or 'failed'."""
        if self.state is RunState.COMPLETED:
            return "completed_with_errors" if self.failed else "completed"
        if self.state is RunState.CANCELLED:
            return "cancelled"
        return "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "outcome": self.outcome,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "resumed": self.resumed,
            "skipped_rows": self.skipped_rows,
            "reason": self.reason,
            "audit_log_path": str(self.audit_log_path) if self.audit_log_path else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }
