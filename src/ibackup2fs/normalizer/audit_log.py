"""Append-only CSV audit trail of every processed file."""

import csv
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, IO, Iterable, List, Mapping, Optional

from ibackup2fs.common import SUPPORTED_ALGORITHMS, normalize_path

logger = logging.getLogger(__name__)

LOG_TITLE = "Backup2FS Detailed Log File"
HEADER_PREFIX = "#"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SYSTEM_FILE_ID = "SYSTEM"
END_MARKER = "END"

# System row status tags
STATUS_START = "start"
STATUS_INFO = "info"
STATUS_ERROR = "error"
STATUS_END = "end"
STATUS_SKIPPED = "skipped"


def audit_log_filename(now: Optional[datetime] = None) -> str:
    """extraction_log_<YYYYmmdd_HHMMSS_ffffff>.csv"""
    now = now or datetime.now()
    return f"extraction_log_{now.strftime('%Y%m%d_%H%M%S_%f')}.csv"


@dataclass(frozen=True)
class AuditEntry:
    """One audit row."""

    file_id: str
    destination: str
    status: str
    digests: Mapping[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def system(cls, message: str, status: str = STATUS_INFO) -> "AuditEntry":
        return cls(file_id=SYSTEM_FILE_ID, destination=message, status=status)

    @property
    def is_system(self) -> bool:
        return self.file_id == SYSTEM_FILE_ID


class AuditLog:
    """
    Thread-safe CSV audit log.

    A header block of '#' comment lines and the column row are written
    when the file is created. Every record() call appends exactly one row
    under a single lock and flushes it. If the file disappears mid-run it
    is recreated with a fresh header. close() appends the END sentinel.
    """

    def __init__(
        self,
        path: Path,
        algorithms: Iterable[str] = SUPPORTED_ALGORITHMS,
        backup_root: Optional[Path] = None,
        output_root: Optional[Path] = None,
    ):
        self.path = Path(path)
        self.algorithms = tuple(algorithms)
        self.backup_root = backup_root
        self.output_root = output_root
        self.rows_written = 0
        self._lock = threading.Lock()
        self._handle: Optional[IO[str]] = None
        self._writer = None
        self._closed = False

    @property
    def columns(self) -> List[str]:
        return ["Timestamp", "FileID", "FileCopied", *(a.upper() for a in self.algorithms), "Status"]

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> "AuditLog":
        """Create or reopen the log file. Safe to call more than once."""
        with self._lock:
            self._ensure_open()
        return self

    def _ensure_open(self) -> None:
        if self._handle is not None and self.path.exists():
            return

        if self._handle is not None:
            logger.warning(f"Audit log disappeared, recreating: {self.path}")
            self._close_handle()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = open(self.path, "a", encoding="utf-8", newline="")
        self._writer = csv.writer(self._handle, lineterminator="\n")

        # Only a brand-new file gets a header
        if self._handle.tell() == 0:
            self._write_header()

    def _write_header(self) -> None:
        lines = [
            LOG_TITLE,
            f"Created: {datetime.now().strftime(TIMESTAMP_FORMAT)}",
        ]
        if self.backup_root is not None:
            lines.append(f"Backup: {normalize_path(self.backup_root)}")
        if self.output_root is not None:
            lines.append(f"Output: {normalize_path(self.output_root)}")
        lines.extend([
            "This file contains detailed information about all files processed",
            "Timestamp: Date and time of processing",
            "FileID: iOS backup file identifier (folder/filename)",
            "FileCopied: Normalized path of the file copied",
        ])
        if self.algorithms:
            lines.append(f"{'/'.join(a.upper() for a in self.algorithms)}: File hash values for verification")
        lines.append("Status: Outcome of the file or system event")

        for line in lines:
            self._handle.write(f"{HEADER_PREFIX} {line}\n")
        self._handle.write("\n")
        self._writer.writerow(self.columns)
        self._handle.flush()

    def record(self, entry: AuditEntry) -> None:
        """Append one row."""
        row = [
            entry.timestamp.strftime(TIMESTAMP_FORMAT),
            entry.file_id,
            entry.destination,
            *(entry.digests.get(a, "") for a in self.algorithms),
            entry.status,
        ]
        with self._lock:
            if self._closed:
                raise ValueError(f"Audit log is closed: {self.path}")
            self._ensure_open()
            self._writer.writerow(row)
            self._handle.flush()
            self.rows_written += 1

    def record_system(self, message: str, status: str = STATUS_INFO) -> None:
        self.record(AuditEntry.system(message, status))

    def close(self) -> None:
        """Write the END sentinel, sync and close. Idempotent."""
        with self._lock:
            if self._closed:
                return
            try:
                self._ensure_open()
                self._writer.writerow([
                    datetime.now().strftime(TIMESTAMP_FORMAT),
                    SYSTEM_FILE_ID,
                    END_MARKER,
                    *("" for _ in self.algorithms),
                    STATUS_END,
                ])
                self._handle.flush()
                os.fsync(self._handle.fileno())
            finally:
                self._close_handle()
                self._closed = True

    def _close_handle(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._writer = None

    def __enter__(self) -> "AuditLog":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def read_audit_log(path: Path) -> List[Dict[str, str]]:
    """Parse an audit log into dict rows, skipping header comments."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        lines = [line for line in f if line.strip() and not line.startswith(HEADER_PREFIX)]
    return list(csv.DictReader(lines))


def audit_log_is_complete(path: Path) -> bool:
    """True if the log ends with the END sentinel of a cleanly closed run."""
    rows = read_audit_log(path)
    if not rows:
        return False
    last = rows[-1]
    return last.get("FileID") == SYSTEM_FILE_ID and last.get("FileCopied") == END_MARKER
