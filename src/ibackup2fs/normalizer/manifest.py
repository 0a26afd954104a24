"""Read-only access to a backup's Manifest.db catalog."""

import logging
import sqlite3
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .errors import ManifestError
from .models import FileRecord, FileType, ManifestStats, ResolvedFile, SkippedRow, classify_flags
from .domain_mapper import DomainMapper

logger = logging.getLogger(__name__)

MANIFEST_DB_NAME = "Manifest.db"
FILES_TABLE = "Files"
REQUIRED_COLUMNS = ("fileID", "domain", "relativePath", "flags")

FILES_QUERY = (
    "SELECT fileID, domain, relativePath, flags FROM Files "
    "ORDER BY domain, relativePath"
)

# Must select exactly the rows iter_files() yields
COUNT_QUERY = (
    "SELECT COUNT(*) FROM Files "
    "WHERE relativePath IS NOT NULL AND relativePath != '' "
    "AND (flags & 7) IN (2, 4) "
    "AND length(fileID) >= 2"
)


def blob_path(backup_root: Path, file_id: str) -> Path:
    """Location of a file's content blob: <root>/<id[:2]>/<id>."""
    return Path(backup_root) / file_id[:2] / file_id


def _decode_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class ManifestReader:
    """
    Streams file records out of Manifest.db.

    The database is opened read-only. Rows come back ordered by
    (domain, relativePath) and are fetched in batches so memory stays
    flat for backups with hundreds of thousands of entries.

    Symlinks and rows with an empty relativePath are excluded. Rows with
    ambiguous type flags are skipped with a warning and reported through
    on_skipped_row.
    """

    def __init__(
        self,
        backup_root: Path,
        fetch_size: int = 1000,
        on_skipped_row: Optional[Callable[[SkippedRow], None]] = None,
    ):
        """
        Args:
            backup_root: Backup directory containing Manifest.db
            fetch_size: Rows fetched per cursor batch
            on_skipped_row: Called for every ambiguous row dropped
        """
        self.backup_root = Path(backup_root)
        self.fetch_size = fetch_size
        self.on_skipped_row = on_skipped_row
        self.stats = ManifestStats()
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def manifest_path(self) -> Path:
        return self.backup_root / MANIFEST_DB_NAME

    def connect(self) -> sqlite3.Connection:
        """
        Open the manifest read-only and validate its schema.

        Raises:
            ManifestError: If the file is absent, unreadable, or lacks the Files table
        """
        if self._connection is not None:
            return self._connection

        path = self.manifest_path
        if not path.is_file():
            raise ManifestError("Manifest database not found", path=str(path))

        uri = f"{path.resolve().as_uri()}?mode=ro"
        try:
            # Iterated from the coordinator's worker thread after validation
            connection = sqlite3.connect(uri, uri=True, check_same_thread=False)
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot open manifest database: {e}", path=str(path)) from e

        connection.text_factory = _decode_text
        try:
            self._validate_schema(connection)
        except ManifestError:
            connection.close()
            raise

        logger.debug(f"Opened manifest read-only: {path}")
        self._connection = connection
        return connection

    def _validate_schema(self, connection: sqlite3.Connection) -> None:
        path = str(self.manifest_path)
        try:
            columns = {
                row[1] for row in connection.execute(f"PRAGMA table_info({FILES_TABLE})")
            }
        except sqlite3.Error as e:
            raise ManifestError(f"Manifest database is unreadable: {e}", path=path) from e

        if not columns:
            raise ManifestError(f"Manifest has no {FILES_TABLE} table", path=path)

        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise ManifestError(
                f"Manifest {FILES_TABLE} table is missing columns: {', '.join(missing)}",
                path=path,
            )

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "ManifestReader":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def count_files(self) -> int:
        """Number of records iter_files() will yield."""
        connection = self.connect()
        try:
            return int(connection.execute(COUNT_QUERY).fetchone()[0])
        except sqlite3.Error as e:
            raise ManifestError(f"Cannot count manifest rows: {e}", path=str(self.manifest_path)) from e

    def iter_files(self) -> Iterator[FileRecord]:
        """
        Yield file and directory records in (domain, relativePath) order.

        Raises:
            ManifestError: If the database fails mid-stream
        """
        connection = self.connect()
        self.stats = ManifestStats()
        cursor = connection.cursor()
        try:
            cursor.execute(FILES_QUERY)
            while True:
                try:
                    rows = cursor.fetchmany(self.fetch_size)
                except sqlite3.Error as e:
                    raise ManifestError(
                        f"Manifest read failed: {e}", path=str(self.manifest_path)
                    ) from e
                if not rows:
                    break
                for row in rows:
                    record = self._to_record(row)
                    if record is not None:
                        yield record
        except sqlite3.Error as e:
            raise ManifestError(f"Manifest query failed: {e}", path=str(self.manifest_path)) from e
        finally:
            cursor.close()

        logger.debug(
            f"Manifest scan: {self.stats.rows_read} rows, {self.stats.symlinks} symlinks, "
            f"{self.stats.empty_paths} empty paths, {self.stats.ambiguous} ambiguous"
        )

    def list_files(self) -> List[FileRecord]:
        """Materialized iter_files() for small backups and tests."""
        return list(self.iter_files())

    def _to_record(self, row: tuple) -> Optional[FileRecord]:
        file_id, domain, relative_path, flags = row
        self.stats.rows_read += 1

        file_type = classify_flags(flags)
        if file_type is None:
            self._skip(row, f"ambiguous type flags {flags!r}")
            return None

        if file_type is FileType.SYMLINK:
            self.stats.symlinks += 1
            return None

        if not relative_path:
            self.stats.empty_paths += 1
            return None

        if not file_id or len(file_id) < 2:
            self._skip(row, "file id too short to locate a blob")
            return None

        return FileRecord(
            file_id=file_id,
            domain=domain or "",
            relative_path=relative_path,
            flags=int(flags),
        )

    def _skip(self, row: tuple, reason: str) -> None:
        file_id, domain, relative_path, flags = row
        self.stats.ambiguous += 1
        logger.warning(
            f"Skipping manifest row {file_id!r} ({domain}/{relative_path}): {reason}"
        )
        if self.on_skipped_row is not None:
            self.on_skipped_row(
                SkippedRow(
                    file_id=file_id or "",
                    domain=domain or "",
                    relative_path=relative_path or "",
                    flags=flags,
                    reason=reason,
                )
            )

    def resolve(self, record: FileRecord, mapper: DomainMapper) -> Optional[ResolvedFile]:
        """
        Attach source and destination paths to a record.

        Returns:
            ResolvedFile, or None if the record's blob does not exist.
            Directory records resolve without a blob.
        """
        destination = mapper.resolve(record.domain, record.relative_path)
        if record.is_directory:
            return ResolvedFile(record=record, source_path=None, destination_path=destination)

        source = blob_path(self.backup_root, record.file_id)
        if not source.is_file():
            return None
        return ResolvedFile(record=record, source_path=source, destination_path=destination)


def list_files(backup_root: Path) -> List[FileRecord]:
    """Read every extractable record from the backup's manifest."""
    with ManifestReader(backup_root) as reader:
        return reader.list_files()
