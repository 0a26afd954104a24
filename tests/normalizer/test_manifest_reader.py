"""Tests for Manifest.db reading."""

import sqlite3

import pytest

from ibackup2fs.normalizer.domain_mapper import DomainMapper
from ibackup2fs.normalizer.errors import ManifestError
from ibackup2fs.normalizer.manifest import ManifestReader, blob_path, list_files
from ibackup2fs.normalizer.models import FileType

from conftest import DIRECTORY, FILE, SAMPLE_TOTAL, write_manifest


class TestManifestReader:
    """Test record streaming and filtering."""

    def test_yields_files_and_directories_only(self, sample_backup):
        """Test that symlinks, empty paths and ambiguous rows are excluded."""
        records = list_files(sample_backup.root)

        assert len(records) == SAMPLE_TOTAL
        paths = {(r.domain, r.relative_path) for r in records}
        assert ("HomeDomain", "Library/link") not in paths
        assert ("HomeDomain", "") not in paths
        assert ("HomeDomain", "Library/weird") not in paths
        assert {r.file_type for r in records} == {FileType.FILE, FileType.DIRECTORY}

    def test_ordered_by_domain_then_path(self, sample_backup):
        """Test the deterministic iteration order."""
        records = list_files(sample_backup.root)
        keys = [(r.domain, r.relative_path) for r in records]

        assert keys == sorted(keys)

    def test_count_matches_iteration(self, sample_backup):
        """Test that count_files agrees with iter_files."""
        with ManifestReader(sample_backup.root, fetch_size=2) as reader:
            assert reader.count_files() == len(reader.list_files())

    def test_stats_and_skip_callback(self, sample_backup):
        """Test that excluded rows are counted and ambiguous ones reported."""
        skipped = []
        with ManifestReader(sample_backup.root, on_skipped_row=skipped.append) as reader:
            reader.list_files()
            stats = reader.stats

        assert stats.rows_read == 9
        assert stats.symlinks == 1
        assert stats.empty_paths == 1
        assert stats.ambiguous == 1
        assert len(skipped) == 1
        assert skipped[0].relative_path == "Library/weird"
        assert "ambiguous" in skipped[0].reason

    def test_short_file_id_skipped(self, tmp_path):
        """Test that ids too short to locate a blob are skipped."""
        root = tmp_path / "backup"
        root.mkdir()
        write_manifest(root / "Manifest.db", [
            ("a", "HomeDomain", "x", FILE),
            ("abcd", "HomeDomain", "y", FILE),
        ])

        with ManifestReader(root) as reader:
            records = reader.list_files()
            assert reader.count_files() == 1

        assert [r.file_id for r in records] == ["abcd"]

    def test_upper_flag_bits_ignored(self, tmp_path):
        """Test that only the low three bits decide the type."""
        root = tmp_path / "backup"
        root.mkdir()
        write_manifest(root / "Manifest.db", [("abcd", "HomeDomain", "x", 0x10 | DIRECTORY)])

        records = list_files(root)

        assert records[0].is_directory

    def test_invalid_utf8_path_decoded(self, tmp_path):
        """Test that undecodable text does not abort the scan."""
        root = tmp_path / "backup"
        root.mkdir()
        db = root / "Manifest.db"
        write_manifest(db, [])
        connection = sqlite3.connect(db)
        connection.execute(
            "INSERT INTO Files (fileID, domain, relativePath, flags) "
            "VALUES ('abcd', 'HomeDomain', CAST(X'66ff6f' AS TEXT), 4)"
        )
        connection.commit()
        connection.close()

        records = list_files(root)

        assert records[0].relative_path == "f\ufffdo"

    def test_opened_read_only(self, sample_backup):
        """Test that the reader cannot modify the manifest."""
        with ManifestReader(sample_backup.root) as reader:
            with pytest.raises(sqlite3.OperationalError):
                reader.connect().execute("DELETE FROM Files")


class TestManifestErrors:
    """Test precondition failures."""

    def test_missing_manifest(self, tmp_path):
        """Test that a directory without Manifest.db is rejected."""
        with pytest.raises(ManifestError):
            ManifestReader(tmp_path).connect()

    def test_not_a_database(self, tmp_path):
        """Test that a corrupt file is rejected."""
        (tmp_path / "Manifest.db").write_bytes(b"definitely not sqlite" * 100)

        with pytest.raises(ManifestError):
            ManifestReader(tmp_path).connect()

    def test_missing_files_table(self, tmp_path):
        """Test that a database without the Files table is rejected."""
        connection = sqlite3.connect(tmp_path / "Manifest.db")
        connection.execute("CREATE TABLE Other (x INTEGER)")
        connection.commit()
        connection.close()

        with pytest.raises(ManifestError, match="no Files table"):
            ManifestReader(tmp_path).connect()

    def test_missing_columns(self, tmp_path):
        """Test that a Files table without flags is rejected."""
        connection = sqlite3.connect(tmp_path / "Manifest.db")
        connection.execute("CREATE TABLE Files (fileID TEXT, domain TEXT, relativePath TEXT)")
        connection.commit()
        connection.close()

        with pytest.raises(ManifestError, match="flags"):
            ManifestReader(tmp_path).connect()


class TestResolve:
    """Test blob and destination resolution."""

    def test_blob_path_layout(self, tmp_path):
        """Test the two-character fan-out directory."""
        assert blob_path(tmp_path, "abcdef") == tmp_path / "ab" / "abcdef"

    def test_resolve_file(self, sample_backup, tmp_path):
        """Test that a file resolves to its blob and device path."""
        mapper = DomainMapper(tmp_path / "out")
        with ManifestReader(sample_backup.root) as reader:
            record = next(r for r in reader.iter_files() if r.relative_path == "Library/SMS/sms.db")
            resolved = reader.resolve(record, mapper)

        assert resolved.source_path == blob_path(sample_backup.root, record.file_id)
        assert resolved.destination_path == tmp_path / "out/private/var/mobile/Library/SMS/sms.db"

    def test_missing_blob_resolves_to_none(self, sample_backup, tmp_path):
        """Test that a file without a blob cannot be resolved."""
        mapper = DomainMapper(tmp_path / "out")
        with ManifestReader(sample_backup.root) as reader:
            record = next(r for r in reader.iter_files() if r.relative_path == "Library/missing.db")

            assert reader.resolve(record, mapper) is None

    def test_directory_needs_no_blob(self, sample_backup, tmp_path):
        """Test that directories resolve without a source."""
        mapper = DomainMapper(tmp_path / "out")
        with ManifestReader(sample_backup.root) as reader:
            record = next(r for r in reader.iter_files() if r.is_directory)
            resolved = reader.resolve(record, mapper)

        assert resolved.source_path is None
        assert resolved.destination_path == tmp_path / "out/private/var/mobile/Library"
