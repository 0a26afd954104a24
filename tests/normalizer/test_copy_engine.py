"""Tests for the streaming copy engine."""

import errno
import hashlib
from unittest.mock import patch

import pytest

from ibackup2fs.common import SKIPPED_LARGE_FILE
from ibackup2fs.normalizer.control import RunControl
from ibackup2fs.normalizer.copy_engine import PARTIAL_SUFFIX, CopyEngine, partial_path
from ibackup2fs.normalizer.errors import ExtractionCancelled, SystemicError
from ibackup2fs.normalizer.models import CopyStatus


class FakeClock:
    """Monotonic clock that advances a fixed step per reading."""

    def __init__(self, step: float):
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class CancelAfter(RunControl):
    """Control that cancels itself at the Nth checkpoint."""

    def __init__(self, checkpoints: int):
        super().__init__()
        self.remaining = checkpoints

    def checkpoint(self, timeout=None):
        self.remaining -= 1
        if self.remaining <= 0:
            self.cancel()
        return super().checkpoint(timeout)



def partials(directory):
    return list(directory.glob(f".*{PARTIAL_SUFFIX}"))


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "blob"
    path.write_bytes(b"0123456789abcdef" * 1024)
    return path


class TestCopy:
    """Test successful copies."""

    def test_copies_bytes_and_digests(self, source, tmp_path):
        """Test that content and all three digests are produced in one pass."""
        content = source.read_bytes()
        dest = tmp_path / "out" / "nested" / "file.bin"

        outcome = CopyEngine(chunk_size=4096).copy(source, dest, ["md5", "sha1", "sha256"])

        assert outcome.status is CopyStatus.SUCCESS
        assert outcome.bytes_copied == len(content)
        assert dest.read_bytes() == content
        assert outcome.digests == {
            "md5": hashlib.md5(content).hexdigest(),
            "sha1": hashlib.sha1(content).hexdigest(),
            "sha256": hashlib.sha256(content).hexdigest(),
        }
        assert not partials(dest.parent)

    def test_no_digests_requested(self, source, tmp_path):
        """Test that hashing can be turned off entirely."""
        outcome = CopyEngine().copy(source, tmp_path / "f", [])

        assert outcome.succeeded
        assert outcome.digests == {}

    def test_overwrites_existing_destination(self, source, tmp_path):
        """Test that a stale file at the destination is replaced."""
        dest = tmp_path / "f"
        dest.write_bytes(b"stale")

        CopyEngine().copy(source, dest, ["md5"])

        assert dest.read_bytes() == source.read_bytes()

    def test_zero_length_source(self, tmp_path):
        """Test that an empty blob gives an empty file and no digests."""
        empty = tmp_path / "empty"
        empty.write_bytes(b"")
        dest = tmp_path / "out" / "empty.dat"

        outcome = CopyEngine().copy(empty, dest, ["sha256"])

        assert outcome.status is CopyStatus.SUCCESS
        assert outcome.digests == {}
        assert dest.is_file() and dest.stat().st_size == 0

    def test_large_file_skips_hashing(self, source, tmp_path):
        """Test that files above the threshold get the skip marker."""
        engine = CopyEngine(large_file_threshold=1024)

        outcome = engine.copy(source, tmp_path / "big", ["md5", "sha1"])

        assert outcome.succeeded
        assert outcome.digests == {"md5": SKIPPED_LARGE_FILE, "sha1": SKIPPED_LARGE_FILE}
        assert (tmp_path / "big").read_bytes() == source.read_bytes()

    def test_zero_threshold_always_hashes(self, source, tmp_path):
        """Test that a zero threshold disables the large-file rule."""
        engine = CopyEngine(large_file_threshold=0)

        assert not engine.is_large(10 ** 12)
        outcome = engine.copy(source, tmp_path / "f", ["md5"])
        assert outcome.digests["md5"] == hashlib.md5(source.read_bytes()).hexdigest()

    def test_partial_names_unique_per_attempt(self, tmp_path):
        """Test that two copies to one destination never share a partial file."""
        dest = tmp_path / "f"

        first, second = partial_path(dest), partial_path(dest)

        assert first != second
        assert first.parent == dest.parent
        assert first.name.startswith(".f.") and first.name.endswith(PARTIAL_SUFFIX)

    def test_stale_partial_does_not_block_copy(self, source, tmp_path):
        """Test that a partial file left by a crashed run is not reused."""
        dest = tmp_path / "f"
        stale = partial_path(dest, token="crashed")
        stale.write_bytes(b"junk")

        outcome = CopyEngine().copy(source, dest, ["md5"])

        assert outcome.succeeded
        assert dest.read_bytes() == source.read_bytes()
        assert stale.read_bytes() == b"junk"


class TestCopyFailures:
    """Test per-file failures and cleanup."""

    def test_missing_source(self, tmp_path):
        """Test that a missing blob is reported, not raised."""
        outcome = CopyEngine().copy(tmp_path / "nope", tmp_path / "dest", ["md5"])

        assert outcome.status is CopyStatus.MISSING
        assert not outcome.succeeded
        assert not (tmp_path / "dest").exists()

    def test_timeout_leaves_nothing_behind(self, source, tmp_path):
        """Test that a timed out copy removes its partial output."""
        dest = tmp_path / "dest"
        engine = CopyEngine(chunk_size=4096, timeout_seconds=15, clock=FakeClock(step=10))

        outcome = engine.copy(source, dest, ["md5"])

        assert outcome.status is CopyStatus.TIMEOUT
        assert "timed out" in outcome.reason
        assert not dest.exists()
        assert not partials(dest.parent)

    def test_timeout_removes_stale_destination(self, source, tmp_path):
        """Test that an old copy does not survive a failed re-copy."""
        dest = tmp_path / "dest"
        dest.write_bytes(b"old")
        engine = CopyEngine(chunk_size=4096, timeout_seconds=15, clock=FakeClock(step=10))

        engine.copy(source, dest, [])

        assert not dest.exists()

    def test_destination_is_directory(self, source, tmp_path):
        """Test that a directory in the way is a per-file failure."""
        dest = tmp_path / "dest"
        dest.mkdir()

        outcome = CopyEngine().copy(source, dest, [])

        assert outcome.status is CopyStatus.FAILED
        assert dest.is_dir()

    def test_generic_io_error_is_per_file(self, source, tmp_path):
        """Test that ordinary I/O errors fail only the file."""
        engine = CopyEngine(output_root=tmp_path)

        with patch.object(engine, "_stream", side_effect=OSError(errno.EIO, "Input/output error")):
            outcome = engine.copy(source, tmp_path / "dest", ["md5"])

        assert outcome.status is CopyStatus.FAILED
        assert "I/O error" in outcome.reason


class TestSystemicErrors:
    """Test errors that must abort the whole run."""

    def test_disk_full_raises(self, source, tmp_path):
        """Test that ENOSPC is systemic."""
        engine = CopyEngine(output_root=tmp_path)

        with patch.object(engine, "_stream", side_effect=OSError(errno.ENOSPC, "No space left on device")):
            with pytest.raises(SystemicError):
                engine.copy(source, tmp_path / "dest", [])
        assert not partials(tmp_path)

    def test_output_root_gone_raises(self, source, tmp_path):
        """Test that any write error after the output root vanished is systemic."""
        engine = CopyEngine(output_root=tmp_path / "vanished")

        with patch.object(engine, "_stream", side_effect=OSError(errno.EIO, "Input/output error")):
            with pytest.raises(SystemicError):
                engine.copy(source, tmp_path / "dest", [])


class TestCancellation:
    """Test cooperative cancellation inside a copy."""

    def test_cancel_mid_copy_cleans_up(self, source, tmp_path):
        """Test that cancellation at a chunk boundary removes partial output."""
        dest = tmp_path / "dest"
        engine = CopyEngine(control=CancelAfter(3), chunk_size=4096)

        with pytest.raises(ExtractionCancelled):
            engine.copy(source, dest, ["md5"])

        assert not dest.exists()
        assert not partials(dest.parent)

    def test_cancel_before_start(self, source, tmp_path):
        """Test that a cancelled control stops the copy before any write."""
        control = RunControl()
        control.cancel()

        with pytest.raises(ExtractionCancelled):
            CopyEngine(control=control).copy(source, tmp_path / "dest", [])
        assert not (tmp_path / "dest").exists()


class TestCreateDirectory:
    """Test directory records."""

    def test_creates_nested_directory(self, tmp_path):
        """Test that parents are created and existing dirs are fine."""
        dest = tmp_path / "a" / "b"
        engine = CopyEngine()

        assert engine.create_directory(dest).status is CopyStatus.DIRECTORY
        assert engine.create_directory(dest).succeeded
        assert dest.is_dir()

    def test_file_in_the_way(self, tmp_path):
        """Test that a file at a directory path is a per-file failure."""
        dest = tmp_path / "a"
        dest.write_bytes(b"x")

        outcome = CopyEngine().create_directory(dest)

        assert outcome.status is CopyStatus.FAILED
