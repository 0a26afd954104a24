"""Streaming file copy with single-pass digest fan-out."""

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Tuple

from ibackup2fs.common import MultiDigest, SKIPPED_LARGE_FILE, normalize_algorithms

from .control import RunControl
from .errors import CopyTimeoutError, ExtractionCancelled, SystemicError, is_systemic_os_error
from .models import CopyOutcome, CopyStatus

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_LARGE_FILE_THRESHOLD = 100 * 1024 * 1024
DEFAULT_FILE_TIMEOUT = 120.0

# Bytes are written beside the destination under this suffix, then renamed
PARTIAL_SUFFIX = ".ibackup2fs-partial"


def partial_path(destination: Path, token: Optional[str] = None) -> Path:
    """Hidden sibling of destination, unique per copy attempt."""
    token = token or uuid.uuid4().hex[:12]
    return destination.with_name(f".{destination.name}.{token}{PARTIAL_SUFFIX}")


class CopyEngine:
    """
    Copies content blobs to their destinations.

    Each copy is all-or-nothing: bytes stream into a hidden sibling file
    that replaces the destination only after the last chunk. On timeout,
    I/O error or cancellation the sibling is removed and no file is left at
    the destination path.

    Every chunk boundary is a pause/cancel checkpoint.
    """

    def __init__(
        self,
        control: Optional[RunControl] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        large_file_threshold: int = DEFAULT_LARGE_FILE_THRESHOLD,
        timeout_seconds: float = DEFAULT_FILE_TIMEOUT,
        output_root: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            control: Pause/cancel token (a private one if omitted)
            chunk_size: Bytes per read/write
            large_file_threshold: Files above this size are copied without
                hashing; 0 disables the limit
            timeout_seconds: Per-file budget, excluding time spent paused
            output_root: Checked after destination errors to tell a vanished
                output volume from a single bad file
            clock: Monotonic time source
        """
        self.control = control or RunControl()
        self.chunk_size = chunk_size
        self.large_file_threshold = large_file_threshold
        self.timeout_seconds = timeout_seconds
        self.output_root = Path(output_root) if output_root is not None else None
        self._clock = clock

    def is_large(self, size: int) -> bool:
        return self.large_file_threshold > 0 and size > self.large_file_threshold

    def copy(
        self,
        source_path: Path,
        destination_path: Path,
        digest_algorithms: Iterable[str] = (),
    ) -> CopyOutcome:
        """
        Copy one file, hashing it on the way through.

        Args:
            source_path: Content blob
            destination_path: Final location; overwritten if present
            digest_algorithms: Zero or more of md5, sha1, sha256

        Returns:
            CopyOutcome with status success, failed, timeout or missing

        Raises:
            ExtractionCancelled: Cancellation observed (partial output removed)
            SystemicError: Output volume is unusable
        """
        algorithms = normalize_algorithms(digest_algorithms)
        source = Path(source_path)
        destination = Path(destination_path)

        self.control.checkpoint()

        try:
            size = source.stat().st_size
        except FileNotFoundError:
            return CopyOutcome.failure("Source file missing", CopyStatus.MISSING)
        except OSError as e:
            return CopyOutcome.failure(f"Cannot read source: {e}")

        try:
            self._prepare_destination(destination)
            if size == 0:
                destination.write_bytes(b"")
                return CopyOutcome.success({}, 0)
        except OSError as e:
            self._raise_if_systemic(e, destination)
            return CopyOutcome.failure(f"Cannot write destination: {e}")

        hash_algorithms = algorithms
        if algorithms and self.is_large(size):
            logger.info(
                f"Skipping digests for large file ({size / (1024 * 1024):.1f} MB): {destination.name}"
            )
            hash_algorithms = ()

        partial = partial_path(destination)
        try:
            copied, digests = self._stream(source, partial, hash_algorithms)
            os.replace(partial, destination)
        except ExtractionCancelled:
            self._discard(partial)
            raise
        except CopyTimeoutError as e:
            self._discard(partial)
            logger.warning(f"{e}: {source.name} -> {destination}")
            return CopyOutcome.failure(str(e), CopyStatus.TIMEOUT)
        except OSError as e:
            self._discard(partial)
            self._raise_if_systemic(e, destination)
            logger.warning(f"Copy failed for {source.name}: {e}")
            return CopyOutcome.failure(f"I/O error: {e}")

        if algorithms and not hash_algorithms:
            digests = {name: SKIPPED_LARGE_FILE for name in algorithms}

        return CopyOutcome.success(digests, copied)

    def create_directory(self, destination_path: Path) -> CopyOutcome:
        """Materialize a directory record."""
        destination = Path(destination_path)
        self.control.checkpoint()
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._raise_if_systemic(e, destination)
            return CopyOutcome.failure(f"Cannot create directory: {e}")
        return CopyOutcome(CopyStatus.DIRECTORY)

    def _prepare_destination(self, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.is_dir() and not destination.is_symlink():
            raise IsADirectoryError(21, "Destination is a directory", str(destination))
        # Stale copies from an earlier run must not survive a failed re-copy
        if destination.exists() or destination.is_symlink():
            destination.unlink()

    def _stream(
        self, source: Path, target: Path, algorithms: Tuple[str, ...]
    ) -> Tuple[int, Dict[str, str]]:
        digest = MultiDigest(algorithms) if algorithms else None
        started = self._clock()
        paused = 0.0
        copied = 0

        with open(source, "rb") as src, open(target, "xb") as dst:
            while True:
                paused += self.control.checkpoint()

                chunk = src.read(self.chunk_size)
                if not chunk:
                    break
                dst.write(chunk)
                if digest is not None:
                    digest.update(chunk)
                copied += len(chunk)

                elapsed = self._clock() - started - paused
                if elapsed > self.timeout_seconds:
                    raise CopyTimeoutError(
                        f"Copy timed out after {elapsed:.1f}s",
                        timeout=self.timeout_seconds,
                        bytes_copied=copied,
                    )

        return copied, digest.hexdigests() if digest is not None else {}

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Could not remove partial file {path}: {e}")

    def _raise_if_systemic(self, error: OSError, destination: Path) -> None:
        output_gone = self.output_root is not None and not self.output_root.is_dir()
        if is_systemic_os_error(error) or output_gone:
            raise SystemicError(
                f"Output volume unusable: {error}",
                destination=str(destination),
            ) from error
