"""Progress tracking for extraction runs.

Reports coarse integer percentages to an observer and logs rate/ETA lines.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .models import RunCounters

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
LogCallback = Callable[[str], None]


class ProgressTracker:
    """Tracks extraction progress and calculates ETA.

    Features:
    - Percent reports at 0, every N files, and 100 on completion
    - Processing rate (files/sec)
    - Estimated time remaining
    - Periodic log lines (every N files)

    Updates may arrive from several worker threads; reports never go
    backwards.
    """

    def __init__(
        self,
        total_files: int,
        log_interval: int = 100,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
    ):
        """Initialize progress tracker.

        Args:
            total_files: Total number of files to process
            log_interval: Report progress every N files
            on_progress: Receives integer percentages 0-100
            on_log: Receives human-readable progress lines
        """
        self.total_files = total_files
        self.log_interval = max(1, log_interval)
        self.on_progress = on_progress
        self.on_log = on_log

        self.files_processed = 0
        self.last_percent: Optional[int] = None
        self.start_time = time.time()
        self.last_log_time = self.start_time
        self.last_log_count = 0
        self._lock = threading.Lock()

    def start(self) -> None:
        """Emit the initial 0% report."""
        with self._lock:
            self.start_time = time.time()
            self.last_log_time = self.start_time
            self._report(0)

    def update(self, counters: RunCounters) -> None:
        """Record the counters after a file finished.

        Args:
            counters: Snapshot taken when the file was tallied
        """
        with self._lock:
            if counters.processed <= self.files_processed:
                return
            previous = self.files_processed
            self.files_processed = counters.processed

            # Snapshots from several workers can arrive out of order
            if previous // self.log_interval < self.files_processed // self.log_interval:
                self._report(counters.percent)
                self._log_progress()

    def finish(self, completed: bool) -> None:
        """Emit the final report: 100 on completion, else the current percent."""
        with self._lock:
            if completed:
                self._report(100)
            elif self.total_files > 0:
                self._report(min(100, self.files_processed * 100 // self.total_files))
            self._log_final_summary(completed)

    def get_progress(self) -> dict:
        """Get current progress statistics.

        Returns:
            Dict with progress metrics
        """
        elapsed_time = time.time() - self.start_time

        if elapsed_time > 0:
            rate = self.files_processed / elapsed_time
        else:
            rate = 0.0

        if self.total_files > 0:
            percentage = (self.files_processed / self.total_files) * 100
        else:
            percentage = 0.0

        remaining_files = max(0, self.total_files - self.files_processed)
        if rate > 0 and remaining_files > 0:
            eta_seconds = remaining_files / rate
        else:
            eta_seconds = 0.0

        return {
            "total_files": self.total_files,
            "files_processed": self.files_processed,
            "remaining_files": remaining_files,
            "percentage": percentage,
            "elapsed_seconds": elapsed_time,
            "rate_files_per_sec": rate,
            "eta_seconds": eta_seconds,
        }

    def _report(self, percent: int) -> None:
        if self.last_percent is not None and percent < self.last_percent:
            return
        self.last_percent = percent
        if self.on_progress is not None:
            self.on_progress(percent)

    def _emit(self, message: str) -> None:
        logger.info(message)
        if self.on_log is not None:
            self.on_log(message)

    def _log_progress(self) -> None:
        progress = self.get_progress()

        current_time = time.time()
        time_delta = current_time - self.last_log_time
        count_delta = self.files_processed - self.last_log_count

        if time_delta > 0:
            instant_rate = count_delta / time_delta
        else:
            instant_rate = 0.0

        self._emit(
            f"Processed {self.files_processed}/{self.total_files} files "
            f"({progress['percentage']:.1f}%) - "
            f"{progress['rate_files_per_sec']:.1f} files/sec (avg), "
            f"{instant_rate:.1f} files/sec (current) - "
            f"ETA: {format_duration(progress['eta_seconds'])}"
        )

        self.last_log_time = current_time
        self.last_log_count = self.files_processed

    def _log_final_summary(self, completed: bool) -> None:
        elapsed_time = time.time() - self.start_time
        rate = self.files_processed / elapsed_time if elapsed_time > 0 else 0.0
        verb = "complete" if completed else "stopped"

        self._emit(
            f"Extraction {verb}: {self.files_processed}/{self.total_files} files processed "
            f"in {format_duration(elapsed_time)} ({rate:.1f} files/sec average)"
        )


def format_duration(seconds: float) -> str:
    """Format seconds as human-readable time.

    Args:
        seconds: Time in seconds

    Returns:
        Formatted string (e.g., "2h 15m 30s")
    """
    if seconds <= 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
