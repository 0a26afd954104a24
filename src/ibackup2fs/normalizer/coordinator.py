"""Extraction coordinator: drives one normalization run end to end."""

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from queue import Full, Queue
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import psutil

from ibackup2fs.common import (
    Backup2FSError, LogContext, SUPPORTED_ALGORITHMS, normalize_algorithms, normalize_path
)
from ibackup2fs import APP_NAME
from ibackup2fs.common.config_utils import default_state_file

from .audit_log import (
    STATUS_ERROR, STATUS_INFO, STATUS_SKIPPED, STATUS_START, AuditEntry, AuditLog, audit_log_filename
)
from .config import NormalizerConfig
from .control import RunControl
from .copy_engine import CopyEngine
from .device_info import DeviceInfo, is_backup_encrypted, read_device_info
from .domain_mapper import DomainMapper
from .errors import (
    EncryptedBackupError, ExtractionCancelled, InvalidStateError, ManifestError,
    PreconditionError, RunInProgressError, SystemicError, classify_error
)
from .manifest import ManifestReader
from .models import (
    CopyOutcome, CopyStatus, ExtractionRun, FileRecord, ResolvedFile, RunState, RunSummary, SkippedRow
)
from .progress import ProgressTracker
from .resume import ResumeState

logger = logging.getLogger(__name__)

LogObserver = Callable[[str], None]
ProgressObserver = Callable[[int], None]

# One run per process
_ACTIVE_RUN_LOCK = threading.Lock()

_TRANSITIONS = {
    RunState.IDLE: {RunState.RUNNING, RunState.FAILED},
    RunState.RUNNING: {RunState.PAUSED, RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED},
    # A pause can land after the last file, so paused runs may still complete
    RunState.PAUSED: {RunState.RUNNING, RunState.COMPLETED, RunState.CANCELLED, RunState.FAILED},
}

# Tells copy workers to exit
_SENTINEL = None


@dataclass
class _PreparedRun:
    """Everything a validated run needs, built before the worker starts."""
    run: ExtractionRun
    reader: ManifestReader
    mapper: DomainMapper
    engine: CopyEngine
    audit: AuditLog
    resume_state: Optional[ResumeState]
    state_file: Optional[Path]
    # Destination -> first record resolved to it; touched only by the dispatching thread
    claims: Dict[Path, ResolvedFile] = field(default_factory=dict)


@dataclass(frozen=True)
class _WorkItem:
    """A record resolved and checked for destination collisions before dispatch."""
    record: FileRecord
    resolved: Optional[ResolvedFile]
    owner: Optional[ResolvedFile] = None


class ExtractionCoordinator:
    """
    Orchestrates ManifestReader, DomainMapper, CopyEngine and AuditLog.

    States: idle -> running -> (paused <-> running) -> completed |
    cancelled | failed. start() validates synchronously: invalid paths, an
    unreadable manifest or an encrypted backup move straight to failed.
    Files are then processed on a dedicated thread (plus a worker pool when
    extraction.workers > 1) so pause(), resume() and cancel() can be called
    from any thread at any time.

    Observers:
        on_log: free-text log messages
        on_progress: integer percentages 0-100

    Example:
        coordinator = ExtractionCoordinator(config, on_progress=print)
        summary = coordinator.run(backup_dir, output_dir, ["sha256"])
    """

    def __init__(
        self,
        config: Optional[NormalizerConfig] = None,
        on_log: Optional[LogObserver] = None,
        on_progress: Optional[ProgressObserver] = None,
    ):
        self.config = config or NormalizerConfig()
        self.on_log = on_log
        self.on_progress = on_progress
        self.device_info: Optional[DeviceInfo] = None

        self._control = RunControl()
        self._state = RunState.IDLE
        self._state_lock = threading.RLock()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._prepared: Optional[_PreparedRun] = None
        self._summary: Optional[RunSummary] = None
        self._holds_run_lock = False
        self._last_progress = 0

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    @property
    def summary(self) -> Optional[RunSummary]:
        """Final summary once the run reached a terminal state."""
        return self._summary

    @property
    def last_progress(self) -> int:
        return self._last_progress

    def is_done(self) -> bool:
        return self._done.is_set()

    # Control surface

    def start(
        self,
        backup_path: Path,
        output_path: Path,
        digest_algorithms: Optional[Iterable[str]] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> bool:
        """
        Validate inputs and begin processing on a background thread.

        Args:
            backup_path: iOS backup directory containing Manifest.db
            output_path: Output root; created if absent
            digest_algorithms: Digests to compute (None = configured default)
            device_info: Metadata from a caller-side reader; read from the
                backup's plists if omitted

        Returns:
            True if the run started; False if it failed a precondition (the
            coordinator is then in the failed state and summary is set)

        Raises:
            InvalidStateError: If this coordinator already ran
            RunInProgressError: If another run is active in this process
        """
        with self._state_lock:
            if self._state is not RunState.IDLE:
                raise InvalidStateError(
                    f"Cannot start: coordinator is {self._state.value}", state=self._state.value
                )
            if not _ACTIVE_RUN_LOCK.acquire(blocking=False):
                raise RunInProgressError("Another extraction run is already active")
            self._holds_run_lock = True

        try:
            prepared = self._prepare(Path(backup_path), Path(output_path), digest_algorithms, device_info)
        except Exception as e:
            self._fail_before_start(e)
            return False

        self._prepared = prepared
        self._transition(RunState.RUNNING)
        self._thread = threading.Thread(
            target=self._run_worker,
            args=(prepared,),
            name="ibackup2fs-extraction",
            daemon=True,
        )
        self._thread.start()
        return True

    def pause(self) -> bool:
        """Suspend at the next chunk boundary. Returns False if not running."""
        with self._state_lock:
            if self._state is not RunState.RUNNING:
                return False
            self._control.pause()
            self._state = RunState.PAUSED
        self._notify_log("Extraction paused")
        return True

    def resume(self) -> bool:
        """Continue a paused run. Returns False if not paused."""
        with self._state_lock:
            if self._state is not RunState.PAUSED:
                return False
            self._control.resume()
            self._state = RunState.RUNNING
        self._notify_log("Extraction resumed")
        return True

    def cancel(self) -> bool:
        """Abort the run, also while paused. Returns False if nothing to cancel."""
        with self._state_lock:
            if not self._state.is_active:
                return False
            requested = self._control.cancel()
        if requested:
            self._notify_log("Cancellation requested")
        return requested

    def wait(self, timeout: Optional[float] = None) -> Optional[RunSummary]:
        """Block until the run is terminal. Returns None on timeout."""
        if not self._done.wait(timeout):
            return None
        if self._thread is not None:
            self._thread.join(timeout)
        return self._summary

    def run(
        self,
        backup_path: Path,
        output_path: Path,
        digest_algorithms: Optional[Iterable[str]] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> RunSummary:
        """start() and wait() in one call."""
        self.start(backup_path, output_path, digest_algorithms, device_info)
        return self.wait()

    def snapshot(self) -> Dict[str, Any]:
        """Thread-safe view of state and counters."""
        prepared = self._prepared
        data: Dict[str, Any] = {
            "state": self.state.value,
            "progress": self._last_progress,
        }
        if prepared is not None:
            counters = prepared.run.snapshot()
            data.update({
                "run_id": prepared.run.run_id,
                "backup_dir": str(prepared.run.backup_root),
                "output_dir": str(prepared.run.output_root),
                "digest_algorithms": list(prepared.run.digest_algorithms),
                "total": counters.total,
                "processed": counters.processed,
                "succeeded": counters.succeeded,
                "failed": counters.failed,
                "resumed": counters.resumed,
                "audit_log_path": str(prepared.audit.path),
            })
        if self._summary is not None:
            data["summary"] = self._summary.to_dict()
        return data

    # Preparation

    def _prepare(
        self,
        backup_root: Path,
        output_root: Path,
        digest_algorithms: Optional[Iterable[str]],
        device_info: Optional[DeviceInfo],
    ) -> _PreparedRun:
        settings = self.config.extraction

        if digest_algorithms is None:
            digest_algorithms = settings.digest_algorithms
        algorithms = normalize_algorithms(digest_algorithms)

        if not backup_root.is_dir():
            raise PreconditionError("Backup directory does not exist", path=str(backup_root))
        if not os.access(backup_root, os.R_OK | os.X_OK):
            raise PreconditionError("Backup directory is not readable", path=str(backup_root))

        self.device_info = device_info if device_info is not None else read_device_info(backup_root)
        if (self.device_info is not None and self.device_info.is_encrypted) or is_backup_encrypted(backup_root):
            raise EncryptedBackupError(
                "Backup is encrypted; decrypt it before extraction", path=str(backup_root)
            )

        resume_state, state_file = self._load_resume_state(backup_root, output_root)

        reader = ManifestReader(backup_root, on_skipped_row=self._record_skipped_row)
        try:
            total = reader.count_files()
            self._prepare_output(output_root)

            run = ExtractionRun(backup_root, output_root, algorithms, total)

            audit_dir = Path(settings.audit_log_dir) if settings.audit_log_dir else output_root
            audit = AuditLog(
                audit_dir / audit_log_filename(run.started_at),
                algorithms=SUPPORTED_ALGORITHMS,
                backup_root=backup_root,
                output_root=output_root,
            )
            try:
                audit.open()
            except OSError as e:
                raise PreconditionError(f"Cannot create audit log: {e}", path=str(audit.path)) from e
            run.audit_log_path = audit.path
        except Exception:
            reader.close()
            raise

        return _PreparedRun(
            run=run,
            reader=reader,
            mapper=DomainMapper(
                output_root,
                self.config.domains.to_table(),
                sanitize=settings.sanitize_paths,
            ),
            engine=CopyEngine(
                control=self._control,
                chunk_size=settings.chunk_size,
                large_file_threshold=settings.large_file_threshold_bytes,
                timeout_seconds=settings.file_timeout_seconds,
                output_root=output_root,
            ),
            audit=audit,
            resume_state=resume_state,
            state_file=state_file,
        )

    def _prepare_output(self, output_root: Path) -> None:
        try:
            output_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(f"Cannot create output directory: {e}", path=str(output_root)) from e

        if not os.access(output_root, os.W_OK | os.X_OK):
            raise PreconditionError("Output directory is not writable", path=str(output_root))

        settings = self.config.extraction
        if settings.check_free_space:
            free_mb = psutil.disk_usage(str(output_root)).free / (1024 * 1024)
            if free_mb < settings.min_free_space_mb:
                raise PreconditionError(
                    "Insufficient free space on output volume",
                    free_mb=round(free_mb, 1),
                    required_mb=settings.min_free_space_mb,
                )

    def _load_resume_state(self, backup_root: Path, output_root: Path):
        settings = self.config.extraction
        if not settings.enable_resume:
            return None, None

        if settings.state_file:
            state_file = Path(settings.state_file)
        else:
            state_file = default_state_file(APP_NAME, backup_root, output_root)

        state = ResumeState.load(state_file)
        if state is not None and not state.matches(backup_root, output_root):
            logger.warning(f"Resume state {state_file} belongs to another backup/output pair; starting fresh")
            state = None
        if state is None:
            state = ResumeState.new(backup_root, output_root)
        elif len(state):
            self._notify_log(f"Resuming: {len(state)} files already extracted")
        return state, state_file

    def _fail_before_start(self, error: BaseException) -> None:
        reason = str(error)
        if not isinstance(error, (Backup2FSError, OSError, ValueError)):
            logger.exception(f"Unexpected error while preparing extraction: {error}")
            reason = f"Unexpected error: {error}"
        now = datetime.now()
        self._transition(RunState.FAILED)
        self._summary = RunSummary(
            run_id=uuid.uuid4().hex[:12],
            state=RunState.FAILED,
            total=0,
            processed=0,
            succeeded=0,
            failed=0,
            reason=reason,
            started_at=now,
            finished_at=now,
        )
        self._notify_log(f"Extraction failed ({classify_error(error)}): {reason}", logging.ERROR)
        self._release_run_lock()
        self._done.set()

    # Processing

    def _run_worker(self, prepared: _PreparedRun) -> None:
        run = prepared.run
        tracker = ProgressTracker(
            run.total,
            log_interval=self.config.extraction.progress_interval,
            on_progress=self._notify_progress,
            on_log=self._call_log_observer,
        )
        final_state = RunState.FAILED
        reason = ""

        with LogContext(logger, run_id=run.run_id):
            try:
                algorithms = ", ".join(run.digest_algorithms) or "none"
                self._audit_system(
                    prepared.audit,
                    f"Extraction started: backup={normalize_path(run.backup_root)}, "
                    f"output={normalize_path(run.output_root)}, files={run.total}, digests={algorithms}",
                    STATUS_START,
                )
                self._notify_log(
                    f"Starting extraction of {run.total} files from {run.backup_root} to {run.output_root} "
                    f"(digests: {algorithms})"
                )
                tracker.start()

                self._process_records(prepared, tracker)
                run.settle_total()
                final_state = RunState.COMPLETED

            except ExtractionCancelled:
                final_state = RunState.CANCELLED
                reason = "Cancelled by request"

            except (SystemicError, ManifestError) as e:
                reason = str(e)
                self._notify_log(f"Extraction aborted ({classify_error(e)}): {reason}", logging.ERROR)
                self._audit_system(prepared.audit, f"Extraction aborted: {reason}", STATUS_ERROR)

            except Exception as e:
                logger.exception(f"Unexpected error during extraction: {e}")
                reason = f"Unexpected error: {e}"
                self._audit_system(prepared.audit, reason, STATUS_ERROR)

            finally:
                self._finalize(prepared, tracker, final_state, reason)

    def _process_records(self, prepared: _PreparedRun, tracker: ProgressTracker) -> None:
        workers = self.config.extraction.workers
        items = (self._dispatch(prepared, record) for record in prepared.reader.iter_files())

        if workers <= 1:
            for item in items:
                self._control.checkpoint()
                self._process_one(prepared, item, tracker)
        else:
            self._process_parallel(prepared, items, tracker, workers)

    def _dispatch(self, prepared: _PreparedRun, record: FileRecord) -> _WorkItem:
        """Resolve a record and claim its destination, in manifest order.

        Sanitizing is not one-to-one ('a:b' and 'a/b' land on the same path),
        so the first record to reach a destination owns it for the whole run
        and later ones are failed instead of overwriting it. Directory
        records may share a destination with each other.
        """
        resolved = prepared.reader.resolve(record, prepared.mapper)
        if resolved is None:
            return _WorkItem(record, None)

        owner = prepared.claims.setdefault(resolved.destination_path, resolved)
        if owner is resolved or (owner.record.is_directory and record.is_directory):
            return _WorkItem(record, resolved)
        return _WorkItem(record, resolved, owner)

    def _process_parallel(
        self,
        prepared: _PreparedRun,
        items: Iterator[_WorkItem],
        tracker: ProgressTracker,
        workers: int,
    ) -> None:
        """Feed work items to copy workers through a bounded queue.

        Workers only exit on a sentinel, so blocking puts cannot deadlock.
        After the first fatal error workers drain the queue without copying.
        Destinations were claimed before dispatch, so no two workers ever
        write the same path.
        """
        work_queue: Queue = Queue(maxsize=max(self.config.extraction.queue_maxsize, workers * 2))
        abort = threading.Event()
        errors: List[BaseException] = []
        errors_lock = threading.Lock()

        def worker() -> None:
            with LogContext(logger, run_id=prepared.run.run_id, worker=threading.current_thread().name):
                while True:
                    item = work_queue.get()
                    try:
                        if item is _SENTINEL:
                            return
                        if abort.is_set():
                            continue
                        self._control.checkpoint()
                        self._process_one(prepared, item, tracker)
                    except Exception as e:
                        with errors_lock:
                            errors.append(e)
                        abort.set()
                    finally:
                        work_queue.task_done()

        threads = [
            threading.Thread(target=worker, name=f"ibackup2fs-copy-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in threads:
            thread.start()
        logger.debug(f"Started {workers} copy workers")

        try:
            for item in items:
                self._control.checkpoint()
                if not self._put(work_queue, item, abort):
                    break
        finally:
            for _ in threads:
                work_queue.put(_SENTINEL)
            for thread in threads:
                thread.join()

        if errors:
            # A systemic failure outranks the cancellations it may have caused
            systemic = [e for e in errors if isinstance(e, SystemicError)]
            raise (systemic or errors)[0]

    def _put(self, work_queue: Queue, item: _WorkItem, abort: threading.Event) -> bool:
        while True:
            try:
                work_queue.put(item, timeout=0.1)
                return True
            except Full:
                if abort.is_set():
                    return False
                self._control.raise_if_cancelled()

    def _process_one(self, prepared: _PreparedRun, item: _WorkItem, tracker: ProgressTracker) -> None:
        """Copy one record and tally it. Per-file errors never propagate."""
        record, resolved = item.record, item.resolved

        if resolved is None:
            outcome = CopyOutcome.failure("Source file missing", CopyStatus.MISSING)
        elif item.owner is not None:
            owner = item.owner.record
            outcome = CopyOutcome.failure(
                f"Destination collision with {owner.blob_key} ({owner.domain}/{owner.relative_path})"
            )
        elif record.is_directory:
            outcome = prepared.engine.create_directory(resolved.destination_path)
        else:
            outcome = self._copy_file(prepared, resolved)

        counters = prepared.run.record(outcome)
        self._audit_file(prepared, record, resolved, outcome)

        if not outcome.succeeded:
            self._notify_log(
                f"{outcome.status.value.capitalize()}: {record.domain}/{record.relative_path} "
                f"({record.blob_key}): {outcome.reason}",
                logging.WARNING,
            )

        if prepared.resume_state is not None and counters.processed % self.config.extraction.progress_interval == 0:
            self._save_resume_state(prepared)

        tracker.update(counters)

    def _copy_file(self, prepared: _PreparedRun, resolved: ResolvedFile) -> CopyOutcome:
        state = prepared.resume_state
        if state is not None:
            done = state.lookup(resolved.file_id, resolved.destination_path)
            if done is not None:
                return CopyOutcome(CopyStatus.RESUMED, done.digests, "", done.size)

        outcome = prepared.engine.copy(
            resolved.source_path, resolved.destination_path, prepared.run.digest_algorithms
        )
        if state is not None and outcome.succeeded:
            state.mark_completed(
                resolved.file_id, resolved.destination_path, outcome.bytes_copied, dict(outcome.digests)
            )
        return outcome

    def _audit_file(
        self,
        prepared: _PreparedRun,
        record: FileRecord,
        resolved: Optional[ResolvedFile],
        outcome: CopyOutcome,
    ) -> None:
        destination = ""
        if outcome.succeeded and resolved is not None:
            destination = normalize_path(resolved.destination_path)

        status = outcome.status.value
        if outcome.reason:
            status = f"{status}: {outcome.reason}"

        entry = AuditEntry(
            file_id=record.blob_key,
            destination=destination,
            status=status,
            digests=outcome.digests,
        )
        try:
            prepared.audit.record(entry)
        except OSError as e:
            raise SystemicError(f"Audit log write failed: {e}", path=str(prepared.audit.path)) from e

    def _record_skipped_row(self, row: SkippedRow) -> None:
        prepared = self._prepared
        if prepared is None:
            return
        file_id = f"{row.file_id[:2]}/{row.file_id}" if len(row.file_id) >= 2 else row.file_id
        try:
            prepared.audit.record(AuditEntry(
                file_id=file_id,
                destination="",
                status=f"{STATUS_SKIPPED}: {row.reason}",
            ))
        except OSError as e:
            raise SystemicError(f"Audit log write failed: {e}", path=str(prepared.audit.path)) from e

    # Finalization

    def _finalize(
        self,
        prepared: _PreparedRun,
        tracker: ProgressTracker,
        final_state: RunState,
        reason: str,
    ) -> None:
        run = prepared.run
        counters = run.snapshot()
        skipped = prepared.reader.stats.ambiguous

        message = (
            f"Extraction {final_state.value}: {counters.processed}/{counters.total} files processed, "
            f"{counters.succeeded} succeeded, {counters.failed} failed"
        )
        if counters.resumed:
            message += f", {counters.resumed} resumed"
        if skipped:
            message += f", {skipped} manifest rows skipped"

        self._audit_system(
            prepared.audit, message, STATUS_ERROR if final_state is RunState.FAILED else STATUS_INFO
        )
        try:
            prepared.audit.close()
        except OSError as e:
            logger.error(f"Could not close audit log {prepared.audit.path}: {e}")
        prepared.reader.close()

        if prepared.resume_state is not None and prepared.state_file is not None:
            if final_state is RunState.COMPLETED:
                ResumeState.clear(prepared.state_file)
            else:
                self._save_resume_state(prepared)

        tracker.finish(completed=final_state is RunState.COMPLETED)

        self._summary = RunSummary(
            run_id=run.run_id,
            state=final_state,
            total=counters.total,
            processed=counters.processed,
            succeeded=counters.succeeded,
            failed=counters.failed,
            resumed=counters.resumed,
            skipped_rows=skipped,
            reason=reason,
            audit_log_path=prepared.audit.path,
            started_at=run.started_at,
            finished_at=datetime.now(),
        )
        self._transition(final_state)
        self._notify_log(message, logging.ERROR if final_state is RunState.FAILED else logging.INFO)
        self._release_run_lock()
        self._done.set()

    def _save_resume_state(self, prepared: _PreparedRun) -> None:
        try:
            prepared.resume_state.save(prepared.state_file)
        except OSError as e:
            logger.warning(f"Could not save resume state to {prepared.state_file}: {e}")

    def _audit_system(self, audit: AuditLog, message: str, status: str) -> None:
        try:
            audit.record_system(message, status)
        except (OSError, ValueError) as e:
            logger.error(f"Could not write to audit log {audit.path}: {e}")

    # Helpers

    def _transition(self, new_state: RunState) -> None:
        with self._state_lock:
            allowed = _TRANSITIONS.get(self._state, set())
            if new_state not in allowed:
                raise InvalidStateError(
                    f"Invalid transition {self._state.value} -> {new_state.value}"
                )
            logger.debug(f"State {self._state.value} -> {new_state.value}")
            self._state = new_state

    def _release_run_lock(self) -> None:
        with self._state_lock:
            if self._holds_run_lock:
                self._holds_run_lock = False
                _ACTIVE_RUN_LOCK.release()

    def _notify_log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        self._call_log_observer(message)

    def _call_log_observer(self, message: str) -> None:
        if self.on_log is not None:
            try:
                self.on_log(message)
            except Exception:
                logger.exception("Log observer raised")

    def _notify_progress(self, percent: int) -> None:
        self._last_progress = percent
        if self.on_progress is not None:
            try:
                self.on_progress(percent)
            except Exception:
                logger.exception("Progress observer raised")
