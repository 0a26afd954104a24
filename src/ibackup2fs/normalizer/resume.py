"""Resume state for interrupted extractions."""

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class CompletedFileRecord:
    """A file known to be fully copied."""
    file_id: str
    destination: str
    size: int
    digests: Dict[str, str] = field(default_factory=dict)
    completed_at: str = ""


@dataclass
class ResumeState:
    """Files completed by earlier attempts for one backup/output pair."""
    backup_dir: str
    output_dir: str
    started_at: str
    completed: Dict[str, CompletedFileRecord] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def new(cls, backup_dir: Path, output_dir: Path) -> "ResumeState":
        return cls(
            backup_dir=str(Path(backup_dir).resolve()),
            output_dir=str(Path(output_dir).resolve()),
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    def matches(self, backup_dir: Path, output_dir: Path) -> bool:
        return (
            self.backup_dir == str(Path(backup_dir).resolve())
            and self.output_dir == str(Path(output_dir).resolve())
        )

    def mark_completed(self, file_id: str, destination: Path, size: int, digests: Dict[str, str]) -> None:
        """Mark a file as successfully copied."""
        with self._lock:
            self.completed[file_id] = CompletedFileRecord(
                file_id=file_id,
                destination=str(destination),
                size=size,
                digests=dict(digests),
                completed_at=datetime.now(timezone.utc).isoformat(),
            )

    def lookup(self, file_id: str, destination: Path) -> Optional[CompletedFileRecord]:
        """Return the record if the earlier copy is still on disk intact.

        The destination must be the same path and still have the recorded size.
        """
        with self._lock:
            record = self.completed.get(file_id)
        if record is None or record.destination != str(destination):
            return None
        try:
            if destination.stat().st_size != record.size:
                return None
        except OSError:
            return None
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self.completed)

    def save(self, state_file: Path) -> None:
        """Save state to JSON file (written to a temp file, then renamed)."""
        state_file.parent.mkdir(parents=True, exist_ok=True)

        temp_file = state_file.with_suffix(state_file.suffix + ".tmp")

        # Lock spans the write: concurrent savers share one temp path
        with self._lock:
            state_dict = {
                'version': STATE_VERSION,
                'backup_dir': self.backup_dir,
                'output_dir': self.output_dir,
                'started_at': self.started_at,
                'completed': {k: asdict(v) for k, v in self.completed.items()},
            }
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(state_dict, f, indent=2)
            os.replace(temp_file, state_file)

        logger.debug(f"Saved resume state ({len(state_dict['completed'])} files) to {state_file}")

    @classmethod
    def load(cls, state_file: Path) -> Optional['ResumeState']:
        """Load state from JSON file. Unreadable state is ignored, not fatal."""
        if not state_file.exists():
            return None

        try:
            with open(state_file, 'r', encoding='utf-8') as f:
                state_dict = json.load(f)

            if state_dict.get('version') != STATE_VERSION:
                logger.warning(f"Ignoring resume state with unknown version: {state_file}")
                return None

            state = cls(
                backup_dir=state_dict['backup_dir'],
                output_dir=state_dict['output_dir'],
                started_at=state_dict['started_at'],
            )
            for file_id, record in state_dict.get('completed', {}).items():
                state.completed[file_id] = CompletedFileRecord(**record)

            logger.info(f"Loaded resume state from {state_file} ({len(state.completed)} files done)")
            return state

        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load resume state from {state_file}: {e}")
            return None

    @staticmethod
    def clear(state_file: Path) -> None:
        """Remove a state file once its run has completed."""
        try:
            state_file.unlink(missing_ok=True)
            logger.debug(f"Removed resume state {state_file}")
        except OSError as e:
            logger.warning(f"Could not remove resume state {state_file}: {e}")
