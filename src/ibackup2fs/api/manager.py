"""Owns the coordinator behind the HTTP API."""

import itertools
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from ibackup2fs.normalizer import ExtractionCoordinator, NormalizerConfig, RunInProgressError

logger = logging.getLogger(__name__)


class ExtractionManager:
    """
    Keeps the current (or last) coordinator plus its observer output.

    Log messages are buffered with increasing sequence numbers so pollers
    can ask for everything after the last number they saw.
    """

    def __init__(self, config: NormalizerConfig, log_buffer_size: int = 1000):
        self.config = config
        self._lock = threading.Lock()
        self._coordinator: Optional[ExtractionCoordinator] = None
        self._messages: Deque[Tuple[int, str]] = deque(maxlen=log_buffer_size)
        self._sequence = itertools.count(1)
        self._messages_lock = threading.Lock()

    @property
    def coordinator(self) -> Optional[ExtractionCoordinator]:
        return self._coordinator

    def _on_log(self, message: str) -> None:
        with self._messages_lock:
            self._messages.append((next(self._sequence), message))

    def start(self, backup_dir: Path, output_dir: Path, digest_algorithms: Optional[List[str]]) -> Dict[str, Any]:
        """
        Start a new run.

        Raises:
            RunInProgressError: If a run is still active
        """
        with self._lock:
            current = self._coordinator
            if current is not None and current.state.is_active:
                raise RunInProgressError("An extraction run is already active")
            logger.info(f"API start request: {backup_dir} -> {output_dir}")
            coordinator = ExtractionCoordinator(self.config, on_log=self._on_log)
            # Validation runs synchronously; held so two requests cannot race
            coordinator.start(backup_dir, output_dir, digest_algorithms)
            self._coordinator = coordinator
        return self.status()

    def status(self) -> Optional[Dict[str, Any]]:
        coordinator = self._coordinator
        if coordinator is None:
            return None
        data = coordinator.snapshot()
        if coordinator.device_info is not None:
            data["device"] = coordinator.device_info.to_dict()
        return data

    def messages(self, since: int = 0) -> Dict[str, Any]:
        """Buffered log messages with a sequence number above since."""
        with self._messages_lock:
            items = [{"seq": seq, "message": msg} for seq, msg in self._messages if seq > since]
        last = items[-1]["seq"] if items else since
        return {"next": last, "messages": items}

    def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel an active run and wait for it to settle."""
        coordinator = self._coordinator
        if coordinator is not None and coordinator.state.is_active:
            logger.info("Cancelling active extraction on shutdown")
            coordinator.cancel()
            coordinator.wait(timeout)
