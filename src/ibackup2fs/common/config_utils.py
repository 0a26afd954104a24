"""Configuration utilities."""

import hashlib
import os
import tempfile
import platformdirs
from pathlib import Path


def expand_path_variables(path: str) -> str:
    """Expand ${VAR} variables in paths.

    Supported variables:
        ${USER_HOME}: User's home directory
        ${USER_DATA}: User data directory
        ${USER_CONFIG}: User config directory
        ${USER_CACHE}: User cache directory
        ${USER_STATE}: User state directory
        ${USER_LOGS}: User log directory
        ${TEMP}: Temporary directory

    Args:
        path: Path string with variables

    Returns:
        Expanded path string
    """
    if not isinstance(path, str):
        return path

    replacements = {
        "${USER_HOME}": str(Path.home()),
        "${USER_DATA}": platformdirs.user_data_dir(),
        "${USER_CONFIG}": platformdirs.user_config_dir(),
        "${USER_CACHE}": platformdirs.user_cache_dir(),
        "${USER_STATE}": platformdirs.user_state_dir(),
        "${USER_LOGS}": platformdirs.user_log_dir(),
        "${TEMP}": tempfile.gettempdir(),
    }

    for var, value in replacements.items():
        path = path.replace(var, value)

    return path


def get_cpu_count() -> int:
    """Get number of CPU cores, with fallback."""
    return os.cpu_count() or 4


def auto_detect_io_workers(multiplier: float = 2.0, min_workers: int = 2, max_workers: int = 16) -> int:
    """Auto-detect number of I/O worker threads.

    Args:
        multiplier: Multiplier for CPU count (e.g., 2.0 for 2x cores)
        min_workers: Minimum number of workers
        max_workers: Upper bound; copying is disk-bound long before this

    Returns:
        Number of I/O workers
    """
    cpu_count = get_cpu_count()
    return min(max_workers, max(min_workers, int(cpu_count * multiplier)))


def default_state_file(app_name: str, backup_dir: Path, output_dir: Path) -> Path:
    """Per backup/output pair resume state file under the user state directory."""
    key = f"{Path(backup_dir).resolve()}|{Path(output_dir).resolve()}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
    state_dir = Path(platformdirs.user_state_dir(appname=app_name, appauthor=False))
    return state_dir / f"resume_{digest}.json"
