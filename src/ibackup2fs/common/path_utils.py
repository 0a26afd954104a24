"""Path utilities for consistent path handling."""

import unicodedata
from pathlib import Path


def normalize_path(path: Path | str) -> str:
    """
    Normalize a path for logging and comparison.

    Applies Unicode NFC normalization and converts backslashes to forward
    slashes, so audit rows read the same on every host.

    Args:
        path: Path object or string to normalize

    Returns:
        Normalized path string with forward slashes and NFC Unicode normalization

    Examples:
        >>> normalize_path(Path("café/résumé.txt"))
        'café/résumé.txt'
        >>> normalize_path(r"C:\\Users\\test\\backup")
        'C:/Users/test/backup'
    """
    normalized = unicodedata.normalize('NFC', str(path))
    return normalized.replace('\\', '/')

