"""Digest utilities for file integrity verification."""

import hashlib
from typing import Dict, Iterable, Tuple

from .errors import UnsupportedDigestError

# Algorithms an audit row has a column for, in column order
SUPPORTED_ALGORITHMS: Tuple[str, ...] = ("md5", "sha1", "sha256")

# Recorded per algorithm when a file is above the hashing threshold
SKIPPED_LARGE_FILE = "SKIPPED_LARGE_FILE"


def normalize_algorithms(names: Iterable[str] | None) -> Tuple[str, ...]:
    """
    Validate and canonicalize a collection of digest algorithm names.

    Names are case-insensitive and may be written with a dash
    ("SHA-256"). Duplicates are dropped and the result follows
    SUPPORTED_ALGORITHMS order so audit columns stay stable.

    Args:
        names: Requested algorithm names, or None for no hashing

    Returns:
        Tuple of canonical names (possibly empty)

    Raises:
        UnsupportedDigestError: If a name is not in SUPPORTED_ALGORITHMS
    """
    if not names:
        return ()
    if isinstance(names, str):
        names = [names]

    requested = set()
    for name in names:
        canonical = str(name).strip().lower().replace("-", "").replace("_", "")
        if canonical not in SUPPORTED_ALGORITHMS:
            raise UnsupportedDigestError(
                f"Unsupported digest algorithm: {name}",
                supported=", ".join(SUPPORTED_ALGORITHMS),
            )
        requested.add(canonical)

    return tuple(a for a in SUPPORTED_ALGORITHMS if a in requested)


class MultiDigest:
    """Feeds every chunk to several hash objects in one pass."""

    def __init__(self, algorithms: Iterable[str]) -> None:
        self.algorithms = normalize_algorithms(algorithms)
        self._hashers = {name: hashlib.new(name) for name in self.algorithms}

    def update(self, chunk: bytes) -> None:
        for hasher in self._hashers.values():
            hasher.update(chunk)

    def hexdigests(self) -> Dict[str, str]:
        return {name: hasher.hexdigest() for name, hasher in self._hashers.items()}
