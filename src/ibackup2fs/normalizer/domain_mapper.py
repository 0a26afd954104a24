"""Map backup (domain, relativePath) pairs to on-device filesystem paths."""

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Optional, Tuple

# Keys ending in '-' name a family of per-instance domains; the remainder
# of the domain (usually an app bundle id) becomes an extra directory.
DEFAULT_DOMAIN_MAPPINGS: Dict[str, str] = {
    "AppDomain-": "private/var/mobile/Containers/Data/Application",
    "AppDomainGroup-": "private/var/mobile/Containers/Shared/AppGroup",
    "AppDomainPlugin-": "private/var/mobile/Containers/Data/PluginKitPlugin",
    "CameraRollDomain": "private/var/mobile",
    "DatabaseDomain": "private/var/db",
    "HealthDomain": "private/var/mobile/Library/Health",
    "HomeDomain": "private/var/mobile",
    "HomeKitDomain": "private/var/mobile",
    "InstallDomain": "private/var/installd",
    "KeyboardDomain": "private/var/mobile",
    "KeychainDomain": "private/var/Keychains",
    "ManagedPreferencesDomain": "private/var/Managed Preferences",
    "MediaDomain": "private/var/mobile/Media",
    "MobileDeviceDomain": "private/var/MobileDevice",
    "NetworkDomain": "private/var/networkd",
    "ProtectedDomain": "private/var/protected",
    "RootDomain": "private/var/root",
    "SysContainerDomain-": "private/var/containers/Data/System",
    "SysSharedContainerDomain-": "private/var/containers/Shared/SystemGroup",
    "SystemPreferencesDomain": "private/var/preferences",
    "TonesDomain": "private/var/mobile",
    "WirelessDomain": "private/var/wireless",
}

FALLBACK_ROOT = "private/var/Other"

PREFIX_SEPARATOR = "-"

# Characters a relativePath may use as a separator besides '/'
FOREIGN_SEPARATORS = (":", "\\")

ILLEGAL_SEGMENT_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')

WINDOWS_RESERVED_NAMES = {
    'CON', 'PRN', 'AUX', 'NUL',
    'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
    'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9'
}

# Replacement for segments that would otherwise vanish or climb out of the root
PLACEHOLDER_SEGMENT = "_"


def sanitize_segment(segment: str) -> str:
    """Strip characters the host filesystem rejects from one path segment.

    Args:
        segment: A single path component (no separators)

    Returns:
        Sanitized component, never empty
    """
    cleaned = ILLEGAL_SEGMENT_CHARS.sub('', segment)

    # Trailing dots and spaces are dropped by Windows
    cleaned = cleaned.rstrip('. ')

    if cleaned.split('.')[0].upper() in WINDOWS_RESERVED_NAMES:
        cleaned = f"_{cleaned}"

    return cleaned or PLACEHOLDER_SEGMENT


def split_segments(path: str, sanitize: bool = True) -> List[str]:
    """Split a backup path into safe segments.

    ':' and '\\' are treated as separators. Empty and '.' segments are
    dropped and '..' is neutralised whether or not sanitization is on.
    """
    for separator in FOREIGN_SEPARATORS:
        path = path.replace(separator, "/")

    segments = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            segments.append(PLACEHOLDER_SEGMENT)
            continue
        if sanitize:
            segment = sanitize_segment(segment)
        elif "\x00" in segment:
            segment = segment.replace("\x00", "") or PLACEHOLDER_SEGMENT
        segments.append(segment)
    return segments


@dataclass(frozen=True)
class DomainTable:
    """Immutable domain-to-root rules.

    exact holds whole-domain rules. prefixes holds (prefix, root) pairs
    sorted longest first so the most specific family wins.
    """

    exact: Mapping[str, str]
    prefixes: Tuple[Tuple[str, str], ...]
    fallback_root: str = FALLBACK_ROOT

    @classmethod
    def from_mappings(
        cls,
        mappings: Optional[Mapping[str, str]] = None,
        fallback_root: str = FALLBACK_ROOT,
    ) -> "DomainTable":
        """Build a table from a flat {domain-or-prefix: root} mapping."""
        if mappings is None:
            mappings = DEFAULT_DOMAIN_MAPPINGS

        exact: Dict[str, str] = {}
        prefixes: List[Tuple[str, str]] = []
        for key, root in mappings.items():
            if key.endswith(PREFIX_SEPARATOR):
                prefixes.append((key, root))
            else:
                exact[key] = root

        prefixes.sort(key=lambda pair: len(pair[0]), reverse=True)
        return cls(exact=exact, prefixes=tuple(prefixes), fallback_root=fallback_root)

    def lookup(self, domain: str) -> Tuple[str, Optional[str]]:
        """Return (root, suffix) for a domain.

        suffix is the part of the domain after a matched prefix, or None for
        exact matches and the fallback.
        """
        root = self.exact.get(domain)
        if root is not None:
            return root, None

        for prefix, prefix_root in self.prefixes:
            if domain.startswith(prefix):
                return prefix_root, domain[len(prefix):]

        return self.fallback_root, None


DEFAULT_DOMAIN_TABLE = DomainTable.from_mappings()


def device_path(
    domain: str,
    relative_path: str,
    table: DomainTable = DEFAULT_DOMAIN_TABLE,
    sanitize: bool = True,
) -> PurePosixPath:
    """Path a backed-up file had on the device, relative to '/'.

    Example:
        >>> device_path("HomeDomain", "Library/SMS/sms.db")
        PurePosixPath('private/var/mobile/Library/SMS/sms.db')
    """
    root, suffix = table.lookup(domain or "")

    segments = split_segments(root, sanitize=False)
    if suffix:
        segments.extend(split_segments(suffix, sanitize=sanitize))
    segments.extend(split_segments(relative_path or "", sanitize=sanitize))

    return PurePosixPath(*segments)


class DomainMapper:
    """Resolves manifest entries to destinations under one output root.

    The output root and rule table are fixed at construction; resolve()
    has no side effects and never fails for unknown domains.
    """

    def __init__(
        self,
        output_root: Path,
        table: Optional[DomainTable] = None,
        sanitize: bool = True,
    ) -> None:
        self.output_root = Path(output_root)
        self.table = table or DEFAULT_DOMAIN_TABLE
        self.sanitize = sanitize

    def resolve(self, domain: str, relative_path: str) -> Path:
        """Absolute destination for (domain, relative_path)."""
        return self.output_root.joinpath(
            *device_path(domain, relative_path, self.table, self.sanitize).parts
        )
