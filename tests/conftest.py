"""Shared fixtures: synthetic iOS backups on disk."""

import hashlib
import plistlib
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import pytest

SYMLINK = 1
DIRECTORY = 2
FILE = 4

# (domain, relativePath, flags, content); content None means no blob on disk
Entry = Tuple[str, str, int, Optional[bytes]]


def file_id_for(domain: str, relative_path: str) -> str:
    """Backups key blobs by sha1("<domain>-<relativePath>")."""
    return hashlib.sha1(f"{domain}-{relative_path}".encode("utf-8")).hexdigest()


@dataclass
class FakeBackup:
    root: Path
    ids: Dict[Tuple[str, str], str] = field(default_factory=dict)
    contents: Dict[str, bytes] = field(default_factory=dict)

    def file_id(self, domain: str, relative_path: str) -> str:
        return self.ids[(domain, relative_path)]


def write_manifest(db_path: Path, rows: Iterable[Tuple[str, str, str, object]]) -> None:
    connection = sqlite3.connect(db_path)
    try:
        connection.execute(
            "CREATE TABLE Files (fileID TEXT PRIMARY KEY, domain TEXT, "
            "relativePath TEXT, flags INTEGER, file BLOB)"
        )
        connection.executemany(
            "INSERT INTO Files (fileID, domain, relativePath, flags) VALUES (?, ?, ?, ?)",
            list(rows),
        )
        connection.commit()
    finally:
        connection.close()


def build_backup(
    root: Path,
    entries: Iterable[Entry],
    encrypted: Optional[bool] = False,
    info: Optional[dict] = None,
) -> FakeBackup:
    """Write Manifest.db, blobs and plists for entries under root."""
    root.mkdir(parents=True, exist_ok=True)
    backup = FakeBackup(root=root)
    rows = []

    for domain, relative_path, flags, content in entries:
        file_id = file_id_for(domain, relative_path)
        backup.ids[(domain, relative_path)] = file_id
        rows.append((file_id, domain, relative_path, flags))
        if content is not None:
            blob = root / file_id[:2] / file_id
            blob.parent.mkdir(parents=True, exist_ok=True)
            blob.write_bytes(content)
            backup.contents[file_id] = content

    write_manifest(root / "Manifest.db", rows)

    if encrypted is not None:
        with open(root / "Manifest.plist", "wb") as f:
            plistlib.dump({"IsEncrypted": encrypted, "Version": "10.0"}, f)

    if info is not None:
        with open(root / "Info.plist", "wb") as f:
            plistlib.dump(info, f)

    return backup


SMS_DB = b"SQLite format 3\x00" + b"sms-data" * 512
APP_TEXT = b"hello from the app container\n"
PHOTO = bytes(range(256)) * 500

SAMPLE_ENTRIES = [
    ("HomeDomain", "", DIRECTORY, None),
    ("HomeDomain", "Library", DIRECTORY, None),
    ("HomeDomain", "Library/SMS/sms.db", FILE, SMS_DB),
    ("HomeDomain", "Library/link", SYMLINK, None),
    ("HomeDomain", "Library/missing.db", FILE, None),
    ("HomeDomain", "Library/weird", DIRECTORY | FILE, b"x"),
    ("AppDomain-com.example.app", "Documents/a.txt", FILE, APP_TEXT),
    ("MediaDomain", "Media/DCIM/100APPLE/IMG_0001.JPG", FILE, PHOTO),
    ("CameraRollDomain", "Media/empty.dat", FILE, b""),
]

# Rows the manifest reader yields: files and directories with a path
SAMPLE_TOTAL = 6
SAMPLE_SUCCEEDED = 5
SAMPLE_FAILED = 1
SAMPLE_SKIPPED = 1


@pytest.fixture
def backup_factory(tmp_path):
    """Build a backup from entries: backup_factory(entries, name=..., encrypted=...)."""
    def _make(entries, name="backup", encrypted=False, info=None):
        return build_backup(tmp_path / name, entries, encrypted=encrypted, info=info)
    return _make


@pytest.fixture
def sample_backup(backup_factory):
    return backup_factory(
        SAMPLE_ENTRIES,
        info={
            "Device Name": "Test iPhone",
            "Product Type": "iPhone14,2",
            "Product Version": "17.4",
            "Serial Number": "F2LXXXXXXX",
            "Installed Applications": ["com.example.app"],
        },
    )
