"""Device metadata from a backup's Info.plist and Manifest.plist."""

import logging
import plistlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

INFO_PLIST = "Info.plist"
MANIFEST_PLIST = "Manifest.plist"


@dataclass
class DeviceInfo:
    """Display-only description of the backed-up device."""
    device_name: str = ""
    product_type: str = ""
    ios_version: str = ""
    build_version: str = ""
    serial_number: str = ""
    unique_device_id: str = ""
    imei: str = ""
    phone_number: str = ""
    last_backup_date: Optional[datetime] = None
    is_encrypted: bool = False
    installed_apps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_name": self.device_name,
            "product_type": self.product_type,
            "ios_version": self.ios_version,
            "build_version": self.build_version,
            "serial_number": self.serial_number,
            "unique_device_id": self.unique_device_id,
            "imei": self.imei,
            "phone_number": self.phone_number,
            "last_backup_date": self.last_backup_date.isoformat() if self.last_backup_date else None,
            "is_encrypted": self.is_encrypted,
            "installed_apps": list(self.installed_apps),
        }


def _load_plist(path: Path) -> Optional[Dict[str, Any]]:
    if not path.is_file():
        return None
    try:
        with open(path, "rb") as f:
            data = plistlib.load(f)
    except (plistlib.InvalidFileException, ValueError, OSError) as e:
        logger.warning(f"Could not parse {path.name}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Unexpected top-level type in {path.name}: {type(data).__name__}")
        return None
    return data


def is_backup_encrypted(backup_root: Path) -> bool:
    """Read Manifest.plist:IsEncrypted (False when the plist is absent)."""
    manifest = _load_plist(Path(backup_root) / MANIFEST_PLIST)
    return bool(manifest and manifest.get("IsEncrypted", False))


def read_device_info(backup_root: Path) -> Optional[DeviceInfo]:
    """
    Build a DeviceInfo from the backup's plists.

    Returns:
        DeviceInfo, or None if neither Info.plist nor Manifest.plist is readable
    """
    backup_root = Path(backup_root)
    info = _load_plist(backup_root / INFO_PLIST)
    manifest = _load_plist(backup_root / MANIFEST_PLIST)

    if info is None and manifest is None:
        return None

    info = info or {}
    manifest = manifest or {}

    apps = info.get("Installed Applications") or list((manifest.get("Applications") or {}).keys())
    last_backup = info.get("Last Backup Date") or manifest.get("Date")

    device = DeviceInfo(
        device_name=str(info.get("Device Name") or info.get("Display Name") or ""),
        product_type=str(info.get("Product Type", "")),
        ios_version=str(info.get("Product Version", "")),
        build_version=str(info.get("Build Version", "")),
        serial_number=str(info.get("Serial Number", "")),
        unique_device_id=str(info.get("Unique Identifier") or info.get("GUID") or ""),
        imei=str(info.get("IMEI", "")),
        phone_number=str(info.get("Phone Number", "")),
        last_backup_date=last_backup if isinstance(last_backup, datetime) else None,
        is_encrypted=bool(manifest.get("IsEncrypted", False)),
        installed_apps=sorted(str(app) for app in apps),
    )
    logger.debug(f"Read device info: {device.device_name} ({device.product_type}, iOS {device.ios_version})")
    return device
