"""Reconstruct an iOS device filesystem tree from an iTunes-style backup."""

__version__ = "0.1.0"

# Used for config/state directories and the IBACKUP2FS_ environment prefix
APP_NAME = "ibackup2fs"
