"""File path resolution using platformdirs.

Persistent data (the SQLite state database) lives in the platform user
data directory:
  macOS: ~/Library/Application Support/update-center/
  Linux: ~/.local/share/update-center/
  Windows: %LOCALAPPDATA%/update-center/
"""

from pathlib import Path

import platformdirs

APP_NAME = "update-center"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB)."""
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "update_center.db"


def ensure_data_dir() -> Path:
    """Create the data directory if it doesn't exist and return it."""
    data_dir = get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
