"""
Utilities for platform directories, version directory names and package file names.
"""

import os
import platform
from pathlib import Path
from urllib.parse import unquote, urlparse

from pathvalidate import ValidationError, sanitize_filename, validate_filename

from engine_cache.exceptions import InvalidVersionError

APP_NAME = "engine-cache"


def get_config_dir() -> Path:
    """Gets the platform-specific directory holding config.ini."""
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / APP_NAME


def get_data_dir() -> Path:
    """Gets the platform-specific directory where engines are installed by default."""
    if platform.system() == "Darwin":
        base_dir = Path("~/Library/Application Support")
    elif os.name == "nt":
        base_dir = Path(os.getenv("LOCALAPPDATA", "~\\AppData\\Local"))
    else:
        base_dir = Path(os.getenv("XDG_DATA_HOME", "~/.local/share"))
    return base_dir.expanduser() / APP_NAME


def validate_version_name(version: str) -> str:
    """
    Ensures a version identifier can be used verbatim as a directory name.

    Raises:
        InvalidVersionError: If the identifier is empty, hidden, or not a valid
        single path component on every platform.
    """
    if not version or version.startswith("."):
        raise InvalidVersionError(f"Invalid engine version identifier: '{version}'.")
    try:
        validate_filename(version, platform="universal")
    except ValidationError as e:
        raise InvalidVersionError(
            f"Invalid engine version identifier '{version}': {e}"
        ) from e
    return version


def package_file_name(url: str, version: str) -> str:
    """Derives the on-disk package file name from its download URL."""
    name = sanitize_filename(unquote(Path(urlparse(url).path).name))
    if not name or name.startswith("."):
        return f"engine_{sanitize_filename(version)}.zip"
    return name


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)
