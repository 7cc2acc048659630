# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Shared directory and filename configuration for logs and cache.

- Configurable data root directory (default: ~/.codegraph_engine/)
- Subdirectory structure: cache/, logs/
- Date-based log filenames (codegraph_engine_YYYYMMDD.log)
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Default data root directory (user home)
DEFAULT_DATA_ROOT = Path.home() / ".codegraph_engine"

# Subdirectory names
CACHE_SUBDIR = "cache"
LOGS_SUBDIR = "logs"


def get_default_data_root() -> Path:
    """Get the default data root directory.

    Returns:
        Path to ~/.codegraph_engine/
    """
    return DEFAULT_DATA_ROOT


def get_current_utc_date() -> str:
    """Get the current UTC date in YYYYMMDD format."""
    return datetime.now(timezone.utc).strftime("%Y%m%d")


def validate_filename_component(value: str, name: str = "value") -> None:
    """Validate a string for safe use in filenames.

    Checks for path traversal attacks and invalid characters.

    Args:
        value: The string to validate.
        name: Name of the parameter for error messages.

    Raises:
        ValueError: If value is empty or contains path separators, parent
                   references, or null bytes.
    """
    if not value:
        raise ValueError(f"{name} must not be empty")
    if "\0" in value:
        raise ValueError(f"{name} contains null bytes: {value}")
    if "/" in value or "\\" in value or ":" in value:
        raise ValueError(f"{name} must not contain path separators: {value}")
    if ".." in value:
        raise ValueError(f"{name} must not contain parent references: {value}")


def build_log_filename(name: str = "codegraph_engine", extension: str = "log") -> str:
    """Build a dated log filename.

    Args:
        name: Filename prefix.
        extension: File extension without dot. Default is "log".

    Returns:
        Filename like "codegraph_engine_20251211.log"

    Raises:
        ValueError: If name contains path separators or invalid chars.
    """
    validate_filename_component(name, "name")
    validate_filename_component(extension, "extension")
    return f"{name}_{get_current_utc_date()}.{extension}"


def get_cache_dir(data_root: Optional[Path] = None) -> Path:
    """Get the graph cache directory.

    Returns:
        Path to {data_root}/cache/
    """
    root = data_root or DEFAULT_DATA_ROOT
    return root / CACHE_SUBDIR


def get_logs_dir(data_root: Optional[Path] = None) -> Path:
    """Get the log file directory.

    Returns:
        Path to {data_root}/logs/
    """
    root = data_root or DEFAULT_DATA_ROOT
    return root / LOGS_SUBDIR


def ensure_data_directories(data_root: Optional[Path] = None) -> None:
    """Create the data root and its subdirectories if they don't exist."""
    root = data_root or DEFAULT_DATA_ROOT
    root.mkdir(parents=True, exist_ok=True)
    (root / CACHE_SUBDIR).mkdir(exist_ok=True)
    (root / LOGS_SUBDIR).mkdir(exist_ok=True)
