"""
Per-user data locations.

The build reference cache and downloaded installers live under a per-user
data directory:
- %LOCALAPPDATA%\\AutoDBPatch on Windows
- ~/.local/share/autodbpatch elsewhere
"""

from __future__ import annotations

import os
from pathlib import Path

CACHE_PATH_ENV = "AUTODBPATCH_BUILDREF_PATH"
CACHE_FILENAME = "dbatools-buildref-index.json"


def data_dir() -> Path:
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        return Path(local_app_data) / "AutoDBPatch"
    return Path.home() / ".local" / "share" / "autodbpatch"


def default_cache_path() -> Path:
    """Build reference cache file, overridable with AUTODBPATCH_BUILDREF_PATH."""
    override = os.environ.get(CACHE_PATH_ENV)
    if override:
        return Path(override)
    return data_dir() / CACHE_FILENAME


def default_download_dir() -> Path:
    return data_dir() / "downloads"


def bundled_reference_path() -> Path:
    """Reference snapshot shipped inside the package."""
    return Path(__file__).resolve().parent.parent / "assets" / "build_reference.json"
