"""
Installer media resolution.

Finds SP/CU installers in the configured media repositories and makes sure
each (KB, architecture) installer is downloaded at most once per run, no
matter how many hosts need it.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future
from pathlib import Path

from autodbpatch.hotfix.models import DownloadRequest

logger = logging.getLogger(__name__)

_ARCHITECTURES = {
    "x64": "x64",
    "64": "x64",
    "64-bit": "x64",
    "amd64": "x64",
    "x86": "x86",
    "32": "x86",
    "32-bit": "x86",
    "i386": "x86",
}


def normalize_architecture(value: str | int | None) -> str:
    """Map "64-bit", "AMD64", 64 ... to "x64"/"x86"."""
    key = str(value or "x64").strip().lower()
    return _ARCHITECTURES.get(key, key)


def installer_matches(filename: str, kb: str, architecture: str) -> bool:
    """True for names like SQLServer2019-KB5027702-x64.exe."""
    name = filename.upper()
    return (
        name.endswith(".EXE")
        and re.search(rf"KB{re.escape(kb)}(?!\d)", name) is not None
        and normalize_architecture(architecture).upper() in name
    )


class MediaRepository:
    """
    Recursive search over one or more installer directories (local or UNC).

    Usage:
        repository = MediaRepository(["\\\\fileserver\\sqlpatches", "D:/media"])
        installer = repository.find("5027702", "x64")
    """

    def __init__(self, paths: Iterable[str | Path] = ()):
        self.paths = [Path(p) for p in paths]
        self._lock = threading.Lock()
        self._found: dict[tuple[str, str], Path] = {}

    def find(self, kb: str, architecture: str) -> Path | None:
        key = (kb, normalize_architecture(architecture))
        with self._lock:
            if key in self._found:
                return self._found[key]

        for root in self.paths:
            if not root.exists():
                logger.warning("Media repository not reachable: %s", root)
                continue
            for candidate in sorted(root.rglob("*.exe")):
                if installer_matches(candidate.name, kb, architecture):
                    logger.debug("Installer for KB%s (%s): %s", kb, key[1], candidate)
                    with self._lock:
                        self._found[key] = candidate
                    return candidate

        logger.debug("No installer for KB%s (%s) in %d repositories", kb, key[1], len(self.paths))
        return None

    def add(self, kb: str, architecture: str, path: Path) -> None:
        """Register a freshly downloaded installer."""
        with self._lock:
            self._found[(kb, normalize_architecture(architecture))] = path


class DownloadCache:
    """
    Deduplicates installer downloads across concurrently processed hosts.

    The first host needing a (KB, architecture) pair downloads it; every other
    host asking for the same pair waits for that download and gets the same
    file (or the same error).
    """

    def __init__(
        self,
        download: Callable[[str, str, Path], Path],
        destination: str | Path,
        repository: MediaRepository | None = None,
    ):
        self._download = download
        self.destination = Path(destination)
        self.repository = repository
        self._lock = threading.Lock()
        self._futures: dict[tuple[str, str], Future] = {}

    @property
    def download_count(self) -> int:
        with self._lock:
            return len(self._futures)

    def get(self, request: DownloadRequest) -> Path:
        """
        Return the local path of the installer, downloading it once.

        Raises:
            DownloadError: Download failed (for the first and every waiting host)
        """
        with self._lock:
            future = self._futures.get(request.key)
            owner = future is None
            if owner:
                future = Future()
                self._futures[request.key] = future

        if owner:
            logger.info("Downloading KB%s (%s) to %s", request.kb, request.architecture, self.destination)
            try:
                self.destination.mkdir(parents=True, exist_ok=True)
                path = Path(self._download(request.kb, request.architecture, self.destination))
            except Exception as exc:
                future.set_exception(exc)
                raise
            if self.repository is not None:
                self.repository.add(request.kb, request.architecture, path)
            future.set_result(path)
        else:
            logger.debug("Waiting for shared download of KB%s (%s)", request.kb, request.architecture)

        return future.result()
