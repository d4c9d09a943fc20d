"""
Build reference store.

Loads the SQL Server build reference table from the per-user cache, falling
back to the snapshot bundled with the package, and refreshes the cache from
its remote source on demand.

Refreshes replace the cache file atomically: readers see either the old or
the new file, never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import requests

from autodbpatch.domain.builds import STALENESS_WINDOW, BuildTable
from autodbpatch.domain.errors import LoadError, NetworkError
from autodbpatch.infrastructure.config_loader import DEFAULT_REFERENCE_URL
from autodbpatch.infrastructure.paths import bundled_reference_path, default_cache_path

logger = logging.getLogger(__name__)


class BuildReferenceStore:
    """
    Cache-backed source of BuildTable snapshots.

    Usage:
        store = BuildReferenceStore()
        table = store.get_table(auto_refresh=True)
        if store.check_staleness(table):
            print("Reference data is old, run 'autodbpatch refresh'")
    """

    def __init__(
        self,
        cache_path: str | Path | None = None,
        bundled_path: str | Path | None = None,
        url: str = DEFAULT_REFERENCE_URL,
        timeout: float = 60,
        session: requests.Session | None = None,
        staleness_window: timedelta = STALENESS_WINDOW,
    ):
        """
        Initialize the store.

        Args:
            cache_path: Writable cache file (defaults to the per-user data dir)
            bundled_path: Read-only fallback snapshot
            url: Remote reference index
            timeout: HTTP timeout in seconds
            session: Optional requests session (tests inject a fake)
            staleness_window: Age after which the table is reported stale
        """
        self.cache_path = Path(cache_path) if cache_path else default_cache_path()
        self.bundled_path = Path(bundled_path) if bundled_path else bundled_reference_path()
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.staleness_window = staleness_window

    def load(self) -> BuildTable:
        """
        Load the cached table, or the bundled one when there is no usable cache.

        Raises:
            LoadError: Neither cache nor bundled snapshot could be read
        """
        for source in (self.cache_path, self.bundled_path):
            if not source.exists():
                logger.debug("Build reference not found at %s", source)
                continue
            try:
                table = self._read(source)
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable build reference %s: %s", source, exc)
                continue
            logger.info("Loaded build reference from %s (%d builds)", source, len(table))
            return table

        raise LoadError(
            f"No build reference available: cache {self.cache_path} and "
            f"bundled snapshot {self.bundled_path} are missing or invalid"
        )

    def refresh(self) -> BuildTable:
        """
        Download the remote reference and replace the cache.

        Raises:
            NetworkError: Download failed, returned unusable data, or the
                cache could not be written
        """
        logger.info("Refreshing build reference from %s", self.url)
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise NetworkError(f"Failed to download build reference from {self.url}: {exc}") from exc

        if not isinstance(payload, dict):
            raise NetworkError(f"Build reference from {self.url} is not a JSON object")
        if not payload.get("LastUpdated"):
            payload["LastUpdated"] = datetime.now(timezone.utc).isoformat()
        try:
            table = BuildTable.from_payload(payload)
        except (ValueError, TypeError, AttributeError) as exc:
            raise NetworkError(f"Build reference from {self.url} is invalid: {exc}") from exc

        try:
            self._write(table)
        except OSError as exc:
            raise NetworkError(f"Failed to save build reference to {self.cache_path}: {exc}") from exc
        logger.info("Build reference refreshed: %d builds, last updated %s", len(table), table.last_updated)
        return table

    def get_table(self, auto_refresh: bool = False) -> BuildTable:
        """
        Current table, refreshed first when stale and auto_refresh is set.

        A failed automatic refresh falls back to the local table.
        """
        try:
            table = self.load()
        except LoadError:
            if not auto_refresh:
                raise
            logger.warning("No local build reference, downloading")
            return self.refresh()

        if auto_refresh and table.is_stale(window=self.staleness_window):
            try:
                return self.refresh()
            except NetworkError as exc:
                logger.warning("Automatic refresh failed, using local reference: %s", exc)
        return table

    def check_staleness(self, table: BuildTable, now: datetime | None = None) -> bool:
        """Log a warning and return True when the table is older than the staleness window."""
        if not table.is_stale(now, self.staleness_window):
            return False
        age = table.age(now)
        if age is None:
            logger.warning("Build reference has no LastUpdated date; refresh it")
        else:
            logger.warning(
                "Build reference is %d days old (last updated %s); refresh it",
                age.days, table.last_updated.date(),
            )
        return True

    @staticmethod
    def _read(path: Path) -> BuildTable:
        with open(path, encoding="utf-8-sig") as handle:
            return BuildTable.from_payload(json.load(handle))

    def _write(self, table: BuildTable) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=".buildref-", suffix=".tmp", dir=self.cache_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(table.to_payload(), handle, indent=2)
            os.replace(temp_name, self.cache_path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.debug("Build reference cache written to %s", self.cache_path)
