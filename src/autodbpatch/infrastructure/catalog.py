"""
Microsoft Update Catalog downloads.

Finds the installer of a SQL Server KB in the Microsoft Update Catalog and
streams it to a local directory:

1. Search.aspx?q=KB<kb> lists catalog entries (update ids)
2. DownloadDialog.aspx returns the download URLs of an update
3. The URL matching the requested architecture is downloaded
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import requests

from autodbpatch.domain.errors import DownloadError
from autodbpatch.hotfix.media import installer_matches, normalize_architecture

logger = logging.getLogger(__name__)

CATALOG_URL = "https://www.catalog.update.microsoft.com"

_UPDATE_ID = re.compile(r"id=[\"']([0-9a-fA-F-]{36})_link[\"']")
_DOWNLOAD_URL = re.compile(r"downloadInformation\[\d+\]\.files\[\d+\]\.url\s*=\s*'([^']+)'")
_CHUNK_SIZE = 1024 * 1024


class CatalogClient:
    """
    Update Catalog client.

    Usage:
        catalog = CatalogClient()
        installer = catalog.download("5027702", "x64", Path("D:/media"))
    """

    def __init__(self, session: requests.Session | None = None, timeout: float = 600):
        self.session = session or requests.Session()
        self.timeout = timeout

    def find_update_ids(self, kb: str) -> list[str]:
        """Catalog update ids listed for a KB, in page order."""
        url = f"{CATALOG_URL}/Search.aspx"
        try:
            response = self.session.get(url, params={"q": f"KB{kb}"}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadError(f"Catalog search for KB{kb} failed: {exc}") from exc
        ids = list(dict.fromkeys(_UPDATE_ID.findall(response.text)))
        logger.debug("Catalog lists %d update(s) for KB%s", len(ids), kb)
        return ids

    def find_download_urls(self, update_id: str) -> list[str]:
        url = f"{CATALOG_URL}/DownloadDialog.aspx"
        payload = json.dumps([{"size": 0, "languages": "", "uidInfo": update_id, "updateID": update_id}])
        try:
            response = self.session.post(url, data={"updateIDs": payload}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadError(f"Catalog download dialog for {update_id} failed: {exc}") from exc
        return _DOWNLOAD_URL.findall(response.text)

    def resolve_url(self, kb: str, architecture: str) -> str:
        """
        Raises:
            DownloadError: No installer for this KB and architecture is listed
        """
        for update_id in self.find_update_ids(kb):
            for url in self.find_download_urls(update_id):
                if installer_matches(url.rsplit("/", 1)[-1], kb, architecture):
                    return url
        raise DownloadError(
            f"No {normalize_architecture(architecture)} installer for KB{kb} in the Microsoft Update Catalog"
        )

    def download(self, kb: str, architecture: str, destination_dir: Path) -> Path:
        """
        Download the installer of a KB.

        The file is written under a temporary name and renamed when complete.

        Raises:
            DownloadError: Lookup or transfer failed
        """
        url = self.resolve_url(kb, architecture)
        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        target = destination_dir / url.rsplit("/", 1)[-1]
        partial = target.with_name(target.name + ".part")

        logger.info("Downloading KB%s (%s) from %s", kb, architecture, url)
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        handle.write(chunk)
            partial.replace(target)
        except (requests.RequestException, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Download of KB{kb} from {url} failed: {exc}") from exc

        logger.info("Downloaded KB%s to %s", kb, target)
        return target
