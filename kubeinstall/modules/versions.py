"""
Available Kubernetes versions, refreshed periodically from dl.k8s.io.
"""
import logging
import re
import threading
from typing import Iterable, List, Optional

import requests

logger = logging.getLogger("kubeinstall.versions")

RELEASE_URL = "https://dl.k8s.io/release"
MINORS_TO_TRACK = 4

DEFAULT_VERSIONS = [
    "v1.30.0",
    "v1.29.4", "v1.29.3", "v1.29.2", "v1.29.1", "v1.29.0",
    "v1.28.8", "v1.28.7", "v1.28.6", "v1.28.5", "v1.28.4", "v1.28.3", "v1.28.2", "v1.28.1", "v1.28.0",
    "v1.27.12", "v1.27.11", "v1.27.10", "v1.27.9", "v1.27.8", "v1.27.7", "v1.27.6",
    "v1.27.5", "v1.27.4", "v1.27.3", "v1.27.2", "v1.27.1", "v1.27.0",
]

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)$")


def version_key(version: str):
    match = _VERSION_RE.match(version)
    if not match:
        return (0, 0, 0)
    return tuple(int(p) for p in match.groups())


def sort_versions(versions: Iterable[str]) -> List[str]:
    """Deduplicate, normalize to ``vX.Y.Z`` and sort newest first."""
    normalized = set()
    for v in versions:
        v = v.strip()
        if _VERSION_RE.match(v):
            normalized.add(v if v.startswith("v") else f"v{v}")
    return sorted(normalized, key=version_key, reverse=True)


class VersionManager:
    """Keeps the list of installable versions current."""

    def __init__(self, sync_interval: float = 3 * 3600, timeout: float = 10,
                 session: Optional[requests.Session] = None):
        self.sync_interval = sync_interval
        self.timeout = timeout
        self._session = session or requests.Session()
        self._versions: List[str] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def get_available_versions(self) -> List[str]:
        with self._lock:
            return list(self._versions) if self._versions else list(DEFAULT_VERSIONS)

    def _fetch(self, path: str) -> Optional[str]:
        try:
            response = self._session.get(f"{RELEASE_URL}/{path}", timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Failed to fetch {path}: {e}")
            return None
        return response.text.strip()

    def fetch_versions(self) -> List[str]:
        """Latest stable release plus the latest patch of each recent minor."""
        latest = self._fetch("stable.txt")
        if not latest or not _VERSION_RE.match(latest):
            return []
        major, minor, _ = version_key(latest)
        versions = [latest]
        for m in range(minor - 1, max(minor - MINORS_TO_TRACK, -1), -1):
            patch = self._fetch(f"stable-{major}.{m}.txt")
            if patch:
                versions.append(patch)
        return versions

    def sync(self) -> List[str]:
        fetched = self.fetch_versions()
        if not fetched:
            logger.info("Version sync returned nothing, keeping current list")
            return self.get_available_versions()
        versions = sort_versions(list(fetched) + DEFAULT_VERSIONS)
        with self._lock:
            self._versions = versions
        logger.info(f"Version sync complete: {len(versions)} versions, latest {versions[0]}")
        return versions

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="version-sync", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.sync()
            self._stop.wait(self.sync_interval)
