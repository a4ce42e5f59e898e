"""
Package sources that Kubernetes packages are installed from.
"""
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from .errors import PackageSourceError
from .store import SETTINGS, RecordStore

logger = logging.getLogger("kubeinstall.sources")

SOURCES_KEY = "package_sources"


@dataclass
class PackageSource:
    name: str
    url: str
    default: bool = False

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def default_sources() -> List[PackageSource]:
    return [
        PackageSource("Official", "https://pkgs.k8s.io", default=True),
        PackageSource("Aliyun", "https://mirrors.aliyun.com/kubernetes-new"),
        PackageSource("Huawei Cloud", "https://mirrors.huaweicloud.com/kubernetes"),
    ]


class PackageSourceRepository:
    """Ordered list of sources with exactly one default.

    Sources are addressed by list index, as in the HTTP API.
    """

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store
        self._lock = threading.Lock()
        self._sources = self._load()

    def _load(self) -> List[PackageSource]:
        if self.store is not None:
            record = self.store.get(SETTINGS, SOURCES_KEY)
            if record:
                return [PackageSource(**s) for s in record["sources"]]
        return default_sources()

    def _save(self) -> None:
        if self.store is not None:
            self.store.put(SETTINGS, SOURCES_KEY, {"sources": [s.to_dict() for s in self._sources]})

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self._sources):
            raise PackageSourceError(f"invalid source index: {index}")

    def list(self) -> List[PackageSource]:
        with self._lock:
            return [PackageSource(**s.to_dict()) for s in self._sources]

    def get_default(self) -> PackageSource:
        with self._lock:
            for source in self._sources:
                if source.default:
                    return source
            if not self._sources:
                raise PackageSourceError("no package sources configured")
            return self._sources[0]

    def add(self, name: str, url: str, default: bool = False) -> PackageSource:
        if not name or not url:
            raise PackageSourceError("source name and url are required")
        source = PackageSource(name, url.rstrip("/"), False)
        with self._lock:
            self._sources.append(source)
            if default:
                self._set_default(len(self._sources) - 1)
            self._save()
        logger.info(f"Added package source {name} ({url})")
        return source

    def update(self, index: int, name: str, url: str, default: Optional[bool] = None) -> PackageSource:
        with self._lock:
            self._check_index(index)
            source = self._sources[index]
            source.name = name or source.name
            source.url = (url or source.url).rstrip("/")
            if default:
                self._set_default(index)
            self._save()
            return source

    def delete(self, index: int) -> PackageSource:
        with self._lock:
            self._check_index(index)
            if len(self._sources) == 1:
                raise PackageSourceError("cannot delete the last package source")
            removed = self._sources.pop(index)
            if removed.default:
                self._sources[0].default = True
            self._save()
        logger.info(f"Deleted package source {removed.name}")
        return removed

    def set_default(self, index: int) -> PackageSource:
        """Make one source the default, clearing the flag on every other source."""
        with self._lock:
            self._check_index(index)
            self._set_default(index)
            self._save()
            return self._sources[index]

    def _set_default(self, index: int) -> None:
        for i, source in enumerate(self._sources):
            source.default = i == index
