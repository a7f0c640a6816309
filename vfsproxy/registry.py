import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple

from vfsproxy.utils import utc_now

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    # None means the size still has to be resolved upstream; -1 means the
    # caller declared the length unknown (stream without Content-Length).
    size: Optional[int] = None
    mod_time: Optional[datetime] = None

    @property
    def has_known_size(self) -> bool:
        return self.size is not None


class Registry:
    """Maps remote identifiers (cache keys) to the URL they stand for.

    One instance lives for the whole process and is shared by the HTTP handler
    and the link backend. Entries are never evicted.

    ``register`` is insert-if-absent and safe to call on every request.
    ``register_with_size`` always replaces the entry; it is the only way to
    change what an identifier points at.
    """

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()

    def register(self, remote: str, url: str, headers: Optional[Mapping[str, str]] = None) -> bool:
        """Store a mapping whose metadata is fetched on first access.

        Returns True if this created the entry, False if it already existed
        (the stored entry is left untouched).
        """
        if remote in self._entries:
            return False
        with self._lock:
            if remote in self._entries:
                return False
            self._entries[remote] = RegistryEntry(url=url, headers=dict(headers or {}))
        LOG.debug("Registered %s -> %s", remote, url)
        return True

    def register_with_size(
        self,
        remote: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        size: int,
        mod_time: Optional[datetime] = None,
    ) -> bool:
        """Store a mapping with a known size so no metadata fetch is needed.

        Always overwrites. Without an explicit ``mod_time`` the stored one is
        kept while the URL and size stay the same, so Last-Modified does not
        move between requests. Returns True if no entry existed before.
        """
        size = int(size)
        if size < -1:
            raise ValueError(f"size must be >= -1, got {size}")
        with self._lock:
            old = self._entries.get(remote)
            if mod_time is None and old is not None and old.url == url and old.size == size:
                mod_time = old.mod_time
            self._entries[remote] = RegistryEntry(
                url=url,
                headers=dict(headers or {}),
                size=size,
                mod_time=mod_time or utc_now(),
            )
        is_new = old is None
        LOG.debug("Registered %s -> %s (size %d)", remote, url, size)
        return is_new

    def lookup(self, remote: str) -> Optional[RegistryEntry]:
        return self._entries.get(remote)

    def load_url(self, remote: str) -> Tuple[str, bool]:
        entry = self._entries.get(remote)
        if entry is None:
            return "", False
        return entry.url, True

    def snapshot(self) -> List[Tuple[str, RegistryEntry]]:
        with self._lock:
            return list(self._entries.items())

    def __contains__(self, remote: str) -> bool:
        return remote in self._entries

    def __len__(self) -> int:
        return len(self._entries)
