"""
The ``link`` backend: a read-only filesystem whose files are registered URLs.

Every file name is the cache key of a URL held in the Registry. The directory
structure is only the sharding prefix of that key, so lookups ignore it and
use the final path segment alone.
"""

import logging
import posixpath
import threading
import time
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Tuple, Union

import requests

from backends.base import VfsDir, VfsObject, VirtualFs
from vfsproxy.errors import ObjectNotFound, ReadOnlyError, ResolutionError, UpstreamStatusError
from vfsproxy.pacer import Pacer
from vfsproxy.registry import Registry, RegistryEntry
from vfsproxy.resolver import Metadata, MetadataResolver
from vfsproxy.url_keys import sharded_path
from vfsproxy.utils import new_session, upstream_headers, utc_now

LOG = logging.getLogger(__name__)


class _Flight:
    """One in-progress resolution that concurrent callers can wait on."""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[Metadata] = None
        self.error: Optional[BaseException] = None


class LinkObject(VfsObject):
    def __init__(
        self,
        fs: "LinkFs",
        remote: str,
        url: str,
        size: int,
        mod_time: datetime,
        mime_type: str = "",
        mod_time_known: bool = True,
    ):
        self.fs = fs
        self._remote = remote
        self.url = url
        self._size = size
        self._mod_time = mod_time
        self._mime_type = mime_type
        self._mod_time_known = mod_time_known

    @property
    def remote(self) -> str:
        return self._remote

    def size(self) -> int:
        return self._size

    def mod_time(self) -> datetime:
        return self._mod_time

    def mime_type(self) -> str:
        return self._mime_type

    def fingerprint(self) -> str:
        if not self._mod_time_known:
            # A stand-in mod time changes on every resolve.
            return str(self._size)
        return super().fingerprint()

    def set_mod_time(self, mod_time: datetime) -> None:
        raise ReadOnlyError()

    def remove(self) -> None:
        raise ReadOnlyError()

    def update(self, data) -> None:
        raise ReadOnlyError()

    def open(self, headers: Optional[Mapping[str, str]] = None) -> requests.Response:
        """GET the registered URL and hand back the live, unread response.

        The caller owns the response and must close it.
        """
        captured: Mapping[str, str] = {}
        # Stored headers are re-read so a later register_with_size overwrite
        # is honored by objects created before it.
        entry = self.fs.registry.lookup(posixpath.basename(self._remote))
        if entry is not None:
            captured = entry.headers

        hdrs = upstream_headers(captured, headers)
        fs = self.fs

        def _fetch() -> requests.Response:
            return fs.session.get(self.url, headers=hdrs, stream=True, timeout=fs.timeout, allow_redirects=True)

        resp = fs.pacer.call(_fetch)
        if resp.status_code not in (200, 206):
            status, reason = resp.status_code, resp.reason or ""
            resp.close()
            raise UpstreamStatusError(status, reason, self.url)
        return resp


class LinkFs(VirtualFs):
    def __init__(
        self,
        name: str,
        registry: Registry,
        root: str = "",
        shard_level: int = 1,
        pacer: Optional[Pacer] = None,
        session: Optional[requests.Session] = None,
        resolver: Optional[MetadataResolver] = None,
        timeout: Tuple[float, float] = (10, 30),
        metadata_cache_time: float = 0.0,
    ):
        super().__init__(name, root)
        self.registry = registry
        self.shard_level = max(0, int(shard_level))
        self.pacer = pacer or Pacer()
        self.session = session or new_session()
        self.timeout = timeout
        self.resolver = resolver or MetadataResolver(pacer=self.pacer, session=self.session, timeout=timeout)
        self.metadata_cache_time = max(0.0, float(metadata_cache_time))

        self._flights: Dict[str, _Flight] = {}
        self._flights_lock = threading.Lock()
        self._memo: Dict[str, Tuple[float, str, Metadata]] = {}

    def __str__(self):
        return "link:"

    def sharded_path(self, remote: str) -> str:
        return sharded_path(remote, self.shard_level)

    # --- Lookup ---

    def new_object(self, remote: str) -> LinkObject:
        original_remote = posixpath.basename(remote)
        entry = self.registry.lookup(original_remote)
        if entry is None:
            raise ObjectNotFound(original_remote)

        if entry.size is not None:
            # Known size: no metadata fetch at all.
            return LinkObject(self, remote, entry.url, entry.size, entry.mod_time or utc_now(), mod_time_known=False)

        try:
            meta = self._resolve(original_remote, entry)
        except (ResolutionError, requests.exceptions.RequestException) as e:
            LOG.error(f"Metadata fetch failed for {original_remote} ({entry.url}): {e}")
            raise ObjectNotFound(original_remote, cause=e) from e

        return LinkObject(self, remote, entry.url, meta.size, meta.mod_time, meta.mime_type, meta.mod_time_known)

    def _memo_get(self, remote: str, entry: RegistryEntry) -> Optional[Metadata]:
        if self.metadata_cache_time <= 0:
            return None
        hit = self._memo.get(remote)
        if hit is None:
            return None
        expires, url, meta = hit
        if url != entry.url or time.monotonic() >= expires:
            return None
        return meta

    def _resolve(self, remote: str, entry: RegistryEntry) -> Metadata:
        meta = self._memo_get(remote, entry)
        if meta is not None:
            return meta

        with self._flights_lock:
            flight = self._flights.get(remote)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[remote] = flight

        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result

        try:
            meta = self.resolver.resolve(entry)
            flight.result = meta
            if self.metadata_cache_time > 0:
                self._memo[remote] = (time.monotonic() + self.metadata_cache_time, entry.url, meta)
            return meta
        except Exception as e:
            flight.error = e
            raise
        finally:
            with self._flights_lock:
                self._flights.pop(remote, None)
            flight.done.set()

    def list(self, dir: str) -> List[Union[VfsObject, VfsDir]]:
        """Synthesize a listing of ``dir`` from every registered identifier.

        Linear in the registry size; listing is not on the serving path.
        """
        entries: List[Union[VfsObject, VfsDir]] = []
        clean_dir = posixpath.normpath(dir) if dir else ""
        if clean_dir in (".", "/"):
            clean_dir = ""
        clean_dir = clean_dir.strip("/")

        seen_dirs = set()
        for remote, _entry in self.registry.snapshot():
            sharded = self.sharded_path(remote)
            obj_dir = posixpath.dirname(sharded)

            if obj_dir == clean_dir:
                try:
                    entries.append(self.new_object(sharded))
                except ObjectNotFound:
                    pass
                continue

            if clean_dir == "":
                relative = sharded
            elif sharded.startswith(clean_dir + "/"):
                relative = sharded[len(clean_dir) + 1:]
            else:
                continue

            parts = relative.split("/")
            if len(parts) > 1:
                sub_dir = parts[0] if not clean_dir else posixpath.join(clean_dir, parts[0])
                if sub_dir not in seen_dirs:
                    seen_dirs.add(sub_dir)
                    entries.append(VfsDir(sub_dir, utc_now()))
        return entries

    # --- Mutations (all refused) ---

    def put(self, data, remote: str) -> VfsObject:
        raise ReadOnlyError()

    def mkdir(self, dir: str) -> None:
        raise ReadOnlyError()

    def rmdir(self, dir: str) -> None:
        raise ReadOnlyError()

    def move(self, src: str, dst: str) -> VfsObject:
        raise ReadOnlyError()

    def shutdown(self) -> None:
        try:
            self.session.close()
        except Exception as e:
            LOG.debug(f"Closing link session failed: {e}")
