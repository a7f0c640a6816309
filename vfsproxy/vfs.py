"""
Caching layer between the HTTP facade and the link filesystem.

Nodes are looked up with ``stat`` and read through file-like handles. In
``full`` cache mode a file is cached on disk as chunk files so that seeks into
already fetched regions never touch the upstream:

    <cache_dir>/vfs/<fs_name>/<sharded path>/<start>-<end>.bin

Chunks are aligned to ``chunk_size``. Each chunk is downloaded to a temporary
file and moved into place only when the full byte count arrived, so a chunk
file on disk is always complete. Reading a chunk schedules the next
``chunk_streams - 1`` chunks on a small thread pool.

Every other mode streams straight from upstream, as do objects whose length
is unknown.
"""

import io
import json
import logging
import mimetypes
import os
import posixpath
import re
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple, Union

import requests
from urllib3.exceptions import HTTPError as Urllib3Error

from backends.base import VfsDir, VfsObject, VirtualFs
from vfsproxy.errors import ObjectNotFound
from vfsproxy.resolver import parse_content_range
from vfsproxy.utils import safe_mkdir, utc_now

LOG = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

_CHUNK_RE = re.compile(r"^(\d+)-(\d+)\.bin$")

# Records which version of the object the chunks beside it belong to.
_FINGERPRINT_FILE = ".fingerprint.json"

# Size of the pieces pulled off an upstream response while writing a chunk.
_COPY_BYTES = 512 * 1024


def _clean_path(path: str) -> str:
    path = posixpath.normpath("/" + (path or "")).lstrip("/")
    return "" if path == "." else path


class Dir:
    is_file = False
    is_dir = True

    def __init__(self, path: str, mod_time: Optional[datetime] = None):
        self.path = path
        self._mod_time = mod_time or utc_now()

    def name(self) -> str:
        return posixpath.basename(self.path)

    def size(self) -> int:
        return 0

    def mod_time(self) -> datetime:
        return self._mod_time

    def __repr__(self):
        return f"Dir({self.path!r})"


class File:
    is_file = True
    is_dir = False

    def __init__(self, vfs: "VFS", path: str, obj: VfsObject):
        self.vfs = vfs
        self.path = path
        self.obj = obj

    def name(self) -> str:
        return posixpath.basename(self.path)

    def size(self) -> int:
        return self.obj.size()

    def mod_time(self) -> datetime:
        return self.obj.mod_time()

    def mime_type(self) -> str:
        mime = self.obj.mime_type()
        if mime:
            return mime
        guessed, _ = mimetypes.guess_type(self.path)
        return guessed or DEFAULT_MIME_TYPE

    def open(self) -> "io.RawIOBase":
        return self.vfs._open(self)

    def __repr__(self):
        return f"File({self.path!r}, size={self.size()})"


class _StreamHandle(io.RawIOBase):
    """Read an object straight off an upstream response.

    The response is opened lazily; a seek drops it and the next read reopens
    with ``Range: bytes=<offset>-``.
    """

    def __init__(self, obj: VfsObject):
        super().__init__()
        self.obj = obj
        self._pos = 0
        self._resp: Optional[requests.Response] = None

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def _drop(self) -> None:
        if self._resp is not None:
            self._resp.close()
            self._resp = None

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            new_pos = offset
        elif whence == io.SEEK_CUR:
            new_pos = self._pos + offset
        elif whence == io.SEEK_END:
            size = self.obj.size()
            if size < 0:
                raise io.UnsupportedOperation("can't seek from end of a file of unknown length")
            new_pos = size + offset
        else:
            raise ValueError(f"invalid whence {whence!r}")
        if new_pos < 0:
            raise ValueError(f"negative seek position {new_pos}")
        if new_pos != self._pos:
            self._drop()
            self._pos = new_pos
        return self._pos

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed file")
        if size == 0:
            return b""
        known = self.obj.size()
        if known >= 0 and self._pos >= known:
            return b""
        if self._resp is None:
            headers = {"Range": f"bytes={self._pos}-"} if self._pos > 0 else None
            self._resp = self.obj.open(headers)
            if self._pos > 0 and self._resp.status_code != 206:
                self._drop()
                raise OSError(f"upstream ignored Range request for {self.obj.remote}")
        try:
            if size is None or size < 0:
                data = self._resp.raw.read(decode_content=True)
            else:
                data = self._resp.raw.read(size, decode_content=True)
        except Urllib3Error as e:
            self._drop()
            raise OSError(f"upstream read failed for {self.obj.remote}: {e}") from e
        data = data or b""
        if not data and 0 <= self._pos < known:
            self._drop()
            raise OSError(f"upstream body for {self.obj.remote} ended at byte {self._pos} of {known}")
        self._pos += len(data)
        return data

    def close(self) -> None:
        if not self.closed:
            self._drop()
        super().close()


@dataclass
class _CacheItem:
    """Chunk bookkeeping for one cached file."""

    path: str
    dir: str
    chunk_size: int
    chunks: Set[Tuple[int, int]] = field(default_factory=set)
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_access: float = field(default_factory=time.time)
    opens: int = 0
    fingerprint: str = ""
    # Bumped whenever the chunks are thrown away.
    generation: int = 0

    _inflight: Dict[int, threading.Event] = field(default_factory=dict)

    def __post_init__(self) -> None:
        safe_mkdir(self.dir)
        self.fingerprint = self._load_fingerprint()
        self._load_existing_chunks()

    def touch(self) -> None:
        self.last_access = time.time()

    def chunk_path(self, start: int, end: int) -> str:
        return os.path.join(self.dir, f"{start:012d}-{end:012d}.bin")

    def _load_existing_chunks(self) -> None:
        try:
            names = os.listdir(self.dir)
        except OSError:
            return
        for name in names:
            m = _CHUNK_RE.match(name)
            if not m:
                continue
            s, e = int(m.group(1)), int(m.group(2))
            if e >= s and s % self.chunk_size == 0 and self._chunk_file_is_valid(s, e):
                self.chunks.add((s, e))

    def _chunk_file_is_valid(self, s: int, e: int) -> bool:
        try:
            return os.stat(self.chunk_path(s, e)).st_size == (e - s + 1)
        except OSError:
            return False

    def _fingerprint_path(self) -> str:
        return os.path.join(self.dir, _FINGERPRINT_FILE)

    def _load_fingerprint(self) -> str:
        try:
            with open(self._fingerprint_path(), "r", encoding="utf-8") as f:
                obj = json.load(f)
        except (OSError, ValueError):
            return ""
        if not isinstance(obj, dict):
            return ""
        value = obj.get("fingerprint")
        return value if isinstance(value, str) else ""

    def _save_fingerprint(self, fingerprint: str) -> None:
        tmp = self._fingerprint_path() + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"fingerprint": fingerprint}, f)
        os.replace(tmp, self._fingerprint_path())

    def validate(self, fingerprint: str) -> None:
        """Drop every chunk unless they were fetched for ``fingerprint``."""
        with self.lock:
            if fingerprint == self.fingerprint:
                return
            stale = sorted(self.chunks)
            self.chunks.clear()
            self.generation += 1
            safe_mkdir(self.dir)
            for name in os.listdir(self.dir):
                if not _CHUNK_RE.match(name):
                    continue
                try:
                    os.remove(os.path.join(self.dir, name))
                except OSError as e:
                    LOG.warning(f"Could not remove stale chunk {name} of {self.path}: {e}")
            self._save_fingerprint(fingerprint)
            if self.fingerprint or stale:
                LOG.info(f"{self.path} changed upstream, dropped {len(stale)} cached chunks")
            self.fingerprint = fingerprint

    def bounds(self, index: int, size: int) -> Tuple[int, int]:
        start = index * self.chunk_size
        return start, min(start + self.chunk_size, size) - 1

    def has_chunk(self, start: int, end: int) -> bool:
        with self.lock:
            return (start, end) in self.chunks

    def forget_chunk(self, start: int, end: int) -> None:
        with self.lock:
            self.chunks.discard((start, end))

    def ensure_chunk(self, obj: VfsObject, start: int, end: int) -> None:
        """Make sure chunk [start..end] is on disk, downloading it if needed.

        Concurrent callers for the same chunk wait for one download.
        """
        while True:
            with self.lock:
                if (start, end) in self.chunks:
                    return
                ev = self._inflight.get(start)
                leader = ev is None
                if leader:
                    ev = threading.Event()
                    self._inflight[start] = ev
                generation = self.generation
            if not leader:
                ev.wait()
                continue

            try:
                self._download(obj, start, end)
                with self.lock:
                    if generation == self.generation:
                        self.chunks.add((start, end))
                        return
                    # The object changed while this chunk was in flight.
                    try:
                        os.remove(self.chunk_path(start, end))
                    except OSError:
                        pass
            finally:
                with self.lock:
                    self._inflight.pop(start, None)
                ev.set()

    def _download(self, obj: VfsObject, start: int, end: int) -> None:
        resp = obj.open({"Range": f"bytes={start}-{end}"})
        tmp_path = os.path.join(self.dir, f".tmp_{start}_{end}_{threading.get_ident()}")
        try:
            if resp.status_code == 206:
                parsed = parse_content_range(resp.headers.get("Content-Range"))
                if parsed and (parsed[0], parsed[1]) != (start, end):
                    raise OSError(f"upstream served bytes {parsed[0]}-{parsed[1]} for {start}-{end}")
            elif start != 0:
                # A full body for a later chunk would mean downloading everything before it.
                raise OSError(f"upstream ignored Range request for {obj.remote}")

            expected = end - start + 1
            written = 0
            try:
                with open(tmp_path, "wb") as f:
                    for piece in resp.iter_content(chunk_size=_COPY_BYTES):
                        if not piece:
                            continue
                        piece = piece[:expected - written]
                        f.write(piece)
                        written += len(piece)
                        if written >= expected:
                            break
                if written != expected:
                    raise OSError(f"truncated chunk {start}-{end} for {obj.remote}: got {written} of {expected} bytes")
                os.replace(tmp_path, self.chunk_path(start, end))
            except BaseException:
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
                raise
        finally:
            resp.close()
        LOG.debug("Cached chunk %d-%d of %s", start, end, obj.remote)

    def read_chunk(self, start: int, end: int, offset: int, size: int) -> bytes:
        with open(self.chunk_path(start, end), "rb") as f:
            f.seek(offset - start)
            return f.read(min(size, end - offset + 1))

    def disk_usage(self) -> int:
        with self.lock:
            return sum(e - s + 1 for s, e in self.chunks)


class _CachedHandle(io.RawIOBase):
    """Read a known-length object through the chunk cache."""

    def __init__(self, vfs: "VFS", item: _CacheItem, obj: VfsObject):
        super().__init__()
        self.vfs = vfs
        self.item = item
        self.obj = obj
        self._pos = 0
        with item.lock:
            item.opens += 1
        item.touch()

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            new_pos = offset
        elif whence == io.SEEK_CUR:
            new_pos = self._pos + offset
        elif whence == io.SEEK_END:
            new_pos = self.obj.size() + offset
        else:
            raise ValueError(f"invalid whence {whence!r}")
        if new_pos < 0:
            raise ValueError(f"negative seek position {new_pos}")
        self._pos = new_pos
        return self._pos

    def _read_once(self, size: int) -> bytes:
        total = self.obj.size()
        if self._pos >= total:
            return b""
        index = self._pos // self.item.chunk_size
        start, end = self.item.bounds(index, total)
        self.item.ensure_chunk(self.obj, start, end)
        self.vfs._read_ahead(self.item, self.obj, index)
        try:
            data = self.item.read_chunk(start, end, self._pos, size)
        except FileNotFoundError:
            # Evicted between ensure and read; fetch it again.
            self.item.forget_chunk(start, end)
            self.item.ensure_chunk(self.obj, start, end)
            data = self.item.read_chunk(start, end, self._pos, size)
        self.item.touch()
        self._pos += len(data)
        return data

    def read(self, size: int = -1) -> bytes:
        if self.closed:
            raise ValueError("read from closed file")
        if size == 0:
            return b""
        if size is not None and size > 0:
            return self._read_once(size)
        out = bytearray()
        while True:
            data = self._read_once(self.item.chunk_size)
            if not data:
                return bytes(out)
            out.extend(data)

    def close(self) -> None:
        if not self.closed:
            with self.item.lock:
                self.item.opens -= 1
            self.item.touch()
        super().close()


class VFS:
    def __init__(
        self,
        fs: VirtualFs,
        cache_mode: str = "full",
        cache_dir: str = "",
        chunk_size: int = 64 * 1024 * 1024,
        chunk_streams: int = 2,
        max_age: float = 3600.0,
        max_size: int = -1,
        poll_interval: float = 60.0,
    ):
        self.fs = fs
        self.cache_mode = cache_mode
        self.chunk_size = max(1, int(chunk_size))
        self.chunk_streams = max(0, int(chunk_streams))
        self.max_age = max_age
        self.max_size = max_size
        self.poll_interval = poll_interval
        self.root_dir = os.path.join(cache_dir, "vfs", fs.name) if cache_dir else ""

        self._items: Dict[str, _CacheItem] = {}
        self._items_lock = threading.Lock()
        self._stop = threading.Event()
        self._cleaner: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None

        if self.caching:
            safe_mkdir(self.root_dir)
            if self.chunk_streams > 1:
                self._pool = ThreadPoolExecutor(max_workers=self.chunk_streams, thread_name_prefix="vfs-readahead")
            if poll_interval and poll_interval > 0:
                self._cleaner = threading.Thread(target=self._run_cleaner, name="vfs-cleaner", daemon=True)
                self._cleaner.start()

        LOG.info(f"VFS for {fs} ready (cache_mode={cache_mode}, chunk_size={self.chunk_size}, cache_dir={self.root_dir or '-'})")

    @property
    def caching(self) -> bool:
        return self.cache_mode == "full" and bool(self.root_dir)

    # --- Lookup ---

    def stat(self, path: str) -> Union[File, Dir]:
        """Return the node at ``path`` or raise ObjectNotFound."""
        path = _clean_path(path)
        if path == "":
            return Dir("")
        try:
            obj = self.fs.stat(path)
        except ObjectNotFound as e:
            if e.resolution_failed:
                raise
            parent = posixpath.dirname(path)
            for entry in self.fs.list(parent):
                if isinstance(entry, VfsDir) and entry.remote == path:
                    return Dir(path, entry.mod_time)
            raise
        return File(self, path, obj)

    def read_dir(self, path: str) -> List[Union[File, Dir]]:
        path = _clean_path(path)
        nodes: List[Union[File, Dir]] = []
        for entry in self.fs.list(path):
            if isinstance(entry, VfsDir):
                nodes.append(Dir(entry.remote, entry.mod_time))
            else:
                nodes.append(File(self, entry.remote, entry))
        return nodes

    # --- Reading ---

    def _open(self, f: File) -> io.RawIOBase:
        if not self.caching or f.size() < 0:
            return _StreamHandle(f.obj)
        item = self._item(f.path)
        item.validate(f.obj.fingerprint())
        return _CachedHandle(self, item, f.obj)

    def _item(self, path: str) -> _CacheItem:
        with self._items_lock:
            item = self._items.get(path)
            if item is None:
                item = _CacheItem(path=path, dir=os.path.join(self.root_dir, *path.split("/")), chunk_size=self.chunk_size)
                self._items[path] = item
            return item

    def _read_ahead(self, item: _CacheItem, obj: VfsObject, index: int) -> None:
        pool = self._pool
        if pool is None or self._stop.is_set():
            return
        total = obj.size()
        for ahead in range(index + 1, index + self.chunk_streams):
            start, end = item.bounds(ahead, total)
            if start >= total:
                break
            if item.has_chunk(start, end):
                continue
            try:
                pool.submit(self._prefetch, item, obj, start, end)
            except RuntimeError:
                # Pool already shut down.
                return

    def _prefetch(self, item: _CacheItem, obj: VfsObject, start: int, end: int) -> None:
        if self._stop.is_set():
            return
        try:
            item.ensure_chunk(obj, start, end)
        except Exception as e:
            LOG.debug(f"Read-ahead of {obj.remote} bytes {start}-{end} failed: {e}")

    # --- Cache cleaning ---

    def _run_cleaner(self) -> None:
        while not self._stop.wait(self.poll_interval):
            try:
                self.clean()
            except OSError as e:
                LOG.warning(f"Cache clean failed: {e}")

    def _scan(self) -> List[Tuple[str, str, int, float]]:
        """(item path, dir, bytes on disk, last access) for every cached item."""
        found = []
        for dirpath, _dirnames, filenames in os.walk(self.root_dir):
            size = 0
            newest = 0.0
            for name in filenames:
                if not _CHUNK_RE.match(name):
                    continue
                try:
                    st = os.stat(os.path.join(dirpath, name))
                except OSError:
                    continue
                size += st.st_size
                newest = max(newest, st.st_mtime)
            if not size:
                continue
            rel = os.path.relpath(dirpath, self.root_dir).replace(os.sep, "/")
            with self._items_lock:
                item = self._items.get(rel)
            if item is not None:
                newest = max(newest, item.last_access)
            found.append((rel, dirpath, size, newest))
        return found

    def _in_use(self, path: str) -> bool:
        with self._items_lock:
            item = self._items.get(path)
        if item is None:
            return False
        with item.lock:
            return item.opens > 0 or bool(item._inflight)

    def _evict(self, path: str, dirpath: str) -> None:
        with self._items_lock:
            self._items.pop(path, None)
        shutil.rmtree(dirpath, ignore_errors=True)
        parent = os.path.dirname(dirpath)
        while parent.startswith(self.root_dir) and parent != self.root_dir:
            try:
                os.rmdir(parent)
            except OSError:
                break
            parent = os.path.dirname(parent)
        LOG.debug(f"Evicted {path} from cache")

    def clean(self) -> int:
        """Evict idle items, then the least recently used until under max_size.

        Returns the number of bytes removed.
        """
        if not self.caching:
            return 0
        now = time.time()
        items = self._scan()
        removed = 0
        kept = []
        for path, dirpath, size, last_access in items:
            if now - last_access > self.max_age and not self._in_use(path):
                self._evict(path, dirpath)
                removed += size
            else:
                kept.append((path, dirpath, size, last_access))

        if self.max_size is not None and self.max_size >= 0:
            total = sum(k[2] for k in kept)
            for path, dirpath, size, _last in sorted(kept, key=lambda k: k[3]):
                if total <= self.max_size:
                    break
                if self._in_use(path):
                    continue
                self._evict(path, dirpath)
                total -= size
                removed += size
        if removed:
            LOG.info(f"Cache clean removed {removed} bytes")
        return removed

    def shutdown(self) -> None:
        self._stop.set()
        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)
        if self._cleaner is not None and self._cleaner.is_alive():
            self._cleaner.join(timeout=2.0)
        self.fs.shutdown()
        LOG.info(f"VFS for {self.fs} shut down")
