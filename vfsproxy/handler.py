"""
HTTP serving facade: target URL in, virtual file bytes out.

For every request the target URL is turned into its cache key, registered,
looked up through the VFS at its sharded path and served with the headers a
plain file server would send.
"""

import logging
import posixpath
from typing import Mapping, Optional

import requests

from vfsproxy.errors import InvalidRangeError, ObjectNotFound, VfsProxyError
from vfsproxy.http_content import CLIENT_GONE_ERRORS, copy_body, send_text, serve_content
from vfsproxy.registry import Registry
from vfsproxy.url_keys import HashCache, sharded_path
from vfsproxy.utils import capture_request_headers, format_http_date
from vfsproxy.vfs import DEFAULT_MIME_TYPE, VFS

LOG = logging.getLogger(__name__)

SIZE_HINT_HEADER = "X-Vfs-Size"


def size_hint(query: Mapping[str, list], headers: Mapping[str, str]) -> Optional[int]:
    """Known length supplied by the client, from ``?size=`` or X-Vfs-Size.

    Anything that is not a non-negative integer is ignored.
    """
    raw = None
    values = query.get("size") if query else None
    if values:
        raw = values[0]
    elif headers is not None:
        raw = headers.get(SIZE_HINT_HEADER)
    if raw is None:
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


class Handler:
    def __init__(self, registry: Registry, hash_cache: HashCache, vfs: VFS, shard_level: int = 1):
        self.registry = registry
        self.hash_cache = hash_cache
        self.vfs = vfs
        self.shard_level = shard_level

    def serve(self, req, target_url: str, known_size: Optional[int] = None) -> None:
        """Serve ``target_url`` on the request handler ``req``."""
        if not target_url:
            send_text(req, 400, "Missing URL")
            return

        key = self.hash_cache.get(target_url)
        headers = capture_request_headers(req.headers)
        if known_size is not None:
            self.registry.register_with_size(key, target_url, headers, known_size)
        else:
            self.registry.register(key, target_url, headers)

        self.serve_file(req, sharded_path(key, self.shard_level))

    def serve_file(self, req, path: str) -> None:
        remote_addr = req.client_address[0] if req.client_address else "-"
        try:
            node = self.vfs.stat(path)
        except ObjectNotFound as e:
            LOG.info(f"{remote_addr}: {path}: File not found: {e}")
            send_text(req, 404, "File not found")
            return
        except (VfsProxyError, OSError, requests.exceptions.RequestException) as e:
            LOG.error(f"{remote_addr}: {path}: Failed to find file: {e}")
            send_text(req, 500, "Internal Server Error")
            return

        if not node.is_file:
            send_text(req, 404, "Not a file")
            return

        size = node.size()
        mod_time = node.mod_time()
        headers = {}
        mime_type = node.mime_type()
        if not (mime_type == DEFAULT_MIME_TYPE and posixpath.splitext(path)[1] == ""):
            headers["Content-Type"] = mime_type
        headers["Last-Modified"] = format_http_date(mod_time)
        if size >= 0:
            headers["Accept-Ranges"] = "bytes"

        if req.command == "HEAD":
            req.send_response(200)
            for k, v in headers.items():
                req.send_header(k, v)
            if size >= 0:
                req.send_header("Content-Length", str(size))
            req.end_headers()
            return

        if size < 0 and req.headers.get("Range"):
            send_text(req, 416, str(InvalidRangeError()))
            return

        try:
            content = node.open()
        except (VfsProxyError, OSError, requests.exceptions.RequestException) as e:
            LOG.error(f"{remote_addr}: {path}: Failed to open file: {e}")
            send_text(req, 500, "Failed to open file")
            return

        try:
            if size >= 0:
                self._serve_known(req, path, content, size, mod_time, headers)
            else:
                self._serve_unknown(req, path, content, headers)
        finally:
            content.close()

    def _serve_known(self, req, path, content, size, mod_time, headers) -> None:
        remote_addr = req.client_address[0] if req.client_address else "-"
        try:
            serve_content(req, content, size, mod_time, headers)
        except (VfsProxyError, OSError, requests.exceptions.RequestException) as e:
            if isinstance(e, CLIENT_GONE_ERRORS):
                LOG.debug(f"{remote_addr}: {path}: client went away: {e}")
                return
            LOG.error(f"{remote_addr}: {path}: Failed to read file: {e}")
            send_text(req, 500, "Failed to read file")

    def _serve_unknown(self, req, path, content, headers) -> None:
        remote_addr = req.client_address[0] if req.client_address else "-"
        try:
            first = content.read(64 * 1024)
        except (VfsProxyError, OSError, requests.exceptions.RequestException) as e:
            LOG.error(f"{remote_addr}: {path}: Failed to read file: {e}")
            send_text(req, 500, "Failed to read file")
            return

        # No length to announce, so the body ends when the connection does.
        req.close_connection = True
        req.send_response(200)
        for k, v in headers.items():
            req.send_header(k, v)
        req.send_header("Connection", "close")
        req.end_headers()
        written = copy_body(req, content, first, None)
        LOG.debug(f"{remote_addr}: {path}: streamed {written} bytes of unknown length")
