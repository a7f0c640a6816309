"""
Threaded HTTP front end.

Routes:
    GET/HEAD /health                   readiness probe, answers "ok"
    GET/HEAD /stream?url=<target>      serve a target URL
    GET/HEAD /stream/<base64 target>   same, with the target base64-encoded
    anything else                      upstream mode only: upstream + path
"""

import base64
import binascii
import http.client
import logging
import threading
import time
import traceback
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Optional
from urllib.parse import parse_qs, unquote, urlparse

import requests

from backends.link import LinkFs
from vfsproxy.config import DEFAULT_CONFIG, validate_config
from vfsproxy.errors import BadRequestError
from vfsproxy.handler import Handler, size_hint
from vfsproxy.http_content import send_text
from vfsproxy.pacer import Pacer
from vfsproxy.registry import Registry
from vfsproxy.url_keys import HashCache
from vfsproxy.utils import new_session
from vfsproxy.vfs import VFS

LOG = logging.getLogger(__name__)

STREAM_PREFIX = "/stream"


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 256


def decode_target(segment: str) -> str:
    """Decode a base64 path segment into a target URL.

    Unpadded URL-safe, padded URL-safe and standard alphabets are tried in
    that order. Raises BadRequestError when none yields a non-empty URL.
    """
    segment = unquote(segment or "").strip()
    if not segment:
        raise BadRequestError("missing base64 target")
    padded = segment + "=" * (-len(segment) % 4)
    attempts = (
        (padded, b"-_"),
        (segment, b"-_"),
        (padded, None),
    )
    for text, altchars in attempts:
        try:
            raw = base64.b64decode(text.encode("ascii"), altchars=altchars, validate=True)
            url = raw.decode("utf-8").strip()
        except (binascii.Error, ValueError):
            continue
        if url:
            return url
    raise BadRequestError(f"invalid base64 target {segment!r}")


class ProxyServer:
    def __init__(self, config: Optional[dict] = None, session: Optional[requests.Session] = None):
        merged = dict(DEFAULT_CONFIG)
        merged.update(config or {})
        self.config = merged
        opts = validate_config(merged)
        self.options = opts

        self._host = str(merged.get("host") or "0.0.0.0")
        self._requested_port = int(merged.get("port") or 0)
        self.upstream = opts["upstream"].rstrip("/")

        self.registry = Registry()
        self.hash_cache = HashCache(opts["strip_query"], opts["strip_domain"])
        self.pacer = Pacer(
            min_sleep=opts["pacer_min_sleep"],
            max_sleep=opts["pacer_max_sleep"],
            retries=opts["low_level_retries"],
        )
        self.fs = LinkFs(
            opts["fs_name"],
            self.registry,
            shard_level=opts["shard_level"],
            pacer=self.pacer,
            session=session or new_session(),
            timeout=(opts["connect_timeout_seconds"], opts["request_timeout_seconds"]),
            metadata_cache_time=opts["metadata_cache_time"],
        )
        self.vfs = VFS(
            self.fs,
            cache_mode=opts["cache_mode"],
            cache_dir=opts["cache_dir"],
            chunk_size=opts["chunk_size"],
            chunk_streams=opts["chunk_streams"],
            max_age=opts["cache_max_age"],
            max_size=opts["cache_max_size"],
            poll_interval=opts["cache_poll_interval"],
        )
        self.handler = Handler(self.registry, self.hash_cache, self.vfs, opts["shard_level"])

        self._lock = threading.RLock()
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._port: Optional[int] = None
        self._ready = threading.Event()

    def _make_request_handler(self):
        proxy = self

        class RequestHandler(BaseHTTPRequestHandler):
            protocol_version = "HTTP/1.1"

            def log_message(self, fmt: str, *args) -> None:
                LOG.debug("%s - " + fmt, self.client_address[0], *args)

            def _send_health(self) -> None:
                body = b"ok"
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if self.command != "HEAD":
                    self.wfile.write(body)

            def _dispatch(self) -> None:
                parsed = urlparse(self.path)
                if parsed.path == "/health":
                    proxy._ready.set()
                    self._send_health()
                    return

                query = parse_qs(parsed.query)
                if parsed.path == STREAM_PREFIX:
                    target = (query.get("url") or [""])[0].strip()
                    proxy.handler.serve(self, target, size_hint(query, self.headers))
                    return

                if parsed.path.startswith(STREAM_PREFIX + "/"):
                    try:
                        target = decode_target(parsed.path[len(STREAM_PREFIX) + 1:])
                    except BadRequestError as e:
                        LOG.debug(f"{self.client_address[0]}: {e}")
                        send_text(self, 400, "Invalid URL encoding")
                        return
                    proxy.handler.serve(self, target, size_hint(query, self.headers))
                    return

                if proxy.upstream:
                    target = proxy.upstream + self.path
                    proxy.handler.serve(self, target, size_hint({}, self.headers))
                    return

                send_text(self, 404, "Not Found")

            def do_HEAD(self) -> None:
                self._dispatch()

            def do_GET(self) -> None:
                self._dispatch()

        return RequestHandler

    def start(self) -> None:
        with self._lock:
            if self._server is not None and self._thread is not None and self._thread.is_alive():
                return
            self._ready.clear()
            self._server = _ThreadingHTTPServer((self._host, self._requested_port), self._make_request_handler())
            self._port = self._server.server_address[1]
            server = self._server

            def run() -> None:
                try:
                    server.serve_forever(poll_interval=0.25)
                except Exception as e:
                    LOG.warning("Proxy server error: %s\n%s", e, traceback.format_exc())
                finally:
                    self._ready.clear()

            self._thread = threading.Thread(target=run, name="ProxyServer", daemon=True)
            self._thread.start()

        if self._wait_ready(timeout=5.0):
            LOG.info(f"Serving on {self.base_url}")
        else:
            LOG.warning(f"Proxy server on port {self._port} did not answer /health")

    def stop(self) -> None:
        with self._lock:
            if self._server is None:
                return
            self._server.shutdown()
            self._server.server_close()
            if self._thread is not None:
                self._thread.join(timeout=2.0)
            self._server = None
            self._thread = None
            self._port = None
            self._ready.clear()

    def shutdown(self) -> None:
        """Stop accepting requests, then stop the VFS and its backend."""
        self.stop()
        self.vfs.shutdown()

    def _probe_host(self) -> str:
        return "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host

    def _wait_ready(self, timeout: float = 2.0) -> bool:
        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            with self._lock:
                port = self._port
            if port is None:
                return False
            conn = http.client.HTTPConnection(self._probe_host(), port, timeout=0.5)
            try:
                conn.request("GET", "/health")
                resp = conn.getresponse()
                resp.read()
                if resp.status == 200:
                    self._ready.set()
                    return True
            except (OSError, http.client.HTTPException):
                pass
            finally:
                conn.close()
            time.sleep(0.05)
        return False

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def base_url(self) -> str:
        with self._lock:
            if self._port is None:
                raise RuntimeError("ProxyServer not started")
            return f"http://{self._probe_host()}:{self._port}"

    def stream_url(self, url: str, size: Optional[int] = None) -> str:
        """Local URL that serves ``url`` through this proxy."""
        encoded = base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")
        out = f"{self.base_url}{STREAM_PREFIX}/{encoded}"
        if size is not None:
            out += f"?size={int(size)}"
        return out
