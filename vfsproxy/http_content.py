"""
Conditional and byte-range serving of a seekable body.

Works on a ``BaseHTTPRequestHandler`` and any object with ``seek``/``read``.
Only single ranges are answered with 206; a request for several ranges gets
the full entity.
"""

import logging
import re
from datetime import datetime
from typing import List, Mapping, Optional, Tuple

from vfsproxy.utils import format_http_date, parse_http_date, truncate_to_second

LOG = logging.getLogger(__name__)

# Body copy block size.
COPY_BLOCK = 64 * 1024

# Errors that mean the client went away while we were writing.
CLIENT_GONE_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)

_RANGE_SPEC_RE = re.compile(r"^(\d*)-(\d*)$")


class RangeNotSatisfiable(ValueError):
    pass


def parse_range_header(value: Optional[str], size: int) -> List[Tuple[int, int]]:
    """Parse a ``Range`` header into (start, length) pairs against ``size``.

    Supports ``bytes=a-b``, ``bytes=a-`` and ``bytes=-n``. Ranges starting
    past the end are dropped; if nothing is left (or the header is malformed)
    RangeNotSatisfiable is raised. An empty header yields no ranges.
    """
    if not value:
        return []
    value = value.strip()
    if not value.lower().startswith("bytes="):
        raise RangeNotSatisfiable("invalid range")
    ranges: List[Tuple[int, int]] = []
    no_overlap = False
    for part in value[len("bytes="):].split(","):
        part = part.strip()
        if not part:
            continue
        m = _RANGE_SPEC_RE.match(part)
        if not m:
            raise RangeNotSatisfiable("invalid range")
        start_s, end_s = m.group(1), m.group(2)
        if start_s == "":
            if end_s == "":
                raise RangeNotSatisfiable("invalid range")
            # Suffix range: the final n bytes.
            n = min(int(end_s), size)
            if n == 0:
                no_overlap = True
                continue
            ranges.append((size - n, n))
            continue
        start = int(start_s)
        if start >= size:
            no_overlap = True
            continue
        if end_s == "":
            ranges.append((start, size - start))
            continue
        end = int(end_s)
        if end < start:
            raise RangeNotSatisfiable("invalid range")
        end = min(end, size - 1)
        ranges.append((start, end - start + 1))
    if not ranges:
        raise RangeNotSatisfiable("no overlap" if no_overlap else "invalid range")
    return ranges


def _etag_list(value: str) -> List[str]:
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def check_preconditions(method: str, headers: Mapping[str, str], mod_time: datetime) -> Optional[int]:
    """Evaluate If-Match/If-Unmodified-Since/If-None-Match/If-Modified-Since.

    Returns 412 or 304 when the request should stop there, else None.
    Entities carry no ETag, so only ``*`` matches an entity tag.
    """
    mod_time = truncate_to_second(mod_time)

    if_match = headers.get("If-Match")
    if if_match:
        if "*" not in _etag_list(if_match):
            return 412
    else:
        ius = parse_http_date(headers.get("If-Unmodified-Since"))
        if ius is not None and mod_time > ius:
            return 412

    if_none_match = headers.get("If-None-Match")
    if if_none_match:
        if "*" in _etag_list(if_none_match):
            return 304 if method in ("GET", "HEAD") else 412
    elif method in ("GET", "HEAD"):
        ims = parse_http_date(headers.get("If-Modified-Since"))
        if ims is not None and mod_time <= ims:
            return 304
    return None


def range_applies(headers: Mapping[str, str], mod_time: datetime) -> bool:
    """False when an If-Range validator no longer matches."""
    if_range = (headers.get("If-Range") or "").strip()
    if not if_range:
        return True
    if if_range.startswith('"') or if_range.startswith("W/"):
        return False
    when = parse_http_date(if_range)
    if when is None:
        return False
    return truncate_to_second(mod_time) == when


def send_text(req, status: int, text: str, extra_headers: Optional[Mapping[str, str]] = None) -> None:
    body = (text + "\n").encode("utf-8")
    req.send_response(status)
    req.send_header("Content-Type", "text/plain; charset=utf-8")
    req.send_header("X-Content-Type-Options", "nosniff")
    for k, v in (extra_headers or {}).items():
        req.send_header(k, v)
    req.send_header("Content-Length", str(len(body)))
    req.end_headers()
    if req.command != "HEAD":
        try:
            req.wfile.write(body)
        except CLIENT_GONE_ERRORS:
            pass


def copy_body(req, content, first: bytes, remaining: Optional[int]) -> int:
    """Write ``first`` then keep reading ``content`` until ``remaining`` bytes
    (or EOF when None) have been sent. Returns the number of bytes written.

    A client disconnect ends the copy quietly; read failures are logged and
    end the response early.
    """
    written = 0
    data = first
    try:
        while data:
            if remaining is not None:
                data = data[:remaining - written]
            req.wfile.write(data)
            written += len(data)
            if remaining is not None and written >= remaining:
                break
            want = COPY_BLOCK if remaining is None else min(COPY_BLOCK, remaining - written)
            try:
                data = content.read(want)
            except Exception as e:
                LOG.error(f"Read failed after {written} bytes: {e}")
                req.close_connection = True
                return written
    except CLIENT_GONE_ERRORS as e:
        LOG.debug(f"Client went away after {written} bytes: {e}")
        req.close_connection = True
        return written
    if remaining is not None and written < remaining:
        LOG.error(f"Short body: sent {written} of {remaining} bytes")
        req.close_connection = True
    return written


def serve_content(req, content, size: int, mod_time: datetime, headers: Optional[Mapping[str, str]] = None) -> int:
    """Answer a GET for a body of known ``size`` and return the status sent.

    ``headers`` (Content-Type, Last-Modified, ...) are emitted on 200/206.
    Exceptions from the first seek/read propagate before anything is written,
    so the caller can still answer 500.
    """
    headers = dict(headers or {})
    method = req.command
    status = check_preconditions(method, req.headers, mod_time)
    if status == 304:
        req.send_response(304)
        req.send_header("Last-Modified", format_http_date(mod_time))
        req.end_headers()
        return 304
    if status == 412:
        send_text(req, 412, "Precondition Failed")
        return 412

    start, length = 0, size
    status = 200
    range_header = req.headers.get("Range")
    if range_header and range_applies(req.headers, mod_time):
        try:
            ranges = parse_range_header(range_header, size)
        except RangeNotSatisfiable as e:
            send_text(req, 416, f"Requested Range Not Satisfiable: {e}", {"Content-Range": f"bytes */{size}"})
            return 416
        if len(ranges) == 1:
            start, length = ranges[0]
            status = 206

    first = b""
    if length > 0:
        if start:
            content.seek(start)
        first = content.read(min(COPY_BLOCK, length))
        if not first:
            raise OSError(f"empty read at offset {start}")

    req.send_response(status)
    for k, v in headers.items():
        req.send_header(k, v)
    if status == 206:
        req.send_header("Content-Range", f"bytes {start}-{start + length - 1}/{size}")
    req.send_header("Content-Length", str(length))
    req.end_headers()

    if length > 0:
        copy_body(req, content, first, length)
    return status
