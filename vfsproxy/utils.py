import logging
import os
import re
from datetime import datetime, timezone
from email.utils import formatdate
from typing import Dict, Mapping, Optional

import requests
from dateutil import parser as dateparser

log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)

# Headers that describe a single connection and must never be forwarded.
HOP_BY_HOP_HEADERS = frozenset((
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
))

# Client headers that only make sense for the inbound exchange. Replaying them
# upstream would change what the metadata probe or a chunk fetch receives.
REQUEST_SCOPED_HEADERS = frozenset((
    "host",
    "content-length",
    "range",
    "if-range",
    "if-match",
    "if-none-match",
    "if-modified-since",
    "if-unmodified-since",
    "accept-encoding",
    "x-vfs-size",
))

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmgtp]?)(?:i?b)?\s*$", re.IGNORECASE)
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w|M|y)")

_SIZE_MULTIPLIERS = {
    "b": 1,
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
    "p": 1024 ** 5,
}

_DURATION_SECONDS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 7 * 86400,
    "M": 30 * 86400,
    "y": 365 * 86400,
}


def safe_mkdir(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        log.warning(f"Could not create directory {path}: {e}")


def new_session(pool_size: int = 16) -> requests.Session:
    """Session with pooled keep-alive connections for upstream fetches.

    Retries are left to the pacer, so the adapter itself never retries.
    """
    session = requests.Session()
    adapter = requests.adapters.HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def upstream_headers(captured: Optional[Mapping[str, str]], overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Build the header set for an upstream request.

    Captured headers are replayed first, then per-call overrides replace
    individual values (case-insensitive).
    """
    merged: Dict[str, str] = {}
    lower_index: Dict[str, str] = {}

    def _put(key: str, value: str) -> None:
        lk = key.lower()
        prev = lower_index.get(lk)
        if prev is not None:
            merged.pop(prev, None)
        merged[key] = value
        lower_index[lk] = key

    for k, v in (captured or {}).items():
        _put(str(k), str(v))
    for k, v in (overrides or {}).items():
        _put(str(k), str(v))

    if "user-agent" not in lower_index:
        _put("User-Agent", DEFAULT_USER_AGENT)
    # Ranged fetches must be byte-exact, so never let the origin compress.
    if "accept-encoding" not in lower_index:
        _put("Accept-Encoding", "identity")
    return merged


def capture_request_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Copy inbound headers worth replaying upstream (auth, cookies, referer...)."""
    out: Dict[str, str] = {}
    if not headers:
        return out
    for k, v in headers.items():
        lk = str(k).lower()
        if lk in HOP_BY_HOP_HEADERS or lk in REQUEST_SCOPED_HEADERS:
            continue
        out[str(k)] = str(v)
    return out


# --- Dates ---

def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header into an aware UTC datetime, or None."""
    if not value:
        return None
    try:
        dt = dateparser.parse(value)
    except (ValueError, OverflowError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_http_date(dt: datetime) -> str:
    """RFC 1123 representation, always in GMT."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return formatdate(dt.timestamp(), usegmt=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def truncate_to_second(dt: datetime) -> datetime:
    return dt.replace(microsecond=0)


# --- Option values ---

def parse_bool(value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    v = str(value).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("", "0", "false", "no", "off"):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def parse_size(value) -> int:
    """Parse a size option such as ``64M``, ``512k`` or ``off``.

    ``off`` (and any negative number) returns -1. A bare number in a string
    is read as KiB, matching the option syntax of the cache flags; plain
    integers from the JSON config are bytes.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 else -1
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("empty size")
    if raw.lower() == "off" or raw.startswith("-"):
        return -1
    m = _SIZE_RE.match(raw)
    if not m:
        raise ValueError(f"invalid size: {value!r}")
    number = float(m.group(1))
    suffix = (m.group(2) or "k").lower()
    return int(number * _SIZE_MULTIPLIERS[suffix])


def parse_duration(value) -> float:
    """Parse a duration option (``10ms``, ``1h30m``, ``0s``, ``off``) into seconds.

    A bare number is read as seconds. ``off`` returns infinity.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    raw = str(value or "").strip()
    if not raw:
        raise ValueError("empty duration")
    if raw.lower() == "off":
        return float("inf")
    try:
        return float(raw)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for m in _DURATION_PART_RE.finditer(raw):
        if m.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(m.group(1)) * _DURATION_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(raw) or pos == 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total
