"""
Cache keys for target URLs.

A target URL is normalized (optionally dropping the query string and/or the
scheme, host, credentials and fragment), hashed to a fixed-width hex key, and
the key is expanded into a sharded relative path used as the virtual
filename. Normalization only feeds the hash: the URL that gets fetched is
always the original one.
"""

import hashlib
import logging
import threading
from typing import Dict
from urllib.parse import urlsplit, urlunsplit

LOG = logging.getLogger(__name__)


def strip_url(url: str, strip_query: bool, strip_domain: bool) -> str:
    if not strip_query and not strip_domain:
        return url

    try:
        parts = urlsplit(url)
    except ValueError:
        # A degraded key is better than a failed request.
        return url

    if strip_query:
        parts = parts._replace(query="")
    if strip_domain:
        parts = parts._replace(scheme="", netloc="", fragment="")

    return urlunsplit(parts)


def compute_key(url: str, strip_query: bool = False, strip_domain: bool = False) -> str:
    """MD5 of the normalized URL as 32 lowercase hex characters."""
    key_url = strip_url(url, strip_query, strip_domain)
    return hashlib.md5(key_url.encode("utf-8", "surrogatepass")).hexdigest()


def sharded_path(file_hash: str, level: int) -> str:
    """Expand ``file_hash`` into ``level`` two-character directories plus the hash.

    ``sharded_path("ab12cd34", 2) == "ab/12/ab12cd34"``. Keys too short to
    shard at the requested depth are returned unchanged.
    """
    if level <= 0 or len(file_hash) < 2 * level:
        return file_hash
    parts = [file_hash[i * 2:(i + 1) * 2] for i in range(level)]
    parts.append(file_hash)
    return "/".join(parts)


class HashCache:
    """Memoizes ``compute_key`` per literal request URL.

    Lookups are lock-free dict reads. A miss takes the lock, checks again and
    only then hashes, so concurrent requests for the same URL compute the key
    once and all observe the first stored value.
    """

    def __init__(self, strip_query: bool = False, strip_domain: bool = False):
        self.strip_query = bool(strip_query)
        self.strip_domain = bool(strip_domain)
        self._keys: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> str:
        key = self._keys.get(url)
        if key is not None:
            return key

        with self._lock:
            key = self._keys.get(url)
            if key is not None:
                return key
            key = compute_key(url, self.strip_query, self.strip_domain)
            self._keys[url] = key
            return key

    def __len__(self) -> int:
        return len(self._keys)
