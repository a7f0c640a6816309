import json
import logging
import os
import sys
import tempfile
from urllib.parse import urlparse

from vfsproxy.errors import ConfigError
from vfsproxy.utils import parse_bool, parse_duration, parse_size

log = logging.getLogger(__name__)

# When frozen use the executable directory; otherwise use the directory of the
# main script so config.json stays alongside the app regardless of where it
# is launched from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.environ.get("VFSPROXY_CONFIG") or os.path.join(APP_DIR, "config.json")

CACHE_MODES = ("off", "minimal", "writes", "full")

DEFAULT_CONFIG = {
    "host": "0.0.0.0",
    "port": 8080,
    "fs_name": "link-vfs",
    "strip_query": False,
    "strip_domain": False,
    "shard_level": 1,
    "cache_mode": "full",
    "cache_dir": "",  # empty => <tmp>/rclone_vfs_cache
    "cache_max_age": "1h",
    "cache_max_size": "off",
    "chunk_size": "64M",
    "chunk_streams": 2,
    "cache_poll_interval": "1m",
    "metadata_cache_time": "0s",  # 0s => resolve on every cold stat
    "upstream": "",  # base URL for upstream mode; empty => /stream endpoints only
    "request_timeout_seconds": 30,
    "connect_timeout_seconds": 10,
    "low_level_retries": 10,
    "pacer_min_sleep": "10ms",
    "pacer_max_sleep": "2s",
    "log_level": "INFO",
}


class ConfigManager:
    def __init__(self, path=None):
        self.path = path or CONFIG_FILE
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(self.path):
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except (OSError, ValueError) as e:
                log.error(f"Error loading config {self.path}: {e}")
                return dict(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = cfg if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def save_config(self):
        try:
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            log.error(f"Error saving config {self.path}: {e}")

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()

    def update(self, overrides: dict):
        """Apply non-None overrides (CLI flags) without persisting them."""
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            self.config[key] = value


def cache_root(config: dict) -> str:
    root = str(config.get("cache_dir") or "").strip()
    if not root:
        root = os.path.join(tempfile.gettempdir(), "rclone_vfs_cache")
    return root


def validate_config(config: dict) -> dict:
    """Check option values and return them in parsed form.

    Raises ConfigError on the first invalid value.
    """
    mode = str(config.get("cache_mode") or "full").strip().lower()
    if mode not in CACHE_MODES:
        raise ConfigError(f"invalid cache_mode {mode!r}: must be one of {', '.join(CACHE_MODES)}")

    try:
        chunk_streams = int(config.get("chunk_streams", 2))
    except (TypeError, ValueError):
        raise ConfigError(f"invalid chunk_streams: {config.get('chunk_streams')!r}")
    if chunk_streams < 0:
        raise ConfigError(f"chunk_streams must be non-negative, got {chunk_streams}")

    try:
        shard_level = int(config.get("shard_level", 1))
    except (TypeError, ValueError):
        raise ConfigError(f"invalid shard_level: {config.get('shard_level')!r}")
    if shard_level < 0:
        raise ConfigError(f"shard_level must be non-negative, got {shard_level}")

    upstream = str(config.get("upstream") or "").strip()
    if upstream:
        scheme = urlparse(upstream).scheme
        if scheme not in ("http", "https"):
            raise ConfigError(f"upstream URL must use http or https scheme, got {scheme!r}")

    parsed = {
        "cache_mode": mode,
        "chunk_streams": chunk_streams,
        "shard_level": shard_level,
        "upstream": upstream,
        "cache_dir": cache_root(config),
    }
    for key in ("chunk_size", "cache_max_size"):
        try:
            parsed[key] = parse_size(config.get(key, DEFAULT_CONFIG[key]))
        except ValueError as e:
            raise ConfigError(f"invalid {key}: {e}")
    if parsed["chunk_size"] <= 0:
        raise ConfigError("chunk_size must be positive")
    for key in ("cache_max_age", "cache_poll_interval", "metadata_cache_time", "pacer_min_sleep", "pacer_max_sleep"):
        try:
            parsed[key] = parse_duration(config.get(key, DEFAULT_CONFIG[key]))
        except ValueError as e:
            raise ConfigError(f"invalid {key}: {e}")
    for key in ("request_timeout_seconds", "connect_timeout_seconds"):
        try:
            parsed[key] = max(1.0, float(config.get(key, DEFAULT_CONFIG[key])))
        except (TypeError, ValueError):
            raise ConfigError(f"invalid {key}: {config.get(key)!r}")
    try:
        parsed["low_level_retries"] = max(1, int(config.get("low_level_retries", 10)))
    except (TypeError, ValueError):
        raise ConfigError(f"invalid low_level_retries: {config.get('low_level_retries')!r}")

    parsed["fs_name"] = str(config.get("fs_name") or "link-vfs")
    for key in ("strip_query", "strip_domain"):
        try:
            parsed[key] = parse_bool(config.get(key, False))
        except ValueError as e:
            raise ConfigError(f"invalid {key}: {e}")
    return parsed
