import argparse
import logging
import signal
import sys
import threading

from vfsproxy.config import ConfigManager
from vfsproxy.errors import ConfigError
from vfsproxy.server import ProxyServer
from vfsproxy.utils import parse_bool

LOG = logging.getLogger("vfsproxy")


def _bool_flag(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Serve HTTP URLs as cached virtual files")
    ap.add_argument("--config", help="Path to config.json (default: beside the app, or $VFSPROXY_CONFIG).")
    ap.add_argument("--host", help="Address to bind.")
    ap.add_argument("--port", type=int, help="Port to listen on (0 picks a free one).")
    ap.add_argument("--chunk-size", dest="chunk_size", help="Read chunk size, e.g. 64M.")
    ap.add_argument("--max-age", dest="cache_max_age", help="Evict cache items idle longer than this, e.g. 1h.")
    ap.add_argument("--max-size", dest="cache_max_size", help="Total cache size bound, e.g. 10G, or off.")
    ap.add_argument("--cache-dir", dest="cache_dir", help="Cache root directory.")
    ap.add_argument("--chunk-streams", dest="chunk_streams", type=int, help="Parallel chunk streams.")
    ap.add_argument("--cache-mode", dest="cache_mode", help="off, minimal, writes or full.")
    ap.add_argument("--strip-query", dest="strip_query", type=_bool_flag, nargs="?", const=True,
                    help="Ignore the query string when computing cache keys.")
    ap.add_argument("--strip-domain", dest="strip_domain", type=_bool_flag, nargs="?", const=True,
                    help="Ignore scheme, host and fragment when computing cache keys.")
    ap.add_argument("--shard-level", dest="shard_level", type=int, help="Directory levels for sharded paths.")
    ap.add_argument("--upstream", help="Base URL served for any path outside /stream.")
    ap.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR.")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    manager = ConfigManager(args.config) if args.config else ConfigManager()
    overrides = {k: v for k, v in vars(args).items() if k != "config"}
    manager.update(overrides)
    config = manager.config

    level = getattr(logging, str(config.get("log_level") or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s %(name)s - %(levelname)s - %(message)s')

    try:
        server = ProxyServer(config)
    except ConfigError as e:
        LOG.error(f"Invalid configuration: {e}")
        return 2

    stop = threading.Event()

    def _on_signal(signum, _frame):
        LOG.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        server.start()
    except OSError as e:
        LOG.error(f"Could not listen on {config.get('host')}:{config.get('port')}: {e}")
        server.vfs.shutdown()
        return 1

    while not stop.wait(1.0):
        pass

    server.shutdown()
    LOG.info("Stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
