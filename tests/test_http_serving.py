import base64
import os
import shutil
import sys
import tempfile
import time
import unittest
from urllib.parse import quote

import requests

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from fake_upstream import FakeUpstream
from vfsproxy.errors import BadRequestError
from vfsproxy.server import ProxyServer, decode_target

LAST_MODIFIED = "Wed, 21 Oct 2015 07:28:00 GMT"
BODY = bytes(range(256)) * 4


class ServingTestCase(unittest.TestCase):
    extra_config = {}

    def setUp(self):
        self.upstream = FakeUpstream().start()
        self.addCleanup(self.upstream.stop)
        self.cache_dir = tempfile.mkdtemp(prefix="vfsproxy_test_serve_")
        self.addCleanup(shutil.rmtree, self.cache_dir, True)

        config = {
            "host": "127.0.0.1",
            "port": 0,
            "cache_dir": self.cache_dir,
            "cache_poll_interval": "0s",
            "chunk_streams": 1,
            "low_level_retries": 2,
            "pacer_min_sleep": "0s",
            "pacer_max_sleep": "10ms",
        }
        config.update(self.extra_config)
        config.update(self.config_overrides())
        self.proxy = ProxyServer(config)
        self.proxy.start()
        self.addCleanup(self.proxy.shutdown)

    def config_overrides(self):
        return {}

    def stream(self, url, **params):
        q = "&".join([f"url={quote(url, safe='')}"] + [f"{k}={v}" for k, v in params.items()])
        return f"{self.proxy.base_url}/stream?{q}"

    def content_gets(self, path):
        """Upstream GETs other than the one-byte metadata probe."""
        return [r for r in self.upstream.gets(path) if r[2].get("Range") != "bytes=0-0"]


class TestServing(ServingTestCase):

    def test_health(self):
        r = requests.get(f"{self.proxy.base_url}/health", timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(b"ok", r.content)

    def test_missing_target_is_bad_request(self):
        for path in ("/stream", "/stream?url=", "/stream/!!!"):
            r = requests.get(self.proxy.base_url + path, timeout=5)
            self.assertEqual(400, r.status_code, path)
        self.assertEqual(0, len(self.proxy.registry))

    def test_unknown_path_is_not_found(self):
        r = requests.get(f"{self.proxy.base_url}/elsewhere", timeout=5)
        self.assertEqual(404, r.status_code)

    def test_unresolvable_target_is_not_found(self):
        r = requests.get(self.stream(self.upstream.url("/gone.bin")), timeout=5)
        self.assertEqual(404, r.status_code)
        self.assertEqual(1, len(self.upstream.gets("/gone.bin")))

    def test_full_get(self):
        url = self.upstream.add("/a.mp3", BODY, last_modified=LAST_MODIFIED, content_type="audio/mpeg")
        r = requests.get(self.stream(url), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(BODY, r.content)
        self.assertEqual(str(len(BODY)), r.headers["Content-Length"])
        self.assertEqual(LAST_MODIFIED, r.headers["Last-Modified"])
        self.assertEqual("audio/mpeg", r.headers["Content-Type"])
        self.assertEqual("bytes", r.headers["Accept-Ranges"])

    def test_octet_stream_without_extension_has_no_content_type(self):
        url = self.upstream.add("/blob", BODY)
        r = requests.get(self.stream(url), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertNotIn("Content-Type", r.headers)

    def test_head_sends_headers_without_opening(self):
        url = self.upstream.add("/a.bin", BODY, last_modified=LAST_MODIFIED)
        r = requests.head(self.stream(url), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(str(len(BODY)), r.headers["Content-Length"])
        self.assertEqual(LAST_MODIFIED, r.headers["Last-Modified"])
        self.assertEqual(b"", r.content)
        self.assertEqual([], self.content_gets("/a.bin"))

    def test_size_hint_skips_metadata_fetch(self):
        url = self.upstream.add("/hinted.bin", BODY)
        r = requests.head(self.stream(url, size=len(BODY)), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(str(len(BODY)), r.headers["Content-Length"])
        self.assertEqual([], self.upstream.gets("/hinted.bin"))

        r = requests.head(self.stream(self.upstream.url("/other.bin")), headers={"X-Vfs-Size": "77"}, timeout=5)
        self.assertEqual("77", r.headers["Content-Length"])
        self.assertEqual([], self.upstream.gets("/other.bin"))

    def test_size_hint_keeps_last_modified_stable(self):
        url = self.upstream.add("/hinted.bin", BODY)
        first = requests.head(self.stream(url, size=len(BODY)), timeout=5).headers["Last-Modified"]
        time.sleep(1.1)
        r = requests.get(self.stream(url, size=len(BODY)), headers={"Range": "bytes=0-9", "If-Range": first}, timeout=5)
        self.assertEqual(first, r.headers["Last-Modified"])
        self.assertEqual(206, r.status_code)
        self.assertEqual(BODY[:10], r.content)

    def test_range_request(self):
        url = self.upstream.add("/a.bin", BODY)
        r = requests.get(self.stream(url), headers={"Range": "bytes=10-19"}, timeout=5)
        self.assertEqual(206, r.status_code)
        self.assertEqual(BODY[10:20], r.content)
        self.assertEqual(f"bytes 10-19/{len(BODY)}", r.headers["Content-Range"])
        self.assertEqual("10", r.headers["Content-Length"])

    def test_suffix_range_request(self):
        url = self.upstream.add("/a.bin", BODY)
        r = requests.get(self.stream(url), headers={"Range": "bytes=-4"}, timeout=5)
        self.assertEqual(206, r.status_code)
        self.assertEqual(BODY[-4:], r.content)

    def test_unsatisfiable_range(self):
        url = self.upstream.add("/a.bin", BODY)
        r = requests.get(self.stream(url), headers={"Range": "bytes=5000-6000"}, timeout=5)
        self.assertEqual(416, r.status_code)
        self.assertEqual(f"bytes */{len(BODY)}", r.headers["Content-Range"])

    def test_multi_range_gets_full_body(self):
        url = self.upstream.add("/a.bin", BODY)
        r = requests.get(self.stream(url), headers={"Range": "bytes=0-1,10-11"}, timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(BODY, r.content)

    def test_not_modified(self):
        url = self.upstream.add("/a.bin", BODY, last_modified=LAST_MODIFIED)
        r = requests.get(self.stream(url), headers={"If-Modified-Since": LAST_MODIFIED}, timeout=5)
        self.assertEqual(304, r.status_code)
        self.assertEqual(b"", r.content)

    def test_precondition_failed(self):
        url = self.upstream.add("/a.bin", BODY, last_modified=LAST_MODIFIED)
        r = requests.get(self.stream(url), headers={"If-Match": '"nope"'}, timeout=5)
        self.assertEqual(412, r.status_code)

    def test_unknown_size_rejects_range(self):
        url = self.upstream.add("/live", BODY, ranges=False, send_length=False)
        key = self.proxy.hash_cache.get(url)
        self.proxy.registry.register_with_size(key, url, {}, -1)

        r = requests.get(self.stream(url), headers={"Range": "bytes=0-10"}, timeout=5)
        self.assertEqual(416, r.status_code)
        self.assertEqual([], self.upstream.gets("/live"))

    def test_unknown_size_streams_full_body(self):
        url = self.upstream.add("/live", BODY, ranges=False, send_length=False)
        key = self.proxy.hash_cache.get(url)
        self.proxy.registry.register_with_size(key, url, {}, -1)

        r = requests.get(self.stream(url), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertNotIn("Content-Length", r.headers)
        self.assertEqual(BODY, r.content)

        r = requests.head(self.stream(url), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertNotIn("Accept-Ranges", r.headers)

    def test_base64_path_forms(self):
        url = self.upstream.add("/b64.bin", BODY)
        raw_urlsafe = base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")
        standard = base64.b64encode(url.encode()).decode()
        for encoded in (raw_urlsafe, standard):
            r = requests.get(f"{self.proxy.base_url}/stream/{encoded}", timeout=5)
            self.assertEqual(200, r.status_code, encoded)
            self.assertEqual(BODY, r.content)

        r = requests.get(self.proxy.stream_url(url), timeout=5)
        self.assertEqual(BODY, r.content)

    def test_client_headers_are_replayed_upstream(self):
        url = self.upstream.add("/private.bin", BODY)
        r = requests.get(self.stream(url), headers={"Authorization": "Bearer abc"}, timeout=5)
        self.assertEqual(200, r.status_code)
        for _, _, headers in self.upstream.gets("/private.bin"):
            self.assertEqual("Bearer abc", headers.get("Authorization"))

    def test_repeat_requests_are_served_from_cache(self):
        url = self.upstream.add("/a.bin", BODY)
        self.assertEqual(BODY, requests.get(self.stream(url), timeout=5).content)
        before = len(self.content_gets("/a.bin"))
        self.assertEqual(BODY, requests.get(self.stream(url), timeout=5).content)
        self.assertEqual(before, len(self.content_gets("/a.bin")))
        self.assertEqual(1, len(self.proxy.registry))


class TestStripQuery(ServingTestCase):
    extra_config = {"strip_query": True}

    def test_token_variants_share_one_entry(self):
        url = self.upstream.add("/signed.bin?token=1", BODY)
        r = requests.get(self.stream(url), timeout=5)
        self.assertEqual(BODY, r.content)

        # Different token, same key: the first registered URL is still used.
        r = requests.get(self.stream(self.upstream.url("/signed.bin?token=2")), timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(BODY, r.content)
        self.assertEqual(1, len(self.proxy.registry))
        self.assertEqual([], self.upstream.gets("/signed.bin?token=2"))


class TestUpstreamMode(ServingTestCase):

    def config_overrides(self):
        return {"upstream": self.upstream.base_url + "/"}

    def test_path_is_appended_to_upstream(self):
        self.upstream.add("/media/a.bin?x=1", BODY)
        r = requests.get(f"{self.proxy.base_url}/media/a.bin?x=1", timeout=5)
        self.assertEqual(200, r.status_code)
        self.assertEqual(BODY, r.content)

    def test_stream_routes_still_work(self):
        url = self.upstream.add("/direct.bin", BODY)
        r = requests.get(self.stream(url), timeout=5)
        self.assertEqual(BODY, r.content)


class TestDecodeTarget(unittest.TestCase):

    def test_decodes_all_forms(self):
        url = "https://example.com/a b?x=1&y=~"
        raw = url.encode()
        self.assertEqual(url, decode_target(base64.urlsafe_b64encode(raw).decode().rstrip("=")))
        self.assertEqual(url, decode_target(base64.urlsafe_b64encode(raw).decode()))
        self.assertEqual(url, decode_target(base64.b64encode(raw).decode()))

    def test_rejects_garbage(self):
        for bad in ("", "!!!", "%%%"):
            with self.assertRaises(BadRequestError):
                decode_target(bad)


class TestCacheModeOff(ServingTestCase):
    extra_config = {"cache_mode": "off"}

    def test_streams_without_touching_disk(self):
        url = self.upstream.add("/a.bin", BODY)
        r = requests.get(self.stream(url), headers={"Range": "bytes=100-199"}, timeout=5)
        self.assertEqual(206, r.status_code)
        self.assertEqual(BODY[100:200], r.content)
        self.assertFalse(os.path.exists(os.path.join(self.cache_dir, "vfs")))

    def test_broken_upstream_body_is_a_server_error(self):
        url = self.upstream.add("/broken.bin", BODY[:100], short=0)
        r = requests.get(self.stream(url), headers={"Range": "bytes=10-19"}, timeout=5)
        self.assertEqual(500, r.status_code)

        # The server is still answering afterwards.
        r = requests.get(f"{self.proxy.base_url}/health", timeout=5)
        self.assertEqual(200, r.status_code)


if __name__ == '__main__':
    unittest.main()
