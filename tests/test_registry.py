import os
import sys
import threading
import unittest
from datetime import datetime, timezone

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from vfsproxy.registry import Registry


class TestRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = Registry()

    def test_register_is_idempotent(self):
        self.assertTrue(self.registry.register("k1", "https://example.com/a", {"Referer": "x"}))
        self.assertFalse(self.registry.register("k1", "https://example.com/a", {"Referer": "x"}))
        self.assertFalse(self.registry.register("k1", "https://example.com/a", {}))
        self.assertEqual(1, len(self.registry))

    def test_register_does_not_overwrite(self):
        self.registry.register("k1", "https://example.com/a", {"Referer": "first"})
        self.registry.register("k1", "https://example.com/b", {"Referer": "second"})
        entry = self.registry.lookup("k1")
        self.assertEqual("https://example.com/a", entry.url)
        self.assertEqual({"Referer": "first"}, entry.headers)
        self.assertIsNone(entry.size)
        self.assertFalse(entry.has_known_size)

    def test_register_with_size_overwrites(self):
        self.registry.register("k1", "https://example.com/a", {})
        mod = datetime(2021, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.assertFalse(self.registry.register_with_size("k1", "https://example.com/b", {"X": "1"}, 2048, mod))
        entry = self.registry.lookup("k1")
        self.assertEqual("https://example.com/b", entry.url)
        self.assertEqual(2048, entry.size)
        self.assertEqual(mod, entry.mod_time)
        self.assertTrue(entry.has_known_size)

    def test_register_with_size_keeps_mod_time_for_same_target(self):
        self.registry.register_with_size("k1", "https://example.com/a", {}, 100)
        first = self.registry.lookup("k1").mod_time
        self.registry.register_with_size("k1", "https://example.com/a", {"X": "2"}, 100)
        entry = self.registry.lookup("k1")
        self.assertEqual(first, entry.mod_time)
        self.assertEqual({"X": "2"}, entry.headers)

    def test_register_with_size_new_size_gets_new_mod_time(self):
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        self.registry.register_with_size("k1", "https://example.com/a", {}, 100, old)
        self.registry.register_with_size("k1", "https://example.com/a", {}, 200)
        self.assertGreater(self.registry.lookup("k1").mod_time, old)

        self.registry.register_with_size("k1", "https://example.com/b", {}, 200, old)
        self.registry.register_with_size("k1", "https://example.com/c", {}, 200)
        self.assertGreater(self.registry.lookup("k1").mod_time, old)

    def test_register_with_size_new_entry(self):
        self.assertTrue(self.registry.register_with_size("k2", "https://example.com/c", None, 0))
        entry = self.registry.lookup("k2")
        self.assertEqual(0, entry.size)
        self.assertIsNotNone(entry.mod_time)
        self.assertEqual({}, entry.headers)

    def test_register_with_size_accepts_unknown_length(self):
        self.registry.register_with_size("k3", "https://example.com/live", {}, -1)
        self.assertEqual(-1, self.registry.lookup("k3").size)

    def test_register_with_size_rejects_negative(self):
        with self.assertRaises(ValueError):
            self.registry.register_with_size("k4", "https://example.com/x", {}, -2)
        self.assertNotIn("k4", self.registry)

    def test_load_url(self):
        self.registry.register("k1", "https://example.com/a", {})
        self.assertEqual(("https://example.com/a", True), self.registry.load_url("k1"))
        self.assertEqual(("", False), self.registry.load_url("missing"))

    def test_headers_are_copied(self):
        headers = {"Cookie": "a=1"}
        self.registry.register("k1", "https://example.com/a", headers)
        headers["Cookie"] = "changed"
        self.assertEqual("a=1", self.registry.lookup("k1").headers["Cookie"])

    def test_snapshot(self):
        self.registry.register("k1", "https://example.com/a", {})
        self.registry.register_with_size("k2", "https://example.com/b", {}, 10)
        keys = sorted(remote for remote, _ in self.registry.snapshot())
        self.assertEqual(["k1", "k2"], keys)

    def test_concurrent_register_creates_exactly_once(self):
        barrier = threading.Barrier(20)
        created = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            ok = self.registry.register("same", "https://example.com/a", {})
            with lock:
                created.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        self.assertEqual(20, len(created))
        self.assertEqual(1, created.count(True))
        self.assertEqual(1, len(self.registry))

    def test_concurrent_distinct_registrations(self):
        def worker(n):
            for i in range(50):
                self.registry.register(f"k{n}-{i}", f"https://example.com/{n}/{i}", {})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        self.assertEqual(400, len(self.registry))


if __name__ == '__main__':
    unittest.main()
