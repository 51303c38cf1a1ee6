import unittest
import os
import shutil
import tempfile

from unionfs.errors import CancelledError, MetricUnavailableError
from unionfs.upstream import (
    Context,
    Entry,
    LocalUpstream,
    MemoryUpstream,
    background,
    clean_path,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestContext(unittest.TestCase):

    def test_background_is_live(self):
        ctx = background()
        self.assertFalse(ctx.cancelled)
        ctx.check()

    def test_cancel(self):
        ctx = Context()
        ctx.cancel()
        self.assertTrue(ctx.cancelled)
        with self.assertRaises(CancelledError):
            ctx.check()

    def test_deadline(self):
        ctx = Context(timeout=0)
        with self.assertRaisesRegex(CancelledError, "deadline"):
            ctx.check()

    def test_child_follows_parent(self):
        parent = Context()
        child = parent.with_timeout(60)
        child.check()
        parent.cancel()
        self.assertTrue(child.cancelled)
        with self.assertRaises(CancelledError):
            child.check()

    def test_child_inherits_earlier_deadline(self):
        parent = Context(timeout=5)
        child = parent.with_timeout(3600)
        self.assertEqual(child.deadline, parent.deadline)


class TestCleanPath(unittest.TestCase):

    def test_normalizes(self):
        self.assertEqual(clean_path("/a//b/./c/"), "a/b/c")
        self.assertEqual(clean_path("a/b/../c"), "a/c")
        self.assertEqual(clean_path(""), "")
        self.assertEqual(clean_path("/"), "")
        self.assertEqual(clean_path("../../etc"), "etc")


class TestMemoryUpstream(unittest.TestCase):

    def setUp(self):
        self.ctx = background()
        self.clock = FakeClock()
        self.upstream = MemoryUpstream("mem", files=["a/b/c.txt"], free_space=500, num_objects=3,
                                       min_free_space=100, cache_time=60, clock=self.clock)

    def test_properties(self):
        self.assertEqual(self.upstream.name, "mem")
        self.assertEqual(self.upstream.min_free_space, 100)
        self.assertTrue(self.upstream.writable)
        self.assertTrue(self.upstream.creatable)
        with self.assertRaises(AttributeError):
            self.upstream.min_free_space = 5

    def test_exists(self):
        for path in ("", "a", "a/b", "/a/b/c.txt"):
            self.assertTrue(self.upstream.exists(self.ctx, path), path)
        self.assertFalse(self.upstream.exists(self.ctx, "a/c"))

    def test_entry(self):
        self.upstream.put("a/big.bin", size=42)
        entry = self.upstream.entry(self.ctx, "a/big.bin")
        self.assertEqual(entry, Entry(path="a/big.bin", upstream=self.upstream, size=42))
        self.assertTrue(self.upstream.entry(self.ctx, "a").is_dir)
        self.assertIsNone(self.upstream.entry(self.ctx, "zzz"))

    def test_remove(self):
        self.upstream.remove("a/b/c.txt")
        self.assertFalse(self.upstream.exists(self.ctx, "a/b/c.txt"))
        self.assertTrue(self.upstream.exists(self.ctx, "a/b"))

    def test_metrics_are_cached(self):
        self.assertEqual(self.upstream.free_space(self.ctx), 500)
        self.upstream.reported_free_space = 10
        self.clock.now += 30
        self.assertEqual(self.upstream.free_space(self.ctx), 500)
        self.clock.now += 31
        self.assertEqual(self.upstream.free_space(self.ctx), 10)

    def test_invalidate(self):
        self.assertEqual(self.upstream.num_objects(self.ctx), 3)
        self.upstream.reported_num_objects = 9
        self.upstream.invalidate()
        self.assertEqual(self.upstream.num_objects(self.ctx), 9)

    def test_cache_disabled(self):
        upstream = MemoryUpstream("nocache", free_space=1, cache_time=0)
        self.assertEqual(upstream.free_space(self.ctx), 1)
        upstream.reported_free_space = 2
        self.assertEqual(upstream.free_space(self.ctx), 2)

    def test_unsupported_metrics(self):
        upstream = MemoryUpstream("bare")
        with self.assertRaises(MetricUnavailableError):
            upstream.free_space(self.ctx)
        with self.assertRaises(MetricUnavailableError):
            upstream.num_objects(self.ctx)

    def test_failures_are_not_cached(self):
        upstream = MemoryUpstream("flaky", cache_time=60, clock=self.clock)
        with self.assertRaises(MetricUnavailableError):
            upstream.free_space(self.ctx)
        upstream.reported_free_space = 77
        self.assertEqual(upstream.free_space(self.ctx), 77)

    def test_cancelled_query(self):
        ctx = Context()
        ctx.cancel()
        with self.assertRaises(CancelledError):
            self.upstream.free_space(ctx)
        with self.assertRaises(CancelledError):
            self.upstream.exists(ctx, "a")

    def test_read_only_cannot_create(self):
        upstream = MemoryUpstream("ro", writable=False)
        self.assertFalse(upstream.writable)
        self.assertFalse(upstream.creatable)

    def test_validation(self):
        with self.assertRaises(ValueError):
            MemoryUpstream("")
        with self.assertRaises(ValueError):
            MemoryUpstream("neg", min_free_space=-1)
        with self.assertRaises(ValueError):
            self.upstream.put("/")


class TestLocalUpstream(unittest.TestCase):

    def setUp(self):
        self.ctx = background()
        self.test_dir = tempfile.mkdtemp(prefix="unionfs_local_")
        os.makedirs(os.path.join(self.test_dir, "photos", "2024"))
        for name in ("photos/2024/a.jpg", "photos/b.jpg", "notes.txt"):
            with open(os.path.join(self.test_dir, *name.split("/")), "wb") as f:
                f.write(b"x" * 10)
        self.upstream = LocalUpstream("disk", self.test_dir, min_free_space=0, cache_time=0)

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_exists(self):
        self.assertTrue(self.upstream.exists(self.ctx, "photos/2024/a.jpg"))
        self.assertTrue(self.upstream.exists(self.ctx, "/photos"))
        self.assertFalse(self.upstream.exists(self.ctx, "photos/c.jpg"))

    def test_entry(self):
        entry = self.upstream.entry(self.ctx, "notes.txt")
        self.assertEqual(entry.size, 10)
        self.assertFalse(entry.is_dir)
        self.assertIs(entry.upstream, self.upstream)
        self.assertTrue(self.upstream.entry(self.ctx, "photos").is_dir)
        self.assertIsNone(self.upstream.entry(self.ctx, "missing"))

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks not supported")
    def test_dangling_symlink(self):
        os.symlink(os.path.join(self.test_dir, "gone"), os.path.join(self.test_dir, "link"))
        self.assertFalse(self.upstream.exists(self.ctx, "link"))
        self.assertIsNone(self.upstream.entry(self.ctx, "link"))

    @unittest.skipUnless(hasattr(os, "symlink"), "symlinks not supported")
    def test_symlink_to_file(self):
        os.symlink(os.path.join(self.test_dir, "notes.txt"), os.path.join(self.test_dir, "link"))
        self.assertTrue(self.upstream.exists(self.ctx, "link"))
        self.assertEqual(self.upstream.entry(self.ctx, "link").size, 10)

    def test_num_objects(self):
        self.assertEqual(self.upstream.num_objects(self.ctx), 3)

    def test_free_space(self):
        self.assertGreater(self.upstream.free_space(self.ctx), 0)

    def test_missing_root(self):
        upstream = LocalUpstream("gone", os.path.join(self.test_dir, "nope"), cache_time=0)
        with self.assertRaises(MetricUnavailableError):
            upstream.num_objects(self.ctx)
        with self.assertRaises(MetricUnavailableError):
            upstream.free_space(self.ctx)
        self.assertFalse(upstream.exists(self.ctx, "x"))


if __name__ == '__main__':
    unittest.main()
