import json
import tempfile
import unittest
from datetime import timedelta
from pathlib import Path

from stackreg.cache import Cache


class CacheTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name) / "sources"

    def tearDown(self):
        self._tmp.cleanup()

    def test_zero_ttl_always_needs_update(self):
        cache = Cache(self.base, ttl=timedelta(0))
        cache.mark_updated("official")
        self.assertTrue(cache.needs_update("official"))

    def test_fresh_mark_is_not_stale_with_day_ttl(self):
        cache = Cache(self.base, ttl=timedelta(hours=24))
        self.assertTrue(cache.needs_update("official"))
        cache.mark_updated("official")
        self.assertFalse(cache.needs_update("official"))

    def test_metadata_is_written_through_and_reloaded(self):
        cache = Cache(self.base)
        cache.mark_updated("official")
        cache.set_commit("official", "deadbeef")
        cache.set_source_info("official", url="https://git.example.com/x.git", branch="main")

        raw = json.loads((self.base / "cache.json").read_text())
        self.assertEqual(raw["official"]["commit"], "deadbeef")

        reloaded = Cache(self.base)
        self.assertEqual(reloaded.get_commit("official"), "deadbeef")
        self.assertFalse(reloaded.needs_update("official"))
        self.assertEqual(reloaded.get_metadata()["official"].branch, "main")

    def test_corrupt_metadata_is_treated_as_empty(self):
        self.base.mkdir(parents=True)
        (self.base / "cache.json").write_text("{not json")
        with self.assertLogs("stackreg.cache", level="WARNING"):
            cache = Cache(self.base)
        self.assertEqual(cache.get_cached_sources(), [])
        self.assertTrue(cache.needs_update("official"))

    def test_force_expire_keeps_files(self):
        cache = Cache(self.base)
        repo = cache.get_repo_path("official")
        repo.mkdir(parents=True)
        cache.mark_updated("official")
        self.assertTrue(cache.is_cached("official"))

        cache.force_expire("official")
        self.assertTrue(cache.needs_update("official"))
        self.assertTrue(repo.exists())
        self.assertIsNone(cache.get_last_updated("official"))

    def test_clear_removes_metadata_and_tree(self):
        cache = Cache(self.base)
        repo = cache.get_repo_path("official")
        repo.mkdir(parents=True)
        (repo / "file.txt").write_text("x")
        cache.mark_updated("official")

        cache.clear("official")
        self.assertFalse(repo.exists())
        self.assertNotIn("official", cache.get_cached_sources())

    def test_clear_all_preserves_metadata_file(self):
        cache = Cache(self.base)
        for name in ("a", "b"):
            cache.get_repo_path(name).mkdir(parents=True)
            cache.mark_updated(name)

        cache.clear_all()
        self.assertTrue((self.base / "cache.json").exists())
        self.assertEqual([p.name for p in self.base.iterdir()], ["cache.json"])
        self.assertEqual(cache.get_cached_sources(), [])

    def test_get_size_sums_files(self):
        cache = Cache(self.base)
        repo = cache.get_repo_path("official")
        repo.mkdir(parents=True)
        (repo / "a.yaml").write_bytes(b"x" * 100)
        (repo / "nested").mkdir()
        (repo / "nested" / "b.yaml").write_bytes(b"y" * 50)
        metadata_size = (self.base / "cache.json").stat().st_size if (self.base / "cache.json").exists() else 0
        self.assertEqual(cache.get_size(), 150 + metadata_size)


if __name__ == "__main__":
    unittest.main()
