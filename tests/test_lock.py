import tempfile
import unittest
from pathlib import Path
from unittest import mock

from stackreg.config import ProjectConfig
from stackreg.git_source import GitSource
from stackreg.lock import (
    LockManager,
    calculate_config_hash,
    diff_lock_files,
    get_lock_file_path,
    lock_file_exists,
)

from tests.support import FakeGit, git_source, local_source, make_registry, write_service


class LockManagerTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.local = self.tmp / "local"
        write_service(self.local, "traefik", always=True, version="3.0.0", tag="v3.0")
        write_service(self.local, "authelia", required=["traefik"], version="4.0.0")
        self.remote = self.tmp / "remote"
        write_service(self.remote, "sonarr", addon=True, required=["traefik"], version="4.0.9", tag="4.0.9")

        self.fake = FakeGit(self.remote)
        patcher = mock.patch.object(GitSource, "_run_git", autospec=True, side_effect=self.fake)
        patcher.start()
        self.addCleanup(patcher.stop)

        self.registry = make_registry(
            self.tmp, [local_source("local", self.local, 100), git_source("community", priority=0)]
        )
        self.manager = LockManager(self.registry, cli_version="0.3.0")
        self.config = ProjectConfig(addons=["sonarr"])
        self.lock_path = get_lock_file_path(self.tmp)

    def tearDown(self):
        self._tmp.cleanup()

    def test_generate_snapshots_sources_and_services(self):
        lock = self.manager.generate_lock_file(self.config, output_path=self.lock_path)

        self.assertTrue(lock_file_exists(self.tmp))
        self.assertEqual(lock.install_order, ["traefik", "authelia", "sonarr"])
        self.assertEqual(list(lock.sources), ["community"])
        self.assertEqual(lock.sources["community"].commit, "abc123def4567890")
        self.assertEqual(lock.sources["community"].branch, "main")
        self.assertIsNotNone(lock.sources["community"].fetched_at)

        sonarr = lock.services["sonarr"]
        self.assertEqual((sonarr.source, sonarr.definition_version), ("community", "4.0.9"))
        self.assertEqual((sonarr.image.repository, sonarr.image.tag), ("example/sonarr", "4.0.9"))
        self.assertTrue(sonarr.enabled)
        self.assertEqual(lock.metadata.cli_version, "0.3.0")
        self.assertEqual(lock.metadata.config_hash, calculate_config_hash(self.config))
        reloaded = self.manager.load_lock_file(self.lock_path)
        self.assertEqual(reloaded.services, lock.services)
        self.assertEqual(reloaded.install_order, lock.install_order)
        self.assertEqual(reloaded.metadata.config_hash, lock.metadata.config_hash)

    def test_config_hash_format(self):
        digest = calculate_config_hash(self.config)
        self.assertTrue(digest.startswith("sha256:"))
        self.assertEqual(len(digest), len("sha256:") + 32)
        self.assertEqual(digest, calculate_config_hash(ProjectConfig(addons=["sonarr"])))
        self.assertNotEqual(digest, calculate_config_hash(ProjectConfig()))

    def test_diff_against_itself_is_empty(self):
        lock = self.manager.generate_lock_file(self.config)
        diff = diff_lock_files(lock, lock)
        self.assertFalse(diff.has_changes())
        self.assertTrue(diff.is_empty())
        self.assertEqual(diff.summary(), "No changes")
        self.assertFalse(self.manager.diff(self.config, lock).has_changes())

    def test_diff_reports_added_removed_modified(self):
        lock = self.manager.generate_lock_file(self.config)
        write_service(self.local, "authelia", required=["traefik"], version="4.1.0")
        write_service(self.local, "homepage", required=["traefik"])

        diff = self.manager.diff(ProjectConfig(), lock)
        self.assertEqual(diff.services["authelia"].type, "modified")
        self.assertEqual((diff.services["authelia"].old, diff.services["authelia"].new), ("4.0.0", "4.1.0"))
        self.assertEqual(diff.services["homepage"].type, "added")
        self.assertEqual(diff.services["sonarr"].type, "removed")
        self.assertNotIn("traefik", diff.services)
        self.assertIn("~ Service authelia: 4.0.0 -> 4.1.0", diff.summary())

    def test_verify_in_sync(self):
        lock = self.manager.generate_lock_file(self.config)
        self.assertEqual(self.manager.verify(self.config, lock), [])

    def test_verify_from_fresh_registry_uses_checked_out_commit(self):
        lock = self.manager.generate_lock_file(self.config)
        fresh = make_registry(
            self.tmp, [local_source("local", self.local, 100), git_source("community", priority=0)]
        )
        self.assertEqual(fresh.get_source("community").get_commit(), "abc123def4567890")
        self.assertEqual(LockManager(fresh).verify(self.config, lock), [])

    def test_verify_notices_new_upstream_commit(self):
        lock = self.manager.generate_lock_file(self.config)
        self.fake.commit = "fedcba9876543210"
        fresh = make_registry(
            self.tmp, [local_source("local", self.local, 100), git_source("community", priority=0)]
        )
        results = LockManager(fresh).verify(self.config, lock)
        self.assertEqual(
            [(r.type, r.name, r.expected, r.actual) for r in results],
            [("source", "community", "abc123def4567890", "fedcba9876543210")],
        )

    def test_verify_reports_drift(self):
        lock = self.manager.generate_lock_file(self.config)
        write_service(self.local, "traefik", always=True, version="3.1.0", tag="v3.1")
        lock.sources["gone"] = lock.sources["community"].model_copy()
        lock.sources["community"].commit = "0000000"

        results = self.manager.verify(ProjectConfig(addons=["sonarr"], vpn_enabled=True), lock)
        found = {(r.type, r.name, r.status, r.message) for r in results}

        self.assertIn(("config", "", "changed", "Configuration has changed since lock file was generated"), found)
        self.assertIn(("source", "gone", "missing", "Source not found"), found)
        self.assertIn(("source", "community", "changed", "Source commit has changed"), found)
        self.assertIn(("service", "traefik", "changed", "Service definition version changed"), found)
        self.assertIn(("service", "traefik", "changed", "Image tag changed"), found)
        self.assertNotIn("authelia", {r.name for r in results})

    def test_verify_reports_missing_service(self):
        lock = self.manager.generate_lock_file(self.config)
        (self.local / "authelia" / "service.yaml").unlink()
        results = self.manager.verify(self.config, lock)
        self.assertEqual(
            [(r.name, r.status) for r in results if r.type == "service"], [("authelia", "missing")]
        )

    def test_verify_skips_disabled_entries(self):
        lock = self.manager.generate_lock_file(self.config)
        lock.services["authelia"].enabled = False
        (self.local / "authelia" / "service.yaml").unlink()
        self.assertEqual(self.manager.verify(self.config, lock), [])

    def test_partial_update_only_touches_named_services(self):
        old = self.manager.generate_lock_file(self.config)
        write_service(self.local, "traefik", always=True, version="3.1.0")
        write_service(self.local, "authelia", required=["traefik"], version="4.1.0")
        write_service(self.local, "homepage", required=["traefik"], version="0.9.0")

        updated = self.manager.update(self.config, old, services=["authelia"], output_path=self.lock_path)

        self.assertEqual(updated.services["authelia"].definition_version, "4.1.0")
        self.assertEqual(updated.services["traefik"], old.services["traefik"])
        self.assertEqual(updated.services["homepage"].definition_version, "0.9.0")
        self.assertEqual(updated.sources, old.sources)
        self.assertIn("homepage", updated.install_order)
        self.assertEqual(self.manager.load_lock_file(self.lock_path).services, updated.services)

    def test_partial_update_drops_services_that_vanished(self):
        old = self.manager.generate_lock_file(self.config)
        (self.local / "authelia" / "service.yaml").unlink()
        updated = self.manager.update(self.config, old, services=["authelia"])
        self.assertNotIn("authelia", updated.services)
        self.assertIn("traefik", updated.services)

    def test_full_update_pulls_and_regenerates(self):
        old = self.manager.generate_lock_file(self.config)
        write_service(self.local, "traefik", always=True, version="3.1.0")
        updated = self.manager.update(self.config, old)
        self.assertEqual(updated.services["traefik"].definition_version, "3.1.0")
        self.assertIn(["pull", "origin", "main"], self.fake.calls)


if __name__ == "__main__":
    unittest.main()
