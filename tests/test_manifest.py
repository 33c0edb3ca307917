import json
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path

from skillward.client import LockTimeoutError, ManifestError
from skillward.manifest import Manifest, ManifestEntry, ManifestStore, touch_entry


def _entry(name: str = "pdf") -> ManifestEntry:
    return ManifestEntry(
        id=f"acme/{name}",
        name=name,
        version="1.0.0",
        source="https://github.com/acme/skills/tree/main/pdf",
        install_path=f"/skills/{name}",
        installed_at="2026-01-01T00:00:00Z",
        last_updated="2026-01-01T00:00:00Z",
        original_content_hash="abc123",
    )


class _FakeClock:
    def __init__(self, start: float) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestManifestJson(unittest.TestCase):
    def test_entry_uses_camel_case_keys(self) -> None:
        obj = _entry().to_json()
        self.assertEqual(
            set(obj),
            {"id", "name", "version", "source", "installPath", "installedAt", "lastUpdated", "originalContentHash"},
        )
        self.assertEqual(ManifestEntry.from_json("pdf", obj), _entry())

    def test_unknown_top_level_keys_survive(self) -> None:
        manifest = Manifest.from_json({"version": "1.0.0", "installedSkills": {}, "note": "keep me"})
        self.assertEqual(manifest.to_json()["note"], "keep me")

    def test_touch_entry_updates_timestamp_only(self) -> None:
        touched = touch_entry(_entry(), when="2026-02-02T00:00:00Z")
        self.assertEqual(touched.last_updated, "2026-02-02T00:00:00Z")
        self.assertEqual(touched.installed_at, _entry().installed_at)


class TestManifestStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "state" / "manifest.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_file_loads_default(self) -> None:
        manifest = ManifestStore(self.path).load()
        self.assertEqual(manifest.version, "1.0.0")
        self.assertEqual(manifest.installed_skills, {})

    def test_save_then_load(self) -> None:
        store = ManifestStore(self.path)
        store.save(Manifest(installed_skills={"pdf": _entry()}))

        self.assertEqual(store.get("pdf"), _entry())
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertIn("installedSkills", raw)
        self.assertEqual([p.name for p in self.path.parent.iterdir()], ["manifest.json"])

    def test_corrupt_file_raises(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{broken", encoding="utf-8")
        with self.assertRaises(ManifestError):
            ManifestStore(self.path).load()

    def test_update_safely_releases_lock(self) -> None:
        store = ManifestStore(self.path)

        def apply(manifest: Manifest) -> None:
            manifest.installed_skills["pdf"] = _entry()

        saved = store.update_safely(apply)

        self.assertIn("pdf", saved.installed_skills)
        self.assertFalse(store.lock_path.exists())
        self.assertEqual(store.lock_path.name, "manifest.json.lock")

    def test_lock_released_when_update_fails(self) -> None:
        store = ManifestStore(self.path)

        def apply(manifest: Manifest) -> None:
            raise ValueError("nope")

        with self.assertRaises(ValueError):
            store.update_safely(apply)
        self.assertFalse(store.lock_path.exists())

    def test_stale_lock_is_reclaimed(self) -> None:
        store = ManifestStore(self.path, lock_timeout_s=30.0)
        self.path.parent.mkdir(parents=True)
        store.lock_path.write_text("99999", encoding="utf-8")
        old = time.time() - 60
        os.utime(store.lock_path, (old, old))

        with self.assertLogs("skillward.manifest", level="WARNING"):
            store.acquire_lock()
        try:
            self.assertEqual(store.lock_path.read_text(encoding="utf-8"), str(os.getpid()))
        finally:
            store.release_lock()

    def test_live_lock_times_out(self) -> None:
        self.path.parent.mkdir(parents=True)
        lock = self.path.with_name("manifest.json.lock")
        lock.write_text("1", encoding="utf-8")
        mtime = lock.stat().st_mtime
        clock = _FakeClock(mtime)
        store = ManifestStore(
            self.path,
            lock_timeout_s=1000.0,
            retry_interval_s=0.5,
            max_wait_s=2.0,
            clock=clock,
            sleep=clock.sleep,
        )

        with self.assertRaises(LockTimeoutError):
            store.acquire_lock()

        self.assertEqual(clock.sleeps, [0.5, 0.5, 0.5, 0.5])
        self.assertTrue(lock.exists())

    def test_reclaim_keeps_lock_created_by_another_waiter(self) -> None:
        self.path.parent.mkdir(parents=True)
        lock = self.path.with_name("manifest.json.lock")
        lock.write_text("99999", encoding="utf-8")
        old = time.time() - 60

        class RacingStore(ManifestStore):
            raced = False

            def _lock_stat(self):
                st = super()._lock_stat()
                if st is not None and not self.raced:
                    # Another waiter reclaims first and takes a fresh lock.
                    self.raced = True
                    lock.unlink()
                    lock.write_text("424242", encoding="utf-8")
                return st

        os.utime(lock, (old, old))
        store = RacingStore(self.path, lock_timeout_s=30.0, max_wait_s=0.0)

        with self.assertRaises(LockTimeoutError):
            store.acquire_lock()

        self.assertEqual(lock.read_text(encoding="utf-8"), "424242")
        self.assertEqual(sorted(p.name for p in self.path.parent.iterdir()), ["manifest.json.lock"])

    def test_release_leaves_a_lock_it_does_not_own(self) -> None:
        store = ManifestStore(self.path)
        store.acquire_lock()
        store.lock_path.unlink()
        store.lock_path.write_text("424242", encoding="utf-8")

        with self.assertLogs("skillward.manifest", level="WARNING"):
            store.release_lock()

        self.assertEqual(store.lock_path.read_text(encoding="utf-8"), "424242")

    def test_release_without_lock_is_silent(self) -> None:
        ManifestStore(self.path).release_lock()

    def test_concurrent_updates_are_serialized(self) -> None:
        workers = 8
        per_worker = 10
        errors: list[BaseException] = []

        def work() -> None:
            store = ManifestStore(self.path, retry_interval_s=0.001)

            def bump(manifest: Manifest) -> None:
                manifest.extra["counter"] = manifest.extra.get("counter", 0) + 1

            try:
                for _ in range(per_worker):
                    store.update_safely(bump)
            except BaseException as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(ManifestStore(self.path).load().extra["counter"], workers * per_worker)


if __name__ == "__main__":
    unittest.main()
