"""Tests for the locked, atomically persisted environment registry."""

import fcntl
import json
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from sbenv.errors import (
    CorruptState,
    EnvironmentRunning,
    InvalidName,
    LockTimeout,
    NameConflict,
    NotFound,
    StorageError,
)
from sbenv.supervisor.models import EnvironmentStatus
from sbenv.supervisor.ports import PortAllocator
from sbenv.supervisor.registry import EnvironmentRegistry
from sbenv.supervisor.settings import SbenvSettings


def _make_registry(home: Path, **overrides) -> EnvironmentRegistry:
    settings = SbenvSettings(home=home, **overrides)
    return EnvironmentRegistry(
        settings,
        port_allocator=PortAllocator(settings.base_port, settings.port_range, probe=lambda port: True),
    )


class RegistryTests(unittest.TestCase):
    """Validate create/remove/update semantics and on-disk invariants."""

    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.home = Path(self._tmpdir.name)
        self.registry = _make_registry(self.home)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_create_builds_layout_and_entry(self) -> None:
        record = self.registry.create("proj1", email="alice@example.org")
        self.assertEqual(record.port, 8000)
        self.assertEqual(record.status, EnvironmentStatus.STOPPED)
        self.assertEqual(record.root_dir, self.home / "envs" / "proj1")
        self.assertTrue((record.root_dir / "apps").is_dir())
        self.assertTrue((record.root_dir / "datasites").is_dir())
        self.assertTrue(record.log_path.exists())
        config = json.loads(record.config_path.read_text(encoding="utf-8"))
        self.assertEqual(config["email"], "alice@example.org")
        self.assertEqual(config["client_url"], "http://127.0.0.1:8000")
        self.assertEqual(config["data_dir"], str(record.root_dir))

        on_disk = json.loads(self.registry.registry_path.read_text(encoding="utf-8"))
        self.assertEqual(list(on_disk), ["proj1"])
        entry = on_disk["proj1"]
        for key in ("root_dir", "port", "created_at", "dev_mode", "server_url", "pid", "status", "log_path", "config_path"):
            self.assertIn(key, entry)
        self.assertIsNone(entry["pid"])
        self.assertEqual(entry["status"], "stopped")

    def test_dev_mode_uses_dev_server_url(self) -> None:
        record = self.registry.create("dev1", dev_mode=True)
        self.assertTrue(record.dev_mode)
        self.assertEqual(record.server_url, "http://localhost:8080")

    def test_create_leaves_no_staging_directories(self) -> None:
        self.registry.create("proj1")
        leftovers = [path.name for path in (self.home / "envs").iterdir() if path.name.startswith(".")]
        self.assertEqual(leftovers, [])

    def test_invalid_names_rejected(self) -> None:
        for name in ("", "../evil", "a b", ".hidden", "x" * 80):
            with self.assertRaises(InvalidName):
                self.registry.create(name)
        self.assertFalse(self.registry.registry_path.exists())

    def test_duplicate_name_conflicts(self) -> None:
        self.registry.create("proj1")
        with self.assertRaises(NameConflict):
            self.registry.create("proj1")

    def test_orphan_directory_conflicts(self) -> None:
        (self.home / "envs" / "ghost").mkdir(parents=True)
        with self.assertRaises(NameConflict):
            self.registry.create("ghost")
        self.assertEqual(self.registry.list(), [])

    def test_create_then_remove_restores_snapshot_and_frees_port(self) -> None:
        self.registry.create("base")
        before = self.registry.registry_path.read_text(encoding="utf-8")
        temp = self.registry.create("temp")
        self.assertEqual(temp.port, 8001)
        self.registry.remove("temp")
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), before)
        self.assertFalse(temp.root_dir.exists())
        self.assertEqual(self.registry.create("again").port, 8001)

    def test_remove_unknown_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.registry.remove("missing")

    def test_remove_refuses_non_stopped_without_force(self) -> None:
        record = self.registry.create("proj1")

        def _mark_running(draft):
            draft.status = EnvironmentStatus.RUNNING
            draft.pid = 4242

        self.registry.update("proj1", _mark_running)
        with self.assertRaises(EnvironmentRunning):
            self.registry.remove("proj1")
        self.assertTrue(record.root_dir.exists())

        terminated = []
        self.registry.remove("proj1", force=True, terminate=lambda rec: terminated.append(rec.pid))
        self.assertEqual(terminated, [4242])
        self.assertFalse(record.root_dir.exists())
        self.assertEqual(self.registry.list(), [])

    def test_remove_settle_hook_runs_before_guard(self) -> None:
        self.registry.create("proj1")
        self.registry.update("proj1", lambda draft: draft.model_copy(update={"status": EnvironmentStatus.RUNNING, "pid": 99}))

        def _settle(record):
            record.status = EnvironmentStatus.STOPPED
            record.pid = None
            return record

        self.registry.remove("proj1", settle=_settle)
        self.assertEqual(self.registry.list(), [])

    def test_update_persists_mutation(self) -> None:
        self.registry.create("proj1")

        def _mark_running(draft):
            draft.status = EnvironmentStatus.RUNNING
            draft.pid = 1234

        updated = self.registry.update("proj1", _mark_running)
        self.assertEqual(updated.pid, 1234)
        reloaded = self.registry.get("proj1")
        self.assertEqual(reloaded.status, EnvironmentStatus.RUNNING)
        self.assertEqual(reloaded.pid, 1234)

    def test_update_aborted_by_mutator_error_leaves_file_unchanged(self) -> None:
        self.registry.create("proj1")
        before = self.registry.registry_path.read_text(encoding="utf-8")

        def _explode(draft):
            draft.pid = 77
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.registry.update("proj1", _explode)
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), before)

    def test_update_rejects_duplicate_port(self) -> None:
        self.registry.create("proj1")
        self.registry.create("proj2")
        with self.assertRaises(ValueError):
            self.registry.update("proj2", lambda draft: draft.model_copy(update={"port": 8000}))

    def test_update_unknown_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.registry.update("missing", lambda draft: None)

    def test_interrupted_write_keeps_previous_snapshot(self) -> None:
        self.registry.create("proj1")
        before = self.registry.registry_path.read_text(encoding="utf-8")
        with mock.patch("sbenv.supervisor.registry.os.replace", side_effect=OSError(28, "No space left on device")):
            with self.assertRaises(StorageError):
                self.registry.create("proj2")
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), before)
        self.assertFalse((self.home / "envs" / "proj2").exists())
        temp_files = [path.name for path in self.home.iterdir() if path.name.endswith(".tmp")]
        self.assertEqual(temp_files, [])

    def test_interrupted_remove_keeps_environment_directory(self) -> None:
        record = self.registry.create("proj1")
        before = self.registry.registry_path.read_text(encoding="utf-8")
        with mock.patch("sbenv.supervisor.registry.os.replace", side_effect=OSError(28, "No space left on device")):
            with self.assertRaises(StorageError):
                self.registry.remove("proj1")
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), before)
        self.assertEqual([entry.name for entry in self.registry.list()], ["proj1"])
        self.assertTrue(record.root_dir.is_dir())
        self.assertTrue(record.config_path.exists())
        leftovers = [path.name for path in self.registry.envs_dir.iterdir() if path.name.startswith(".")]
        self.assertEqual(leftovers, [])

        self.registry.remove("proj1")
        self.assertFalse(record.root_dir.exists())
        self.assertEqual(list(self.registry.envs_dir.iterdir()), [])

    def test_interrupt_during_fsync_keeps_previous_snapshot(self) -> None:
        self.registry.create("proj1")
        before = self.registry.registry_path.read_text(encoding="utf-8")
        with mock.patch("sbenv.supervisor.registry.os.fsync", side_effect=KeyboardInterrupt):
            with self.assertRaises(KeyboardInterrupt):
                self.registry.update("proj1", lambda draft: draft.model_copy(update={"pid": 5}))
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), before)
        self.assertIsNone(self.registry.get("proj1").pid)

    def test_corrupt_registry_is_fatal_and_untouched(self) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        self.registry.registry_path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(CorruptState):
            self.registry.list()
        with self.assertRaises(CorruptState):
            self.registry.create("proj1")
        self.assertEqual(self.registry.registry_path.read_text(encoding="utf-8"), "{not json")

    def test_schema_invalid_entry_is_corrupt(self) -> None:
        self.registry.registry_path.parent.mkdir(parents=True, exist_ok=True)
        self.registry.registry_path.write_text(json.dumps({"proj1": {"port": "eight"}}), encoding="utf-8")
        with self.assertRaises(CorruptState):
            self.registry.get("proj1")

    def test_lock_timeout_when_lock_held(self) -> None:
        registry = _make_registry(self.home, lock_timeout_seconds=0.2)
        self.home.mkdir(parents=True, exist_ok=True)
        with open(registry.lock_path, "a+", encoding="utf-8") as holder:
            fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
            try:
                with self.assertRaises(LockTimeout):
                    registry.create("proj1")
            finally:
                fcntl.flock(holder.fileno(), fcntl.LOCK_UN)
        self.assertEqual(registry.create("proj1").port, 8000)

    def test_concurrent_creates_get_unique_ports(self) -> None:
        names = [f"env{index}" for index in range(8)]
        errors = []

        def _create(name: str) -> None:
            try:
                _make_registry(self.home).create(name)
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=_create, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        records = self.registry.list()
        self.assertEqual(sorted(record.name for record in records), sorted(names))
        ports = [record.port for record in records]
        self.assertEqual(len(set(ports)), len(ports))


if __name__ == "__main__":
    unittest.main()
