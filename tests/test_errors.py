"""Tests for the stable error codes and payloads exposed to callers."""

import unittest
from pathlib import Path

from sbenv import errors
from sbenv.contracts import ERROR_SCHEMA_V1
from sbenv.supervisor.models import EnvironmentStatus


class ErrorContractTests(unittest.TestCase):
    def test_every_error_has_distinct_code_and_exit_status(self) -> None:
        classes = [
            value
            for value in vars(errors).values()
            if isinstance(value, type) and issubclass(value, errors.SbenvError)
        ]
        self.assertGreaterEqual(len(classes), 14)
        codes = [cls.error_code for cls in classes]
        exits = [cls.exit_code for cls in classes]
        self.assertEqual(len(set(codes)), len(codes))
        self.assertEqual(len(set(exits)), len(exits))
        self.assertNotIn(0, exits)

    def test_payload_carries_schema_and_context(self) -> None:
        payload = errors.EnvironmentRunning("proj1", EnvironmentStatus.RUNNING).to_payload()
        self.assertEqual(payload["error_schema_version"], ERROR_SCHEMA_V1)
        self.assertEqual(payload["error_code"], "ENV_RUNNING")
        self.assertEqual(payload["name"], "proj1")
        self.assertEqual(payload["status"], "running")
        self.assertIn("--force", payload["message"])

    def test_crashed_environment_advice_points_at_force(self) -> None:
        message = str(errors.EnvironmentRunning("proj1", EnvironmentStatus.CRASHED))
        self.assertIn("crashed", message)
        self.assertIn("pass --force to remove a crashed environment", message)
        self.assertNotIn("stop it first", message)

    def test_payload_drops_empty_context_and_stringifies_paths(self) -> None:
        exc = errors.ProcessSpawnFailed(
            "proj1",
            phase="early-exit",
            exit_code=3,
            log_path=Path("/tmp/proj1/syftbox.log"),
        )
        payload = exc.to_payload()
        self.assertEqual(payload["phase"], "early-exit")
        self.assertEqual(payload["process_exit_code"], 3)
        self.assertEqual(payload["log_path"], "/tmp/proj1/syftbox.log")
        self.assertNotIn("reason", payload)
        self.assertEqual(exc.exit_code, 11)

    def test_storage_error_wraps_os_error(self) -> None:
        exc = errors.StorageError("write registry", Path("/tmp/registry.json"), OSError(28, "No space left on device"))
        self.assertIn("No space left on device", str(exc))
        self.assertEqual(exc.to_payload()["operation"], "write registry")


if __name__ == "__main__":
    unittest.main()
