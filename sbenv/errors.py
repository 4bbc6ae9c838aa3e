"""Deterministic sbenv exception hierarchy."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sbenv.contracts import ERROR_SCHEMA_V1


def _jsonable(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    return value


class SbenvError(Exception):
    """Base error type carrying a stable error code and CLI exit status."""

    error_code = "SBENV_ERROR"
    exit_code = 1

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error_schema_version": ERROR_SCHEMA_V1,
            "error_code": self.error_code,
            "message": str(self),
        }
        for key, value in self.context.items():
            if value is not None:
                payload[key] = _jsonable(value)
        return payload


class InvalidName(SbenvError):
    """Environment name violates the allowed character set."""

    error_code = "ENV_INVALID_NAME"
    exit_code = 2

    def __init__(self, name: str, pattern: str):
        super().__init__(
            f"invalid environment name {name!r}: must match {pattern}",
            name=name,
            pattern=pattern,
        )


class NotFound(SbenvError):
    error_code = "ENV_NOT_FOUND"
    exit_code = 3

    def __init__(self, name: str):
        super().__init__(f"environment not found: {name}", name=name)


class NameConflict(SbenvError):
    error_code = "ENV_NAME_CONFLICT"
    exit_code = 4

    def __init__(self, name: str, *, root_dir: Path | None = None):
        if root_dir is not None:
            message = f"environment directory already exists for {name}: {root_dir}"
        else:
            message = f"environment already exists: {name}"
        super().__init__(message, name=name, root_dir=root_dir)


class EnvironmentRunning(SbenvError):
    """Remove was refused because the environment is not stopped."""

    error_code = "ENV_RUNNING"
    exit_code = 5

    def __init__(self, name: str, status: Any):
        state = _jsonable(status)
        if state in ("running", "starting"):
            advice = "stop it first or pass --force"
        else:
            advice = f"pass --force to remove a {state} environment"
        super().__init__(
            f"environment {name} is {state}; {advice}",
            name=name,
            status=status,
        )


class AlreadyRunning(SbenvError):
    error_code = "PROC_ALREADY_RUNNING"
    exit_code = 6

    def __init__(self, name: str, pid: int | None):
        super().__init__(f"environment {name} is already running (PID: {pid})", name=name, pid=pid)


class NotRunning(SbenvError):
    error_code = "PROC_NOT_RUNNING"
    exit_code = 7

    def __init__(self, name: str, status: Any):
        super().__init__(
            f"environment {name} is not running (status: {_jsonable(status)})",
            name=name,
            status=status,
        )


class NoActiveEnvironment(SbenvError):
    error_code = "SESSION_NO_ACTIVE_ENV"
    exit_code = 8

    def __init__(self) -> None:
        super().__init__("no environment is active in this session")


class PortExhausted(SbenvError):
    error_code = "PORT_EXHAUSTED"
    exit_code = 9

    def __init__(self, first_port: int, last_port: int):
        super().__init__(
            f"no free port in range {first_port}-{last_port}",
            first_port=first_port,
            last_port=last_port,
        )


class LockTimeout(SbenvError):
    error_code = "REGISTRY_LOCK_TIMEOUT"
    exit_code = 10

    def __init__(self, lock_path: Path, timeout_seconds: float):
        super().__init__(
            f"timed out after {timeout_seconds:.1f}s waiting for registry lock {lock_path}",
            lock_path=lock_path,
            timeout_seconds=timeout_seconds,
        )


class ProcessSpawnFailed(SbenvError):
    """Daemon could not be started.

    ``phase`` is ``launch`` when the binary never ran and ``early-exit`` when it
    ran but exited inside the start grace window.
    """

    error_code = "PROC_SPAWN_FAILED"
    exit_code = 11

    def __init__(
        self,
        name: str,
        *,
        phase: str,
        reason: str = "",
        exit_code: int | None = None,
        log_path: Path | None = None,
    ):
        if phase == "launch":
            message = f"failed to launch daemon for {name}: {reason}"
        else:
            message = f"daemon for {name} exited during startup with code {exit_code}"
            if log_path is not None:
                message += f" (see {log_path})"
        super().__init__(
            message,
            name=name,
            phase=phase,
            reason=reason or None,
            process_exit_code=exit_code,
            log_path=log_path,
        )
        self.phase = phase
        self.process_exit_code = exit_code


class ProcessNotResponding(SbenvError):
    error_code = "PROC_NOT_RESPONDING"
    exit_code = 12

    def __init__(self, name: str, pid: int, timeout_seconds: float):
        super().__init__(
            f"daemon for {name} (PID: {pid}) survived SIGKILL for {timeout_seconds:.1f}s",
            name=name,
            pid=pid,
            timeout_seconds=timeout_seconds,
        )


class CorruptState(SbenvError):
    """Registry file cannot be parsed; requires manual recovery."""

    error_code = "REGISTRY_CORRUPT"
    exit_code = 13

    def __init__(self, path: Path, detail: str):
        super().__init__(
            f"registry {path} is corrupt ({detail}); fix or move it aside manually",
            path=path,
            detail=detail,
        )


class StorageError(SbenvError):
    """Filesystem failure wrapped with the operation and path involved."""

    error_code = "STORAGE_ERROR"
    exit_code = 14

    def __init__(self, operation: str, path: Path, error: OSError):
        super().__init__(
            f"{operation} failed for {path}: {error.strerror or error}",
            operation=operation,
            path=path,
        )
