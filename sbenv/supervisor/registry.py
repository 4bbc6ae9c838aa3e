"""Durable, lockable store of environment records.

The registry is a single JSON object mapping environment name to record. Every
mutation runs as one transaction under an exclusive advisory lock on a sidecar
file: lock, load, apply, write a temp file, rename over the original, unlock.
Readers never take the lock; the rename guarantees they only ever see a whole
snapshot.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from pydantic import ValidationError

from sbenv.errors import (
    CorruptState,
    EnvironmentRunning,
    LockTimeout,
    NameConflict,
    NotFound,
    StorageError,
)
from sbenv.supervisor.models import EnvironmentRecord, EnvironmentStatus, validate_name
from sbenv.supervisor.ports import PortAllocator
from sbenv.supervisor.settings import SbenvSettings

logger = logging.getLogger("sbenv.supervisor.registry")

LOCK_POLL_INTERVAL_SECONDS = 0.05
LOG_FILENAME = "syftbox.log"

Records = dict[str, EnvironmentRecord]
Mutator = Callable[[EnvironmentRecord], Optional[EnvironmentRecord]]


def _serialize(records: Records) -> str:
    payload = {name: record.to_registry_entry() for name, record in records.items()}
    return json.dumps(payload, indent=2) + "\n"


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a temp file beside ``path`` and rename it into place."""
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class EnvironmentRegistry:
    """Source of truth for environment names, ports and process status."""

    def __init__(
        self,
        settings: SbenvSettings,
        *,
        port_allocator: PortAllocator | None = None,
    ) -> None:
        self.settings = settings
        self.registry_path = settings.registry_path
        self.lock_path = settings.lock_path
        self.envs_dir = settings.envs_dir
        self.port_allocator = port_allocator or PortAllocator(
            settings.base_port, settings.port_range
        )

    # -- persistence -----------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.lock_path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StorageError("open registry lock", self.lock_path, exc) from exc
        timeout = self.settings.lock_timeout_seconds
        deadline = time.monotonic() + timeout
        with handle:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeout(self.lock_path, timeout) from None
                    time.sleep(LOCK_POLL_INTERVAL_SECONDS)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Records:
        try:
            text = self.registry_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageError("read registry", self.registry_path, exc) from exc
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CorruptState(self.registry_path, f"invalid JSON: {exc.msg} at line {exc.lineno}") from exc
        if not isinstance(raw, dict):
            raise CorruptState(self.registry_path, "top-level value is not an object")
        records: Records = {}
        for name, entry in raw.items():
            if not isinstance(entry, dict):
                raise CorruptState(self.registry_path, f"entry {name!r} is not an object")
            try:
                records[name] = EnvironmentRecord.from_registry_entry(name, entry)
            except ValidationError as exc:
                raise CorruptState(
                    self.registry_path,
                    f"entry {name!r} failed validation: {exc.error_count()} error(s)",
                ) from exc
        return records

    def _write(self, records: Records) -> None:
        try:
            _atomic_write_text(self.registry_path, _serialize(records))
        except OSError as exc:
            raise StorageError("write registry", self.registry_path, exc) from exc

    @contextmanager
    def transaction(self) -> Iterator[Records]:
        """Yield the current snapshot under lock and persist it on clean exit.

        An exception inside the block discards every change made to the
        snapshot.
        """
        with self._locked():
            records = self._read()
            original = _serialize(records)
            yield records
            updated = _serialize(records)
            if updated != original:
                self._write(records)

    # -- queries ---------------------------------------------------------

    def get(self, name: str) -> EnvironmentRecord:
        record = self._read().get(name)
        if record is None:
            raise NotFound(name)
        return record

    def list(self) -> list[EnvironmentRecord]:
        return list(self._read().values())

    # -- mutations -------------------------------------------------------

    def create(
        self,
        name: str,
        *,
        dev_mode: bool = False,
        server_url: str | None = None,
        email: str | None = None,
        preferred_port: int | None = None,
    ) -> EnvironmentRecord:
        """Create the directory skeleton and registry entry for ``name``."""
        validate_name(name)
        root_dir = self.envs_dir / name
        materialized = False
        try:
            with self.transaction() as records:
                if name in records:
                    raise NameConflict(name)
                if root_dir.exists():
                    raise NameConflict(name, root_dir=root_dir)
                port = self.port_allocator.reserve(records.values(), preferred=preferred_port)
                if server_url is None:
                    server_url = (
                        self.settings.dev_server_url if dev_mode else self.settings.default_server_url
                    )
                config_dir = root_dir / ".syftbox"
                record = EnvironmentRecord(
                    name=name,
                    root_dir=root_dir,
                    port=port,
                    created_at=datetime.now(timezone.utc),
                    dev_mode=dev_mode,
                    server_url=server_url,
                    log_path=config_dir / "logs" / LOG_FILENAME,
                    config_path=config_dir / "config.json",
                    email=email,
                )
                self._materialize(record)
                materialized = True
                records[name] = record
        except BaseException:
            if materialized:
                shutil.rmtree(root_dir, ignore_errors=True)
            raise
        logger.info("Created environment %s at %s (port %s)", name, root_dir, record.port)
        return record

    def _materialize(self, record: EnvironmentRecord) -> None:
        """Build the skeleton in a hidden staging dir, then rename it into place."""
        try:
            self.envs_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(
                tempfile.mkdtemp(prefix=f".{record.name}.", suffix=".staging", dir=self.envs_dir)
            )
        except OSError as exc:
            raise StorageError("prepare environment directory", self.envs_dir, exc) from exc
        try:
            (staging / "apps").mkdir()
            (staging / "datasites").mkdir()
            staged_config = staging / record.config_path.relative_to(record.root_dir)
            staged_log = staging / record.log_path.relative_to(record.root_dir)
            staged_log.parent.mkdir(parents=True)
            staged_log.touch()
            staged_config.write_text(json.dumps(self._daemon_config(record), indent=2), encoding="utf-8")
            os.rename(staging, record.root_dir)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise StorageError("create environment directory", record.root_dir, exc) from exc

    @staticmethod
    def _daemon_config(record: EnvironmentRecord) -> dict[str, object]:
        return {
            "email": record.email,
            "data_dir": str(record.root_dir),
            "server_url": record.server_url,
            "client_url": record.client_url,
            "dev_mode": record.dev_mode,
        }

    def remove(
        self,
        name: str,
        *,
        force: bool = False,
        settle: Callable[[EnvironmentRecord], EnvironmentRecord] | None = None,
        terminate: Callable[[EnvironmentRecord], None] | None = None,
    ) -> EnvironmentRecord:
        """Delete the environment tree and its entry inside one transaction.

        ``settle`` reconciles the stored status against the process table
        before the running guard is checked; ``terminate`` stops a live
        process when ``force`` is given. The tree is moved aside first and
        only deleted once the registry write has succeeded; a failed write
        moves it back.
        """
        detached: Path | None = None
        try:
            with self.transaction() as records:
                record = records.get(name)
                if record is None:
                    raise NotFound(name)
                if settle is not None:
                    record = settle(record.model_copy(deep=True))
                if record.status != EnvironmentStatus.STOPPED and not force:
                    raise EnvironmentRunning(name, record.status)
                if record.pid is not None and terminate is not None:
                    terminate(record)
                if record.root_dir.exists():
                    detached = self._detach(record.root_dir)
                del records[name]
        except BaseException:
            if detached is not None:
                self._reattach(detached, record.root_dir)
            raise
        if detached is not None:
            shutil.rmtree(detached, ignore_errors=True)
            if detached.exists():
                logger.warning("Could not fully delete %s; remove it manually", detached)
        logger.info("Removed environment %s (port %s released)", name, record.port)
        return record

    def _detach(self, root_dir: Path) -> Path:
        """Rename ``root_dir`` to a hidden sibling that no environment name can match."""
        try:
            placeholder = Path(
                tempfile.mkdtemp(prefix=f".{root_dir.name}.", suffix=".removing", dir=root_dir.parent)
            )
        except OSError as exc:
            raise StorageError("delete environment directory", root_dir, exc) from exc
        try:
            # Replaces the empty placeholder directory.
            os.rename(root_dir, placeholder)
        except OSError as exc:
            shutil.rmtree(placeholder, ignore_errors=True)
            raise StorageError("delete environment directory", root_dir, exc) from exc
        return placeholder

    @staticmethod
    def _reattach(detached: Path, root_dir: Path) -> None:
        try:
            os.rename(detached, root_dir)
        except OSError as exc:
            logger.error("Could not restore %s to %s: %s", detached, root_dir, exc)

    def update(self, name: str, mutator: Mutator) -> EnvironmentRecord:
        """Apply ``mutator`` to a copy of the record and persist the result.

        The mutator may edit the copy in place (returning None) or return a
        replacement. Raising inside the mutator aborts without writing.
        """
        with self.transaction() as records:
            current = records.get(name)
            if current is None:
                raise NotFound(name)
            draft = current.model_copy(deep=True)
            result = mutator(draft)
            updated = EnvironmentRecord.model_validate(
                (result if result is not None else draft).model_dump()
            )
            if updated.name != name:
                raise ValueError("update cannot rename an environment")
            if updated.port != current.port and any(
                other.port == updated.port for key, other in records.items() if key != name
            ):
                raise ValueError(f"port {updated.port} already assigned")
            records[name] = updated
        return updated
