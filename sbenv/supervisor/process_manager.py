"""Start, stop and reconcile the SyftBox daemon for each environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx

from sbenv.contracts import (
    DAEMON_AUTH_VAR,
    DAEMON_CONFIG_VAR,
    DAEMON_DATA_DIR_VAR,
    DAEMON_PORT_VAR,
    DAEMON_SERVER_URL_VAR,
)
from sbenv.errors import AlreadyRunning, NotRunning, ProcessNotResponding, ProcessSpawnFailed
from .log_tailer import read_last_lines
from .models import ACTIVE_STATUSES, EnvironmentRecord, EnvironmentStatus
from .registry import EnvironmentRegistry
from .runner import ProcessHandle, SubprocessRunner
from .state import ProcessState

logger = logging.getLogger("sbenv.supervisor.process_manager")

START_MARKER = "--- sbenv: starting "
FAILURE_MARKERS = ("panic:", "fatal", "traceback (most recent call last)")
CRASH_SCAN_LINES = 50


def log_indicates_failure(record: EnvironmentRecord) -> bool:
    """Return True when the log since the last start contains a failure marker."""
    lines = read_last_lines(record.log_path, CRASH_SCAN_LINES)
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].startswith(START_MARKER):
            lines = lines[index + 1:]
            break
    return any(marker in line.lower() for line in lines for marker in FAILURE_MARKERS)


@dataclass
class StopResult:
    record: EnvironmentRecord
    already_stopped: bool = False
    forced: bool = False


class ProcessSupervisor:
    """Coordinates daemon processes against the persisted registry.

    The stored pid and status are never trusted on their own; every decision
    re-probes the OS process table first.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        runner: Optional[SubprocessRunner] = None,
        *,
        base_environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.registry = registry
        self.settings = registry.settings
        self.runner = runner or SubprocessRunner()
        self._base_environ = base_environ

    # -- daemon invocation contract --------------------------------------

    def daemon_command(self, record: EnvironmentRecord) -> list[str]:
        return list(self.settings.daemon_command)

    def daemon_environment(self, record: EnvironmentRecord) -> dict[str, str]:
        env = dict(os.environ if self._base_environ is None else self._base_environ)
        env.update(
            {
                DAEMON_PORT_VAR: str(record.port),
                DAEMON_AUTH_VAR: "0" if record.dev_mode else "1",
                DAEMON_CONFIG_VAR: str(record.config_path),
                DAEMON_DATA_DIR_VAR: str(record.root_dir),
                DAEMON_SERVER_URL_VAR: record.server_url,
            }
        )
        return env

    # -- reconciliation --------------------------------------------------

    def _reconcile(self, record: EnvironmentRecord) -> EnvironmentRecord:
        """Align status/pid with the process table; edits ``record`` in place."""
        if record.status in ACTIVE_STATUSES and not self.runner.probe(record.pid):
            exit_code = self.runner.exit_code(record.pid) if record.pid is not None else None
            crashed = (exit_code is not None and exit_code != 0) or log_indicates_failure(record)
            new_status = EnvironmentStatus.CRASHED if crashed else EnvironmentStatus.STOPPED
            logger.warning(
                "Daemon for %s (PID: %s) is gone; marking %s",
                record.name,
                record.pid,
                new_status.value,
            )
            if record.pid is not None:
                ProcessState.remove(record.pid)
            record.status = new_status
            record.pid = None
            record.last_exit_code = exit_code
        elif record.status not in ACTIVE_STATUSES and record.pid is not None:
            record.pid = None
        return record

    def _needs_reconcile(self, record: EnvironmentRecord) -> bool:
        if record.status in ACTIVE_STATUSES:
            return not self.runner.probe(record.pid)
        return record.pid is not None

    # -- operations ------------------------------------------------------

    def start(self, name: str) -> EnvironmentRecord:
        """Spawn the daemon and confirm it survives the start grace window."""
        launched: list[ProcessHandle] = []

        def _launch(draft: EnvironmentRecord) -> None:
            if draft.status in ACTIVE_STATUSES and self.runner.probe(draft.pid):
                raise AlreadyRunning(name, draft.pid)
            try:
                handle = self.runner.spawn(
                    self.daemon_command(draft),
                    env=self.daemon_environment(draft),
                    log_path=draft.log_path,
                    cwd=draft.root_dir,
                )
            except OSError as exc:
                raise ProcessSpawnFailed(name, phase="launch", reason=str(exc)) from exc
            launched.append(handle)
            draft.pid = handle.pid
            draft.status = EnvironmentStatus.STARTING
            draft.last_exit_code = None

        # Lock is released here; the grace wait must not block other environments.
        try:
            self.registry.update(name, _launch)
        except BaseException:
            if launched:
                orphan = launched[0].pid
                logger.error("Registry update failed after spawning %s; killing PID %s", name, orphan)
                self.runner.kill(orphan, self.settings.kill_timeout_seconds)
                ProcessState.remove(orphan)
            raise
        handle = launched[0]
        logger.info("Spawned daemon for %s (PID: %s)", name, handle.pid)

        exit_code = self.runner.wait(handle, self.settings.start_grace_seconds)
        if exit_code is not None:
            def _mark_crashed(draft: EnvironmentRecord) -> None:
                if draft.pid == handle.pid:
                    draft.status = EnvironmentStatus.CRASHED
                    draft.pid = None
                    draft.last_exit_code = exit_code

            record = self.registry.update(name, _mark_crashed)
            logger.error("Daemon for %s exited during startup with code %s", name, exit_code)
            raise ProcessSpawnFailed(
                name,
                phase="early-exit",
                exit_code=exit_code,
                log_path=record.log_path,
            )

        def _mark_running(draft: EnvironmentRecord) -> None:
            if draft.pid == handle.pid:
                draft.status = EnvironmentStatus.RUNNING

        record = self.registry.update(name, _mark_running)
        logger.info("Daemon for %s running on port %s", name, record.port)
        return record

    def _terminate(self, name: str, pid: int) -> bool:
        """Stop ``pid`` with escalation; return True when SIGKILL was needed."""
        if self.runner.terminate(pid, self.settings.stop_timeout_seconds):
            return False
        logger.warning(
            "Daemon for %s (PID: %s) ignored SIGTERM for %.1fs; sending SIGKILL",
            name,
            pid,
            self.settings.stop_timeout_seconds,
        )
        if not self.runner.kill(pid, self.settings.kill_timeout_seconds):
            raise ProcessNotResponding(name, pid, self.settings.kill_timeout_seconds)
        return True

    def stop(self, name: str) -> StopResult:
        record = self.registry.get(name)
        if record.status not in ACTIVE_STATUSES:
            raise NotRunning(name, record.status)
        pid = record.pid
        if not self.runner.probe(pid):
            settled = self.registry.update(name, self._reconcile)
            logger.info("Daemon for %s already exited; status now %s", name, settled.status.value)
            return StopResult(record=settled, already_stopped=True)

        logger.info("Stopping daemon for %s (PID: %s)", name, pid)
        forced = self._terminate(name, pid)
        exit_code = self.runner.exit_code(pid)
        ProcessState.remove(pid)

        def _mark_stopped(draft: EnvironmentRecord) -> None:
            if draft.pid == pid:
                draft.pid = None
                draft.status = EnvironmentStatus.STOPPED
                draft.last_exit_code = exit_code

        updated = self.registry.update(name, _mark_stopped)
        logger.info("Stopped daemon for %s", name)
        return StopResult(record=updated, forced=forced)

    def status(self, name: Optional[str] = None) -> list[EnvironmentRecord]:
        """Return records with status reconciled against the process table."""
        records = [self.registry.get(name)] if name is not None else self.registry.list()
        reconciled: list[EnvironmentRecord] = []
        for record in records:
            if self._needs_reconcile(record):
                record = self.registry.update(record.name, self._reconcile)
            reconciled.append(record)
        return reconciled

    def remove(self, name: str, *, force: bool = False) -> EnvironmentRecord:
        """Remove an environment, stopping its daemon first when forced."""

        def _terminate_for_remove(record: EnvironmentRecord) -> None:
            if record.pid is not None and self.runner.probe(record.pid):
                logger.info("Force-stopping daemon for %s before removal", name)
                self._terminate(name, record.pid)

        return self.registry.remove(
            name,
            force=force,
            settle=self._reconcile,
            terminate=_terminate_for_remove,
        )

    def probe_http(self, record: EnvironmentRecord) -> dict[str, object]:
        """Best-effort HTTP reachability check of the daemon's local port."""
        url = f"{record.client_url}/"
        try:
            response = httpx.get(url, timeout=self.settings.http_probe_timeout_seconds)
        except httpx.HTTPError as exc:
            logger.debug("HTTP probe failed for %s: %s", url, exc)
            return {"url": url, "reachable": False, "status_code": None}
        return {"url": url, "reachable": True, "status_code": response.status_code}
