"""OS-level daemon process capability: spawn, probe and terminate by PID."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .state import ProcessState

logger = logging.getLogger("sbenv.supervisor.runner")

EXIT_POLL_INTERVAL_SECONDS = 0.1


def pid_exists(pid: Optional[int]) -> bool:
    """Check whether pid denotes a live process in the current process table.

    Children of this process that already exited are reaped here, otherwise
    they would linger as zombies and keep answering signal 0.
    """
    if pid is None or pid <= 0:
        return False
    try:
        reaped_pid, wait_status = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if reaped_pid == pid:
            ProcessState.record_exit(pid, os.waitstatus_to_exitcode(wait_status))
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _signal_process(pid: int, sig: int) -> None:
    """Signal the daemon's whole session when it leads one, else just the pid."""
    try:
        if os.getpgid(pid) == pid:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        pass


@dataclass
class ProcessHandle:
    """Transient association between a spawned pid and its Popen object."""

    pid: int
    process: Optional[subprocess.Popen] = None


class SubprocessRunner:
    """Run the external daemon as a detached child with output in a log file."""

    def spawn(
        self,
        command: Sequence[str],
        *,
        env: Mapping[str, str],
        log_path: Path,
        cwd: Path,
    ) -> ProcessHandle:
        """Launch ``command``; OSError propagates when the binary cannot run."""
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Running command: %s", " ".join(command))
        with open(log_path, "a", encoding="utf-8") as log_file:
            started = datetime.now(timezone.utc).isoformat()
            log_file.write(f"--- sbenv: starting {' '.join(command)} at {started} ---\n")
            log_file.flush()
            process = subprocess.Popen(
                list(command),
                cwd=str(cwd),
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=log_file,
                start_new_session=True,
            )
        return ProcessHandle(pid=process.pid, process=process)

    def wait(self, handle: ProcessHandle, timeout: float) -> Optional[int]:
        """Wait up to ``timeout`` seconds; return the exit code if it exited."""
        if handle.process is not None:
            try:
                exit_code = handle.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return None
            ProcessState.record_exit(handle.pid, exit_code)
            return exit_code
        if self._wait_for_exit(handle.pid, timeout):
            return ProcessState.get_exit(handle.pid)
        return None

    def probe(self, pid: Optional[int]) -> bool:
        return pid_exists(pid)

    def exit_code(self, pid: int) -> Optional[int]:
        """Exit code for ``pid`` if this invocation reaped it, else None."""
        return ProcessState.get_exit(pid)

    def terminate(self, pid: int, timeout: float) -> bool:
        """Send SIGTERM and wait; True once the process is gone."""
        _signal_process(pid, signal.SIGTERM)
        return self._wait_for_exit(pid, timeout)

    def kill(self, pid: int, timeout: float) -> bool:
        _signal_process(pid, signal.SIGKILL)
        return self._wait_for_exit(pid, timeout)

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while pid_exists(pid):
            if time.monotonic() >= deadline:
                return False
            time.sleep(EXIT_POLL_INTERVAL_SECONDS)
        return True
