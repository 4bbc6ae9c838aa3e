"""Read and follow daemon log files recorded in the registry."""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import BinaryIO, Callable, Iterator

from .registry import EnvironmentRegistry

logger = logging.getLogger("sbenv.supervisor.log_tailer")

BLOCK_SIZE = 4096
FOLLOW_POLL_INTERVAL_SECONDS = 0.25


def _decode(raw: bytes) -> str:
    return raw.rstrip(b"\r").decode("utf-8", errors="replace")


def _tail(handle: BinaryIO, last_n: int) -> list[str]:
    """Return the final ``last_n`` lines by scanning backward from EOF.

    Leaves the handle positioned at the end of the file.
    """
    end = handle.seek(0, os.SEEK_END)
    if last_n <= 0:
        return []
    position = end
    chunks: list[bytes] = []
    newlines = 0
    # One extra newline is needed when the file ends with one.
    while position > 0 and newlines <= last_n:
        read_size = min(BLOCK_SIZE, position)
        position -= read_size
        handle.seek(position)
        chunk = handle.read(read_size)
        chunks.append(chunk)
        newlines += chunk.count(b"\n")
    handle.seek(end)
    data = b"".join(reversed(chunks))
    lines = data.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return [_decode(line) for line in lines[-last_n:]]


def read_last_lines(path: Path, last_n: int) -> list[str]:
    """Return up to ``last_n`` trailing lines of ``path`` in original order."""
    try:
        handle = path.open("rb")
    except FileNotFoundError:
        return []
    with handle:
        return _tail(handle, last_n)


def follow_lines(
    path: Path,
    last_n: int = 10,
    *,
    should_stop: Callable[[], bool] | None = None,
    poll_interval: float = FOLLOW_POLL_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """Yield the last ``last_n`` lines, then every line appended afterwards.

    Runs until ``should_stop`` returns True or the consumer stops iterating
    (KeyboardInterrupt, ``close()``). The file handle is closed on every exit
    path. A truncated file is re-read from the start.
    """
    def stopped() -> bool:
        return should_stop is not None and should_stop()

    while not path.exists():
        if stopped():
            return
        sleep(poll_interval)

    with path.open("rb") as handle:
        for line in _tail(handle, last_n):
            yield line
        position = handle.tell()
        pending = b""
        while True:
            chunk = handle.read()
            if chunk:
                position += len(chunk)
                pending += chunk
                *complete, pending = pending.split(b"\n")
                for raw in complete:
                    yield _decode(raw)
                continue
            if stopped():
                break
            try:
                size = os.fstat(handle.fileno()).st_size
            except OSError:
                size = position
            if size < position:
                logger.info("Log file %s was truncated; reading from start", path)
                handle.seek(0)
                position = 0
                pending = b""
            sleep(poll_interval)
        if pending:
            yield _decode(pending)


class LogTailer:
    """Registry-aware front end over :func:`read_last_lines` and :func:`follow_lines`."""

    def __init__(self, registry: EnvironmentRegistry) -> None:
        self.registry = registry

    def read(self, name: str, last_n: int = 10) -> list[str]:
        record = self.registry.get(name)
        return read_last_lines(record.log_path, last_n)

    def follow(
        self,
        name: str,
        last_n: int = 10,
        *,
        should_stop: Callable[[], bool] | None = None,
        poll_interval: float = FOLLOW_POLL_INTERVAL_SECONDS,
    ) -> Iterator[str]:
        record = self.registry.get(name)
        return follow_lines(
            record.log_path,
            last_n,
            should_stop=should_stop,
            poll_interval=poll_interval,
        )
