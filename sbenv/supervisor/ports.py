"""Collision-free port assignment for environments."""

from __future__ import annotations

import logging
import socket
from typing import Callable, Iterable

from sbenv.errors import PortExhausted
from sbenv.supervisor.models import EnvironmentRecord
from sbenv.supervisor.settings import MAX_PORT

logger = logging.getLogger("sbenv.supervisor.ports")

PROBE_HOST = "127.0.0.1"


def is_port_bindable(port: int, host: str = PROBE_HOST) -> bool:
    """Return True when the port can be bound right now on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
        return True


class PortAllocator:
    """Pick ports using the registry snapshot as the conflict domain.

    Must only be called from inside a registry transaction so the chosen port
    is persisted before any other invocation can scan.
    """

    def __init__(
        self,
        base_port: int = 8000,
        port_range: int = 1000,
        *,
        probe: Callable[[int], bool] | None = None,
    ) -> None:
        self.base_port = base_port
        self.last_port = min(base_port + port_range - 1, MAX_PORT)
        self._probe = probe or is_port_bindable

    def reserve(
        self,
        records: Iterable[EnvironmentRecord],
        preferred: int | None = None,
    ) -> int:
        taken = {record.port for record in records}
        if preferred is not None:
            if not 1 <= preferred <= MAX_PORT:
                raise ValueError(f"port out of range: {preferred}")
            if preferred not in taken:
                return preferred
            logger.info("Preferred port %s already assigned; scanning from %s", preferred, self.base_port)

        for candidate in range(self.base_port, self.last_port + 1):
            if candidate in taken:
                continue
            if not self._probe(candidate):
                logger.debug("Port %s held by a process outside the registry", candidate)
                continue
            return candidate
        raise PortExhausted(self.base_port, self.last_port)
