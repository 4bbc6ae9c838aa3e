from pydantic import BaseModel
from typing import Optional, Any, Dict
from enum import Enum
from datetime import datetime
from pathlib import Path
import re

from sbenv.errors import InvalidName

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$"
_NAME_RE = re.compile(NAME_PATTERN)


def validate_name(name: str) -> str:
    """Return ``name`` unchanged or raise InvalidName."""
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InvalidName(str(name), NAME_PATTERN)
    return name


class EnvironmentStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


# Statuses that claim a live daemon process.
ACTIVE_STATUSES = frozenset({EnvironmentStatus.STARTING, EnvironmentStatus.RUNNING})


class EnvironmentRecord(BaseModel):
    name: str
    root_dir: Path
    port: int
    created_at: datetime
    dev_mode: bool = False
    server_url: str
    pid: Optional[int] = None
    status: EnvironmentStatus = EnvironmentStatus.STOPPED
    log_path: Path
    config_path: Path
    email: Optional[str] = None
    last_exit_code: Optional[int] = None

    @property
    def client_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def to_registry_entry(self) -> Dict[str, Any]:
        """Serialize without the name, which is the registry key."""
        return self.model_dump(mode="json", exclude={"name"})

    @classmethod
    def from_registry_entry(cls, name: str, entry: Dict[str, Any]) -> "EnvironmentRecord":
        return cls.model_validate({**entry, "name": name})
