"""Per-session activation: compute the variables a shell must export or unset.

A process cannot change its parent's environment, so activation is purely a
function from (registry, session environment) to directives. The session's own
``SBENV_ACTIVE`` variable is the only activation pointer; nothing is stored
centrally.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sbenv.contracts import ACTIVATION_KEYS, ACTIVE_ENV_VAR
from sbenv.errors import NoActiveEnvironment
from sbenv.supervisor.models import EnvironmentRecord
from sbenv.supervisor.registry import EnvironmentRegistry

logger = logging.getLogger("sbenv.activation")


@dataclass
class ActivationDirectives:
    """Flat set of assignments and unsets for an external shell to apply."""

    assignments: dict[str, str] = field(default_factory=dict)
    unsets: list[str] = field(default_factory=list)

    def render_posix(self) -> str:
        lines = [f"unset {key}" for key in self.unsets]
        lines.extend(f"export {key}={shlex.quote(value)}" for key, value in self.assignments.items())
        return "\n".join(lines)

    def to_payload(self) -> dict[str, object]:
        return {"set": dict(self.assignments), "unset": list(self.unsets)}

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), indent=2)


def directive_values(record: EnvironmentRecord) -> dict[str, str]:
    values = {
        ACTIVE_ENV_VAR: record.name,
        "SBENV_ROOT": str(record.root_dir),
        "SBENV_PORT": str(record.port),
        "SYFTBOX_DATA_DIR": str(record.root_dir),
        "SYFTBOX_CONFIG_PATH": str(record.config_path),
        "SYFTBOX_SERVER_URL": record.server_url,
        "SYFTBOX_CLIENT_URL": record.client_url,
    }
    return {key: values[key] for key in ACTIVATION_KEYS}


def active_name(session_env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the environment name the session points at, if any."""
    env = os.environ if session_env is None else session_env
    name = str(env.get(ACTIVE_ENV_VAR, "")).strip()
    return name or None


class ActivationController:
    def __init__(self, registry: EnvironmentRegistry) -> None:
        self.registry = registry

    def activate(
        self,
        name: str,
        session_env: Optional[Mapping[str, str]] = None,
    ) -> ActivationDirectives:
        """Bind the session to ``name``; a previous binding is simply replaced."""
        record = self.registry.get(name)
        previous = active_name(session_env)
        if previous and previous != name:
            logger.info("Switching session from %s to %s", previous, name)
        return ActivationDirectives(assignments=directive_values(record))

    def deactivate(self, session_env: Optional[Mapping[str, str]] = None) -> ActivationDirectives:
        if active_name(session_env) is None:
            raise NoActiveEnvironment()
        return ActivationDirectives(unsets=list(ACTIVATION_KEYS))

    def current(self, session_env: Optional[Mapping[str, str]] = None) -> EnvironmentRecord:
        """Return the active environment's record or raise NoActiveEnvironment."""
        name = active_name(session_env)
        if name is None:
            raise NoActiveEnvironment()
        return self.registry.get(name)
