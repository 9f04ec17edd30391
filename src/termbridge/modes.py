"""Session modes and the programs they launch."""

import json
import logging
import shlex
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger("termbridge.modes")

INITIAL_STATE_ENV = "CAUGHT_INIT"


class Mode(str, Enum):
    PRIMARY = "primary"
    RESTRICTED = "restricted"

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        """Map any client-supplied value onto a Mode.

        Unrecognized values select PRIMARY.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            if value is not None:
                logger.debug("Unknown mode %r, using %s", value, cls.PRIMARY.value)
            return cls.PRIMARY


@dataclass(frozen=True)
class ModeSpec:
    program: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @classmethod
    def from_command(
        cls,
        command: str,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> "ModeSpec":
        args = shlex.split(command)
        if not args:
            raise ValueError("Empty command")
        return cls(program=args[0], args=tuple(args[1:]), env=env or {}, cwd=cwd)


class ModeRegistry:
    """Read-only mapping from Mode to the program it runs.

    Built once at startup and shared by every session.
    """

    def __init__(self, specs: Mapping[Mode, ModeSpec]):
        missing = [m.value for m in Mode if m not in specs]
        if missing:
            raise ValueError(f"No program configured for mode(s): {', '.join(missing)}")
        self._specs = MappingProxyType(dict(specs))

    @classmethod
    def from_config(cls, sc: Any) -> "ModeRegistry":
        """Build the registry from a ServerConfig."""
        cwd = sc.working_dir or None
        return cls({
            Mode.PRIMARY: ModeSpec.from_command(
                sc.primary_command,
                env={"FORCE_COLOR": "3", "WEB_MODE": "1"},
                cwd=cwd,
            ),
            Mode.RESTRICTED: ModeSpec.from_command(
                sc.restricted_command,
                env={"FORCE_COLOR": "3"},
                cwd=cwd,
            ),
        })

    def __getitem__(self, mode: Mode) -> ModeSpec:
        return self._specs[Mode.parse(mode)]

    def __iter__(self):
        return iter(self._specs)

    def __len__(self) -> int:
        return len(self._specs)

    def resolve(self, value: Any) -> tuple[Mode, ModeSpec]:
        mode = Mode.parse(value)
        return mode, self._specs[mode]

    def launch_env(self, mode: Mode, initial_state: Any) -> dict[str, str]:
        """Environment overrides for one session's child process.

        Only the primary program receives the client's initial state.
        """
        env = dict(self[mode].env)
        if mode is Mode.PRIMARY:
            env[INITIAL_STATE_ENV] = json.dumps(initial_state, separators=(",", ":"))
        return env
