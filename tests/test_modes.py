"""Tests for session modes and the mode registry."""

import json

import pytest

from termbridge.config import ServerConfig
from termbridge.modes import INITIAL_STATE_ENV, Mode, ModeRegistry, ModeSpec


@pytest.mark.parametrize("value, expected", [
    ("primary", Mode.PRIMARY),
    ("restricted", Mode.RESTRICTED),
    (Mode.RESTRICTED, Mode.RESTRICTED),
    ("shell", Mode.PRIMARY),
    ("", Mode.PRIMARY),
    (None, Mode.PRIMARY),
    (42, Mode.PRIMARY),
    ([1], Mode.PRIMARY),
])
def test_mode_parse(value, expected):
    assert Mode.parse(value) is expected


def test_mode_spec_from_command():
    spec = ModeSpec.from_command("node 'my app.js' --web", env={"A": "1"}, cwd="/tmp")
    assert spec.program == "node"
    assert spec.args == ("my app.js", "--web")
    assert spec.env == {"A": "1"}
    assert spec.cwd == "/tmp"


def test_mode_spec_is_immutable():
    spec = ModeSpec(program="sh", args=["-c", "true"], env={"A": "1"})
    assert spec.args == ("-c", "true")
    with pytest.raises(TypeError):
        spec.env["B"] = "2"


def test_mode_spec_rejects_empty_command():
    with pytest.raises(ValueError):
        ModeSpec.from_command("   ")


def test_registry_requires_every_mode():
    with pytest.raises(ValueError):
        ModeRegistry({Mode.PRIMARY: ModeSpec("sh")})


def test_registry_from_config():
    sc = ServerConfig(
        primary_command="python3 app.py",
        restricted_command="bash --restricted",
        working_dir="/srv/app",
    )
    registry = ModeRegistry.from_config(sc)
    assert len(registry) == 2
    assert registry[Mode.PRIMARY].program == "python3"
    assert registry[Mode.PRIMARY].args == ("app.py",)
    assert registry[Mode.RESTRICTED].args == ("--restricted",)
    assert registry[Mode.RESTRICTED].cwd == "/srv/app"


def test_registry_resolve_unknown_falls_back():
    registry = ModeRegistry.from_config(ServerConfig())
    mode, spec = registry.resolve("bogus")
    assert mode is Mode.PRIMARY
    assert spec is registry[Mode.PRIMARY]


def test_launch_env_primary_carries_state():
    registry = ModeRegistry.from_config(ServerConfig())
    env = registry.launch_env(Mode.PRIMARY, [1, 25])
    assert env["WEB_MODE"] == "1"
    assert env["FORCE_COLOR"] == "3"
    assert json.loads(env[INITIAL_STATE_ENV]) == [1, 25]
    assert env[INITIAL_STATE_ENV] == "[1,25]"


def test_launch_env_restricted_has_no_state():
    registry = ModeRegistry.from_config(ServerConfig())
    env = registry.launch_env(Mode.RESTRICTED, [1, 25])
    assert INITIAL_STATE_ENV not in env
    assert "WEB_MODE" not in env
    assert env["FORCE_COLOR"] == "3"


def test_launch_env_does_not_mutate_template():
    registry = ModeRegistry.from_config(ServerConfig())
    registry.launch_env(Mode.PRIMARY, {"x": 1})
    assert INITIAL_STATE_ENV not in registry[Mode.PRIMARY].env
