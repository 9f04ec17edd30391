"""Configuration management for termbridge."""

import json
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any


def _default_config_dir() -> Path:
    """Get the default configuration directory."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        base = Path(xdg)
    else:
        base = Path.home() / ".config"
    return base / "termbridge"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    path: str = "/terminal"

    # Programs for each session mode
    primary_command: str = "node index.js"
    restricted_command: str = "node restricted-shell.js"
    working_dir: str = ""

    # Terminal defaults for new sessions
    term_name: str = "xterm-256color"
    cols: int = 120
    rows: int = 40

    handshake_timeout: float = 10.0  # seconds
    kill_grace: float = 2.0  # seconds between hangup and SIGKILL
    max_sessions: int = 0  # 0 = unlimited
    max_message_size: int = 1_048_576

    static_dir: str = ""
    tls: bool = False
    cert_fingerprint: str = ""


@dataclass
class ClientConfig:
    server_host: str = "localhost"
    server_port: int = 3000
    path: str = "/terminal"
    tls: bool = False
    cert_fingerprint: str = ""
    ca_cert_path: str = ""


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    @classmethod
    def load(cls, config_dir: Path | None = None) -> "Config":
        """Load configuration from disk, or return defaults."""
        config_dir = config_dir or _default_config_dir()
        config_file = config_dir / "config.json"
        if not config_file.exists():
            return cls()
        data = json.loads(config_file.read_text())
        server_data = data.get("server", {})
        client_data = data.get("client", {})
        return cls(
            server=ServerConfig(**{
                k: v for k, v in server_data.items()
                if k in ServerConfig.__dataclass_fields__
            }),
            client=ClientConfig(**{
                k: v for k, v in client_data.items()
                if k in ClientConfig.__dataclass_fields__
            }),
        )

    def save(self, config_dir: Path | None = None) -> Path:
        """Save configuration to disk."""
        config_dir = config_dir or _default_config_dir()
        config_dir.mkdir(parents=True, exist_ok=True)
        config_file = config_dir / "config.json"
        data: dict[str, Any] = {
            "server": asdict(self.server),
            "client": asdict(self.client),
        }
        config_file.write_text(json.dumps(data, indent=2) + "\n")
        config_file.chmod(0o600)
        return config_file

    @staticmethod
    def config_dir(override: Path | None = None) -> Path:
        return override or _default_config_dir()

    @staticmethod
    def cert_path(config_dir: Path | None = None) -> Path:
        return (config_dir or _default_config_dir()) / "server.crt"

    @staticmethod
    def key_path(config_dir: Path | None = None) -> Path:
        return (config_dir or _default_config_dir()) / "server.key"
