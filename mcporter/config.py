"""
MCPorter configuration - declarative server definitions.

Servers are described in a YAML or JSON file and/or passed inline when the
runtime is created. Inline definitions override file definitions by name.

Example file (``config/mcporter.json`` or ``mcporter.yaml``)::

    servers:
      context7:
        command: npx
        args: ["-y", "@upstash/context7-mcp"]
      figma:
        command: bunx
        args: ["cursor-talk-to-figma-mcp@latest"]
        session:
          handshake_tool: join_channel
          channel_argument: channel
"""

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from mcporter.errors import ConfigError

CONFIG_ENV_VAR = "MCPORTER_CONFIG"
CONFIG_CANDIDATES = (
    Path("config") / "mcporter.json",
    Path("mcporter.json"),
    Path("mcporter.yaml"),
    Path("mcporter.yml"),
)


class LaunchKind(str, Enum):
    """How a server is reached."""

    SUBPROCESS = "subprocess"
    PRECONNECTED = "preconnected"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            aliases = {
                "stdio": cls.SUBPROCESS,
                "process": cls.SUBPROCESS,
                "connection": cls.PRECONNECTED,
                "websocket": cls.PRECONNECTED,
            }
            return aliases.get(value.lower())
        return None


class SessionConfig(BaseModel):
    """Handshake settings for a session-scoped server."""

    model_config = ConfigDict(frozen=True)

    handshake_tool: str = "join_channel"
    channel_argument: str = "channel"
    channel_prefix: str = "channel"


class ServerSpec(BaseModel):
    """Configuration for a single tool server."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, extra="ignore")

    name: str
    kind: LaunchKind = LaunchKind.SUBPROCESS
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    connection: Optional[Any] = Field(default=None, exclude=True, repr=False)
    session: Optional[SessionConfig] = None
    concurrent: bool = True
    discover: bool = True
    timeout: Optional[float] = None
    enabled: bool = True
    description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        # Nested form: command: {kind, command, args, cwd}
        command = data.get("command")
        if isinstance(command, dict):
            data["command"] = command.get("command")
            for key in ("args", "cwd", "env", "kind"):
                if key in command and key not in data:
                    data[key] = command[key]

        for alias, key in (("arguments", "args"), ("workingDirectory", "cwd"), ("working_directory", "cwd")):
            if alias in data and key not in data:
                data[key] = data.pop(alias)

        if data.get("args") is not None:
            data["args"] = [str(a) for a in data["args"]]

        if data.pop("session_scoped", False) and not data.get("session"):
            data["session"] = {}
        if data.get("session") is True:
            data["session"] = {}
        elif data.get("session") is False:
            data["session"] = None

        if "kind" not in data and data.get("connection") is not None:
            data["kind"] = LaunchKind.PRECONNECTED
        return data

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("server name must not be empty")
        return value

    @field_validator("env")
    @classmethod
    def _expand_env(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {k: os.path.expandvars(str(v)) for k, v in value.items()}

    @model_validator(mode="after")
    def _check_launch(self) -> "ServerSpec":
        if self.kind is LaunchKind.SUBPROCESS and not self.command:
            raise ValueError(f"server '{self.name}' needs a launch command")
        if self.kind is LaunchKind.PRECONNECTED and self.connection is None:
            raise ValueError(f"server '{self.name}' needs a connection handle")
        return self

    @property
    def session_scoped(self) -> bool:
        return self.session is not None

    def command_line(self) -> List[str]:
        """Full argv for subprocess servers."""
        return [self.command] + list(self.args) if self.command else []


class RuntimeConfig(BaseModel):
    """Resolved set of servers a runtime binds, in configuration order."""

    model_config = ConfigDict(frozen=True)

    servers: Dict[str, ServerSpec] = Field(default_factory=dict)

    def names(self) -> List[str]:
        return list(self.servers)


ServerEntries = Union[Dict[str, Any], Iterable[Any]]


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    servers: Optional[ServerEntries] = None,
) -> RuntimeConfig:
    """
    Resolve the server set from a config file and inline overrides.

    Args:
        config_path: YAML or JSON file with a ``servers`` (or ``mcpServers``) section.
        servers: Inline server definitions; these replace file entries of the same name.

    Raises:
        ConfigError: On unreadable files, malformed specs or duplicate names.
    """
    specs: Dict[str, ServerSpec] = {}

    if config_path is not None:
        path = Path(config_path)
        data = _load_yaml(path)
        section = data.get("servers", data.get("mcpServers", {}))
        specs.update(_parse_servers(section or {}, source=str(path)))

    if servers:
        specs.update(_parse_servers(servers, source="inline servers"))

    enabled = {name: spec for name, spec in specs.items() if spec.enabled}
    return RuntimeConfig(servers=enabled)


def find_config_file(start: Optional[Path] = None) -> Optional[Path]:
    """Find a config file via ``MCPORTER_CONFIG`` or by walking up the directory tree."""
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)

    current = (start or Path.cwd()).resolve()
    while True:
        for candidate in CONFIG_CANDIDATES:
            path = current / candidate
            if path.exists():
                return path
        if current == current.parent:
            return None
        current = current.parent


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML (or JSON) config file."""
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _parse_servers(entries: ServerEntries, source: str) -> Dict[str, ServerSpec]:
    specs: Dict[str, ServerSpec] = {}

    if isinstance(entries, dict):
        # The key is the server name; an inner name may only repeat it.
        for name, entry in entries.items():
            if isinstance(entry, ServerSpec):
                inner = entry.name
            elif isinstance(entry, dict):
                inner = entry.get("name", name)
            else:
                raise ConfigError(f"Server '{name}' in {source} must be a mapping")
            if inner != name:
                raise ConfigError(f"Server '{name}' in {source} declares a different name '{inner}'")
            specs[name] = entry if isinstance(entry, ServerSpec) else _build_spec({**entry, "name": name}, source)
        return specs

    if isinstance(entries, (str, bytes)) or not isinstance(entries, Iterable):
        raise ConfigError(f"Servers in {source} must be a mapping or a list")

    for entry in entries:
        spec = entry if isinstance(entry, ServerSpec) else _build_spec(entry, source)
        if spec.name in specs:
            raise ConfigError(f"Duplicate server name '{spec.name}' in {source}")
        specs[spec.name] = spec
    return specs


def _build_spec(entry: Any, source: str) -> ServerSpec:
    if not isinstance(entry, dict):
        raise ConfigError(f"Server entry in {source} must be a mapping, got {type(entry).__name__}")
    try:
        return ServerSpec.model_validate(entry)
    except ValidationError as e:
        label = entry.get("name") or "<unnamed>"
        raise ConfigError(f"Invalid server '{label}' in {source}: {e}")
