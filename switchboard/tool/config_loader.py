from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic
import yaml

from switchboard.constants import CONFIG_FILE_NAME, CONFIG_PATH_ENV, ENVIRONMENT_ENV

from .errors import InvalidDescriptor
from .types import ServerDescriptor

_LEVEL_ALIASES = {
    "TRACE": "DEBUG",
    "INFORMATION": "INFO",
    "WARN": "WARNING",
    "FATAL": "CRITICAL",
}
_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class LoggingConfig(pydantic.BaseModel):
    level: str = "INFO"
    console: bool = True
    file: Optional[str] = "logs/switchboard.log"
    structured: bool = True

    @pydantic.field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        upper = str(value).strip().upper()
        upper = _LEVEL_ALIASES.get(upper, upper)
        if upper not in _VALID_LEVELS:
            raise ValueError(f"level must be one of: {', '.join(_VALID_LEVELS)}")
        return upper


class AppConfig(pydantic.BaseModel):
    environment: str = "Development"
    logging: LoggingConfig = pydantic.Field(default_factory=LoggingConfig)
    servers: Dict[str, ServerDescriptor] = pydantic.Field(default_factory=dict)

    @property
    def enabled_servers(self) -> List[ServerDescriptor]:
        return [s for s in self.servers.values() if s.enabled]


def _find_upward(name: str, start: Path) -> Optional[Path]:
    for directory in (start, *start.parents):
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def _default_config_path() -> str:
    explicit = os.getenv(CONFIG_PATH_ENV)
    if explicit:
        return explicit
    found = _find_upward(CONFIG_FILE_NAME, Path.cwd().resolve())
    return str(found) if found else CONFIG_FILE_NAME


def _interpolate_env(value: Any) -> Any:
    # format: ${env:VAR}
    if isinstance(value, str) and value.startswith("${env:") and value.endswith("}"):
        var_name = value[len("${env:") : -1]
        return os.environ.get(var_name, value)
    return value


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a mapping object: {path}")
    return data


def _merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _server_entries(servers: Any) -> List[Dict[str, Any]]:
    if isinstance(servers, dict):
        entries = []
        for key, item in servers.items():
            if not isinstance(item, dict):
                raise ValueError(f"Server entry '{key}' must be a mapping")
            entries.append({"id": str(key), **item})
        return entries
    if isinstance(servers, list):
        for i, item in enumerate(servers):
            if not isinstance(item, dict):
                raise ValueError(f"Server entry at index {i} must be a mapping")
        return list(servers)
    raise ValueError("Config must contain 'servers' as a mapping or a list")


def parse_server(item: Dict[str, Any]) -> ServerDescriptor:
    server_id = item.get("id")
    args = item.get("args", item.get("arguments", []))
    env = item.get("env", {})

    if not isinstance(args, list):
        raise InvalidDescriptor(
            f"'args' for server '{server_id}' must be a list of strings", server_id=server_id
        )
    if not isinstance(env, dict):
        raise InvalidDescriptor(
            f"'env' for server '{server_id}' must be a mapping of strings",
            server_id=server_id,
        )

    fields = dict(item)
    fields.pop("arguments", None)
    fields["args"] = [str(_interpolate_env(a)) for a in args]
    fields["env"] = {str(k): str(_interpolate_env(v)) for k, v in env.items()}
    if "location" in fields:
        fields["location"] = str(_interpolate_env(fields["location"]))
    fields.setdefault("name", server_id)

    try:
        descriptor = ServerDescriptor(**fields)
    except pydantic.ValidationError as e:
        raise InvalidDescriptor(
            f"Invalid configuration for server '{server_id}': {e}", server_id=server_id
        ) from e
    return descriptor.validate_for_transport()


def load_servers(data: Dict[str, Any]) -> Dict[str, ServerDescriptor]:
    servers: Dict[str, ServerDescriptor] = {}
    for entry in _server_entries(data.get("servers")):
        descriptor = parse_server(entry)
        if descriptor.id in servers:
            raise InvalidDescriptor(
                f"Duplicate server id '{descriptor.id}'", server_id=descriptor.id
            )
        servers[descriptor.id] = descriptor
    if not servers:
        raise ValueError("At least one MCP server must be configured")
    return servers


def load_config(config_path: str | os.PathLike | None = None) -> AppConfig:
    """Load and validate the switchboard YAML configuration.

    An optional ``switchboard.<environment>.yaml`` next to the base file is
    merged over it, with the environment taken from SWITCHBOARD_ENVIRONMENT
    or the file's own ``environment`` key.
    """
    path = str(config_path or _default_config_path())
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    data = _read_yaml(path)
    environment = os.getenv(ENVIRONMENT_ENV) or data.get("environment") or "Development"

    base = Path(path)
    overlay_path = base.with_name(f"{base.stem}.{environment}{base.suffix}")
    if overlay_path.is_file():
        data = _merge(data, _read_yaml(str(overlay_path)))

    logging_section = data.get("logging") or {}
    if not isinstance(logging_section, dict):
        raise ValueError("'logging' must be a mapping")
    try:
        logging_config = LoggingConfig(**logging_section)
    except pydantic.ValidationError as e:
        raise ValueError(f"Invalid logging configuration: {e}") from e
    if logging_config.file is not None and not str(logging_config.file).strip():
        raise ValueError("logging.file is required when file logging is enabled")

    return AppConfig(
        environment=str(environment),
        logging=logging_config,
        servers=load_servers(data),
    )
