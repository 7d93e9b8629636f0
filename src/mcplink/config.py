# Configuration loading and saving for mcplink
# ABOUTME: Project-level config overrides user-level config, server by server
# ABOUTME: .toml paths use tomli/tomli_w, everything else is JSON
import json
import logging
from pathlib import Path
from typing import Any, Iterable

import tomli
import tomli_w

from mcplink.errors import ConfigError
from mcplink.models import Config, ServerDescriptor
from mcplink.utils import create_backup, expand_env_vars

logger = logging.getLogger(__name__)

# ABOUTME: Directory holding mcplink config, both in the project and in $HOME
CONFIG_DIR_NAME = ".mcplink"
CONFIG_FILE_NAME = "mcp.json"

# Top-level keys that may hold the server table, in lookup order
SERVER_KEYS = ("mcpServers", "servers", "mcp_servers")


def get_user_config_path() -> Path:
    """Return ~/.mcplink/mcp.json (may not exist)."""
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def get_project_config_path(project_dir: Path | None = None) -> Path:
    """Return <project>/.mcplink/mcp.json, defaulting to the working directory."""
    return (project_dir or Path.cwd()) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def _is_toml(path: Path) -> bool:
    return path.suffix.lower() == ".toml"


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a JSON or TOML config file into a dict.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If the file can't be parsed or isn't a table/object
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        if _is_toml(path):
            with open(path, "rb") as f:
                data = tomli.load(f)
        else:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
    except tomli.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config in {path} must be an object, got {type(data).__name__}")
    return data


def _raw_servers(data: dict[str, Any], source: Path | str) -> dict[str, dict[str, Any]]:
    """Extract the server table as name -> raw settings.

    ABOUTME: Accepts a mapping keyed by name, or a list of objects carrying 'name'
    """
    section: Any = None
    for key in SERVER_KEYS:
        if key in data:
            section = data[key]
            break

    if section is None:
        return {}

    if isinstance(section, dict):
        servers = section
    elif isinstance(section, list):
        servers = {}
        for entry in section:
            if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
                raise ConfigError(f"Server entry in {source} needs a 'name': {entry!r}")
            servers[entry["name"]] = entry
    else:
        raise ConfigError(f"Server section in {source} must be an object or a list")

    for name, settings in servers.items():
        if not isinstance(settings, dict):
            raise ConfigError(f"Server '{name}' in {source} must be an object")
    return dict(servers)


def descriptor_from_dict(name: str, data: dict[str, Any]) -> ServerDescriptor:
    """Build a ServerDescriptor from raw config settings.

    ABOUTME: Expands ${VAR} references in command, args and env values
    ABOUTME: Non-stdio entries (type other than 'stdio') are rejected

    Raises:
        ConfigError: If required fields are missing or have the wrong type
    """
    server_type = data.get("type", "stdio")
    if server_type != "stdio":
        raise ConfigError(f"Server '{name}' has unsupported type '{server_type}'. Only 'stdio' is supported.")

    command = data.get("command")
    if not isinstance(command, str) or not command:
        raise ConfigError(f"Server '{name}' missing required 'command' field")

    args = data.get("args", [])
    if not isinstance(args, list):
        raise ConfigError(f"Server '{name}' 'args' must be a list")

    env = data.get("env", {})
    if not isinstance(env, dict):
        raise ConfigError(f"Server '{name}' 'env' must be an object")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigError(f"Server '{name}' 'enabled' must be true or false")

    return ServerDescriptor(
        name=name,
        command=expand_env_vars(command),
        args=tuple(expand_env_vars(str(arg)) for arg in args),
        env={str(key): expand_env_vars(str(value)) for key, value in env.items()},
        enabled=enabled,
    )


def descriptor_to_dict(server: ServerDescriptor) -> dict[str, Any]:
    """Convert a descriptor to its config-file form.

    ABOUTME: Omits empty args/env and the default enabled flag
    """
    result: dict[str, Any] = {"command": server.command}
    if server.args:
        result["args"] = list(server.args)
    if server.env:
        result["env"] = dict(server.env)
    if server.enabled is False:
        result["enabled"] = False
    return result


def load_config(path: Path) -> Config:
    """Load the servers defined in one config file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigError: If the file or any server entry is invalid
    """
    data = read_config_file(path)
    servers = {
        name: descriptor_from_dict(name, settings)
        for name, settings in _raw_servers(data, path).items()
    }
    return Config(servers=servers)


def load_descriptors(
    project_path: Path | None = None,
    user_path: Path | None = None,
) -> list[ServerDescriptor]:
    """Load and merge project-level and user-level server descriptors.

    ABOUTME: Project entries win on name clashes and come first in the result
    ABOUTME: A broken project file is an error; a broken user file is logged and skipped

    Args:
        project_path: Project config (default: ./.mcplink/mcp.json)
        user_path: User config (default: ~/.mcplink/mcp.json)

    Returns:
        Ordered list of descriptors

    Raises:
        ConfigError: If the project config is invalid
    """
    project_path = project_path or get_project_config_path()
    user_path = user_path or get_user_config_path()

    merged = Config()

    if project_path.exists():
        merged.servers.update(load_config(project_path).servers)
        logger.debug(f"Loaded {len(merged.servers)} server(s) from {project_path}")

    if user_path.exists() and user_path.resolve() != project_path.resolve():
        try:
            user_servers = load_config(user_path).servers
        except ConfigError as e:
            logger.warning(f"Ignoring user config {user_path}: {e}")
            user_servers = {}
        for name, server in user_servers.items():
            if name not in merged.servers:
                merged.servers[name] = server

    return list(merged.servers.values())


def _write_servers(path: Path, servers: dict[str, dict[str, Any]], backup_dir: Path | None) -> None:
    """Replace the server table in path, keeping every other top-level key.

    ABOUTME: The table is written back under the key and in the shape it was read from
    """
    document: dict[str, Any] = {}
    if path.exists():
        document = read_config_file(path)
        create_backup(path, backup_dir)

    default_key = "mcp_servers" if _is_toml(path) else "mcpServers"
    key = next((key for key in SERVER_KEYS if key in document), default_key)
    if isinstance(document.get(key), list):
        document[key] = [{**settings, "name": name} for name, settings in servers.items()]
    else:
        document[key] = servers

    path.parent.mkdir(parents=True, exist_ok=True)

    if _is_toml(path):
        with open(path, "wb") as f:
            tomli_w.dump(document, f)
    else:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.write("\n")


def save_descriptors(path: Path, descriptors: Iterable[ServerDescriptor], backup_dir: Path | None = None) -> None:
    """Write descriptors to a config file, replacing only its server table.

    ABOUTME: Backs up an existing file first (see mcplink.utils.backup)
    ABOUTME: Suitable as a ServerRegistry save hook via functools.partial

    Raises:
        ConfigError: If the existing file can't be parsed
        OSError: If file cannot be written
    """
    servers = {server.name: descriptor_to_dict(server) for server in descriptors}
    _write_servers(path, servers, backup_dir)
    logger.info(f"Saved {len(servers)} server(s) to {path}")


def add_server(path: Path, server: ServerDescriptor, backup_dir: Path | None = None) -> bool:
    """Add or replace one server in a config file.

    ABOUTME: Edits the raw table so other entries keep their ${VAR} references

    Returns:
        True if an existing entry was replaced
    """
    servers = _raw_servers(read_config_file(path), path) if path.exists() else {}
    replaced = server.name in servers
    servers[server.name] = descriptor_to_dict(server)
    _write_servers(path, servers, backup_dir)
    return replaced


def remove_server(path: Path, server_name: str, backup_dir: Path | None = None) -> bool:
    """Remove a server from a config file.

    Returns:
        True if server was removed, False if not found

    Raises:
        FileNotFoundError: If config file doesn't exist
    """
    servers = _raw_servers(read_config_file(path), path)
    if server_name not in servers:
        return False
    del servers[server_name]
    _write_servers(path, servers, backup_dir)
    return True
