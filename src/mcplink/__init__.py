# mcplink - stdio MCP client engine
# ABOUTME: Version information
__version__ = "0.1.0"

# ABOUTME: Export the engine: framer, connection, registry
# ABOUTME: Export data models, errors and config loading functions
from mcplink.config import load_config, load_descriptors, save_descriptors
from mcplink.connection import ServerConnection
from mcplink.errors import (
    ConfigError,
    ConnectionClosedError,
    DuplicateServerError,
    InitializeError,
    McpLinkError,
    NotStartedError,
    ProtocolParseError,
    RequestTimeoutError,
    ServerError,
    ServerNotConnectedError,
    SpawnError,
    ToolNotFoundError,
)
from mcplink.framing import LineFramer
from mcplink.models import Config, Resource, ServerDescriptor, Tool
from mcplink.registry import ConnectReport, EventKind, ServerEvent, ServerRegistry

__all__ = [
    "__version__",
    "Config",
    "ServerDescriptor",
    "Tool",
    "Resource",
    "LineFramer",
    "ServerConnection",
    "ServerRegistry",
    "ConnectReport",
    "EventKind",
    "ServerEvent",
    "load_config",
    "load_descriptors",
    "save_descriptors",
    "McpLinkError",
    "ConfigError",
    "SpawnError",
    "InitializeError",
    "RequestTimeoutError",
    "ProtocolParseError",
    "ServerNotConnectedError",
    "ToolNotFoundError",
    "DuplicateServerError",
    "NotStartedError",
    "ConnectionClosedError",
    "ServerError",
]
