# Exception taxonomy for mcplink
# ABOUTME: Every failure in the engine surfaces as one of these types
from typing import Any


class McpLinkError(Exception):
    """Base class for all mcplink errors."""


class ConfigError(McpLinkError, ValueError):
    """Config file is missing required fields or cannot be parsed."""


class SpawnError(McpLinkError):
    """The server process could not be started."""

    def __init__(self, server_name: str, message: str) -> None:
        super().__init__(f"Server '{server_name}': {message}")
        self.server_name = server_name


class InitializeError(McpLinkError):
    """The initialize handshake was rejected, timed out, or the process exited."""

    def __init__(self, server_name: str, message: str) -> None:
        super().__init__(f"Server '{server_name}' failed to initialize: {message}")
        self.server_name = server_name


class RequestTimeoutError(McpLinkError, TimeoutError):
    """No response arrived before the request deadline."""

    def __init__(self, server_name: str, method: str, timeout: float) -> None:
        super().__init__(
            f"Server '{server_name}' did not answer '{method}' within {timeout:g} seconds"
        )
        self.server_name = server_name
        self.method = method
        self.timeout = timeout


class ProtocolParseError(McpLinkError):
    """A line from the server is not a JSON-RPC object.

    ABOUTME: Raised and handled inside the framer only
    """

    def __init__(self, line: bytes, reason: str) -> None:
        preview = line[:200].decode("utf-8", errors="replace")
        super().__init__(f"Unparseable line ({reason}): {preview}")
        self.line = line
        self.reason = reason


class ServerNotConnectedError(McpLinkError, KeyError):
    """An operation named a server that is not connected."""

    def __init__(self, server_name: str) -> None:
        super().__init__(f"Server '{server_name}' is not connected")
        self.server_name = server_name

    def __str__(self) -> str:
        # KeyError would repr() the message otherwise
        return str(self.args[0])


class ToolNotFoundError(McpLinkError, KeyError):
    """No connected server advertises a tool with this name."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' not found on any connected server")
        self.tool_name = tool_name

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicateServerError(McpLinkError):
    """A connection with this name already exists."""

    def __init__(self, server_name: str) -> None:
        super().__init__(f"Server '{server_name}' is already connected")
        self.server_name = server_name


class NotStartedError(McpLinkError):
    """The connection has no live process input stream."""

    def __init__(self, server_name: str) -> None:
        super().__init__(f"Server '{server_name}' is not started")
        self.server_name = server_name


class ConnectionClosedError(McpLinkError):
    """The connection was torn down while a request was outstanding."""

    def __init__(self, server_name: str, reason: str = "connection closed") -> None:
        super().__init__(f"Server '{server_name}': {reason}")
        self.server_name = server_name
        self.reason = reason


class ServerError(McpLinkError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, server_name: str, code: int | None, message: str, data: Any = None) -> None:
        super().__init__(f"Server '{server_name}' returned error {code}: {message}")
        self.server_name = server_name
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_error_object(cls, server_name: str, error: Any) -> "ServerError":
        if isinstance(error, dict):
            return cls(
                server_name,
                error.get("code"),
                str(error.get("message", error)),
                error.get("data"),
            )
        return cls(server_name, None, str(error))
