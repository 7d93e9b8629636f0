# Registry of live MCP server connections
# ABOUTME: Only fully handshaken connections are ever visible here
# ABOUTME: Fan-out operations isolate each server's failure from the rest
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from mcplink.connection import DEFAULT_REQUEST_TIMEOUT, NotificationHandler, ServerConnection, StderrSink
from mcplink.errors import (
    ConfigError,
    ConnectionClosedError,
    DuplicateServerError,
    ServerNotConnectedError,
    ToolNotFoundError,
)
from mcplink.models import Resource, ServerDescriptor, Tool

logger = logging.getLogger(__name__)

R = TypeVar("R")

SaveHook = Callable[[list[ServerDescriptor]], None]

# Tools may be addressed as mcp__<server>__<tool>
TOOL_NAME_PREFIX = "mcp__"


def qualified_tool_name(server_name: str, tool_name: str) -> str:
    return f"{TOOL_NAME_PREFIX}{server_name}__{tool_name}"


class EventKind(str, Enum):
    """Topology changes reported to registry listeners."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerEvent:
    kind: EventKind
    server_name: str
    error: BaseException | None = None


Listener = Callable[[ServerEvent], None]


@dataclass
class ConnectReport:
    """Report from connect_all.

    ABOUTME: Failures are non-fatal; every descriptor is attempted
    """
    connected: list[str] = field(default_factory=list)
    failed: dict[str, BaseException] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    def add_failure(self, server_name: str, error: BaseException) -> None:
        self.failed[server_name] = error

    @property
    def ok(self) -> bool:
        return not self.failed


class ServerRegistry:
    """Owns the set of active server connections, keyed by name.

    ABOUTME: Constructed once by the host and passed to whatever needs it
    ABOUTME: Listeners learn about connects/disconnects without polling

    All mutation happens on the running event loop, which serializes access
    to the connection map. A name is reserved while its connect() is in
    flight so two concurrent connects for it can't both succeed.

    Example usage:
        async with ServerRegistry() as registry:
            report = await registry.connect_all(load_descriptors())
            tools = await registry.get_all_tools()

    Args:
        request_timeout: Per-request deadline handed to every connection
        stderr_sink: Receives (server_name, line) for child stderr output
        on_notification: Receives (server_name, notification) from any server
        save_hook: Persists descriptor updates (see save())
    """

    def __init__(
        self,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        stderr_sink: StderrSink | None = None,
        on_notification: NotificationHandler | None = None,
        save_hook: SaveHook | None = None,
    ) -> None:
        self.request_timeout = request_timeout
        self._stderr_sink = stderr_sink
        self._on_notification = on_notification
        self._save_hook = save_hook
        self._connections: dict[str, ServerConnection] = {}
        self._connecting: set[str] = set()
        # Every descriptor seen by connect/connect_all/enable, connected or not
        self._descriptors: dict[str, ServerDescriptor] = {}
        self._listeners: list[Listener] = []

    async def __aenter__(self) -> "ServerRegistry":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect_all()

    # Listeners

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: EventKind, server_name: str, error: BaseException | None = None) -> None:
        event = ServerEvent(kind=kind, server_name=server_name, error=error)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Registry listener failed on {kind.value} '{server_name}': {e}")

    # Connect / disconnect

    def _create_connection(self, descriptor: ServerDescriptor) -> ServerConnection:
        return ServerConnection(
            descriptor,
            request_timeout=self.request_timeout,
            stderr_sink=self._stderr_sink,
            on_exit=self._on_connection_exit,
            on_notification=self._on_notification,
        )

    async def connect(self, descriptor: ServerDescriptor) -> ServerConnection:
        """Start a connection and register it once the handshake succeeds.

        Raises:
            DuplicateServerError: The name is connected or being connected
            SpawnError: The process could not be started
            InitializeError: The handshake failed
        """
        name = descriptor.name
        if name in self._connections or name in self._connecting:
            raise DuplicateServerError(name)

        self._descriptors[name] = descriptor
        self._connecting.add(name)
        try:
            connection = self._create_connection(descriptor)
            try:
                await connection.start()
            except Exception as e:
                self._emit(EventKind.FAILED, name, e)
                raise
        finally:
            self._connecting.discard(name)

        self._connections[name] = connection
        self._emit(EventKind.CONNECTED, name)
        return connection

    async def connect_all(self, descriptors: Iterable[ServerDescriptor]) -> ConnectReport:
        """Connect every enabled descriptor concurrently.

        ABOUTME: Descriptors with enabled=False are skipped
        ABOUTME: One server failing never stops the others from being attempted
        """
        report = ConnectReport()
        to_connect: list[ServerDescriptor] = []
        for descriptor in descriptors:
            if descriptor.enabled is False:
                self._descriptors[descriptor.name] = descriptor
                report.skipped.append(descriptor.name)
            else:
                to_connect.append(descriptor)

        results = await asyncio.gather(
            *(self.connect(descriptor) for descriptor in to_connect),
            return_exceptions=True,
        )
        for descriptor, result in zip(to_connect, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to connect to MCP server '{descriptor.name}': {result}")
                report.add_failure(descriptor.name, result)
            else:
                report.connected.append(descriptor.name)

        logger.info(
            f"Connected {len(report.connected)}/{len(to_connect)} MCP server(s)"
            + (f", {len(report.skipped)} disabled" if report.skipped else "")
        )
        return report

    async def disconnect(self, name: str) -> bool:
        """Stop and unregister a server.

        Returns:
            True if the server was connected, False if the name is unknown
        """
        connection = self._connections.pop(name, None)
        if connection is None:
            return False
        try:
            await connection.stop()
        finally:
            self._emit(EventKind.DISCONNECTED, name)
        return True

    async def disconnect_all(self) -> dict[str, BaseException]:
        """Stop every server, even if some of them fail to stop.

        Returns:
            Mapping of server name to the error its stop raised (empty if clean)
        """
        names = list(self._connections)
        results = await asyncio.gather(
            *(self.disconnect(name) for name in names),
            return_exceptions=True,
        )
        errors: dict[str, BaseException] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"Error while disconnecting MCP server '{name}': {result}")
                errors[name] = result
        return errors

    async def enable(self, descriptor: ServerDescriptor) -> ServerConnection:
        """Mark a server enabled, persist that, and connect it.

        ABOUTME: The enabled flag is saved before connecting, so a failed connect stays enabled
        ABOUTME: An already connected server is left running

        Raises:
            DuplicateServerError: A connect for this name is in flight
            SpawnError: The process could not be started
            InitializeError: The handshake failed
        """
        descriptor = replace(descriptor, enabled=True)
        self._descriptors[descriptor.name] = descriptor
        self._persist()

        connection = self._connections.get(descriptor.name)
        if connection is not None:
            return connection
        return await self.connect(descriptor)

    async def disable(self, name: str) -> bool:
        """Mark a known server disabled, persist that, and disconnect it.

        Returns:
            True if the server was connected

        Raises:
            ServerNotConnectedError: The registry has never seen this name
        """
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise ServerNotConnectedError(name)
        self._descriptors[name] = replace(descriptor, enabled=False)
        self._persist()
        return await self.disconnect(name)

    def _on_connection_exit(self, connection: ServerConnection) -> None:
        if self._connections.get(connection.name) is not connection:
            return
        del self._connections[connection.name]
        reason = f"server process exited with code {connection.returncode}"
        self._emit(EventKind.DISCONNECTED, connection.name, ConnectionClosedError(connection.name, reason))

    # Queries

    async def _query_all(self, what: str, query: Callable[[ServerConnection], Awaitable[R]]) -> dict[str, R]:
        """Run query against every connection; failing servers are omitted."""
        snapshot = list(self._connections.items())
        results = await asyncio.gather(
            *(query(connection) for _, connection in snapshot),
            return_exceptions=True,
        )
        aggregated: dict[str, R] = {}
        for (name, _), result in zip(snapshot, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to get {what} from '{name}': {result}")
                continue
            aggregated[name] = result
        return aggregated

    async def get_all_tools(self) -> dict[str, list[Tool]]:
        """Tools from every connected server, keyed by server name."""
        return await self._query_all("tools", lambda connection: connection.list_tools())

    async def get_all_resources(self) -> dict[str, list[Resource]]:
        """Resources from every connected server, keyed by server name."""
        return await self._query_all("resources", lambda connection: connection.list_resources())

    def _require(self, name: str) -> ServerConnection:
        connection = self._connections.get(name)
        if connection is None:
            raise ServerNotConnectedError(name)
        return connection

    async def call_tool(self, server_name: str, tool_name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._require(server_name).call_tool(tool_name, arguments)

    async def read_resource(self, server_name: str, uri: str) -> dict[str, Any]:
        return await self._require(server_name).read_resource(uri)

    def _split_tool_name(self, name: str) -> tuple[str | None, str]:
        # Longest server name first, so "a__b" wins over "a" for mcp__a__b__tool
        for server_name in sorted(self._connections, key=len, reverse=True):
            prefix = qualified_tool_name(server_name, "")
            if name.startswith(prefix) and len(name) > len(prefix):
                return server_name, name[len(prefix):]
        return None, name

    async def find_tool(self, name: str) -> tuple[str, Tool] | None:
        """Find the server advertising a tool.

        name is either a plain tool name, matched against every connected
        server in connection order, or mcp__<server>__<tool>, which only
        looks at that server.

        Returns:
            (server_name, tool), or None if no connected server has it
        """
        server_name, tool_name = self._split_tool_name(name)
        if server_name is not None:
            candidates = {server_name: await self._connections[server_name].list_tools()}
        else:
            candidates = await self.get_all_tools()

        for candidate, tools in candidates.items():
            for tool in tools:
                if tool.name == tool_name:
                    return candidate, tool
        return None

    async def call_tool_by_name(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a tool without naming its server (see find_tool).

        Raises:
            ToolNotFoundError: No connected server advertises the tool
            ServerNotConnectedError: The server went away after the lookup
        """
        found = await self.find_tool(name)
        if found is None:
            raise ToolNotFoundError(name)
        server_name, tool = found
        logger.debug(f"Routing tool '{name}' to server '{server_name}'")
        return await self.call_tool(server_name, tool.name, arguments)

    def get_connection(self, name: str) -> ServerConnection | None:
        return self._connections.get(name)

    def get_connected_servers(self) -> list[str]:
        return list(self._connections)

    def is_connected(self, name: str) -> bool:
        return name in self._connections

    def get_descriptors(self) -> list[ServerDescriptor]:
        """Every descriptor this registry has seen, connected or not.

        Reflects enable()/disable() changes, so it can be passed to save().
        """
        return list(self._descriptors.values())

    # Persistence

    def save(self, descriptors: Iterable[ServerDescriptor]) -> None:
        """Persist descriptors through the save hook given at construction.

        Raises:
            ConfigError: If no save hook was configured
        """
        if self._save_hook is None:
            raise ConfigError("No save hook configured for this registry")
        self._save_hook(list(descriptors))

    def _persist(self) -> None:
        # Without a hook enable/disable only change the running registry
        if self._save_hook is None:
            logger.debug("No save hook configured, enabled state not persisted")
            return
        self.save(self.get_descriptors())
