# Stdio connection to a single MCP server
# ABOUTME: Owns one child process and speaks JSON-RPC over its stdin/stdout
# ABOUTME: Correlates concurrent requests by id, each with its own deadline
import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from mcplink.errors import (
    ConnectionClosedError,
    InitializeError,
    NotStartedError,
    ProtocolParseError,
    RequestTimeoutError,
    ServerError,
    SpawnError,
)
from mcplink.framing import JSONRPC_VERSION, LineFramer, encode_message
from mcplink.models import Notification, Request, Resource, Response, ServerDescriptor, Tool
from mcplink.utils.env import build_process_env
from mcplink.utils.validation import validate_command_exists

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger(f"{__name__}.stderr")

# MCP protocol constants
MCP_PROTOCOL_VERSION = "2024-11-05"
MCP_CLIENT_NAME = "mcplink"
MCP_CLIENT_VERSION = "0.1.0"

DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
STOP_GRACE_PERIOD = 1.0  # seconds between terminate() and kill()
READ_CHUNK_SIZE = 64 * 1024

# JSON-RPC error code for server requests we don't implement
METHOD_NOT_FOUND = -32601

StderrSink = Callable[[str, str], None]
NotificationHandler = Callable[[str, Notification], None]

T = TypeVar("T", Tool, Resource)


def log_stderr(server_name: str, line: str) -> None:
    """Default stderr sink: forward each line to the stderr logger."""
    stderr_logger.info(f"[{server_name}] {line}")


@dataclass
class PendingRequest:
    """An outstanding request waiting for its response."""
    method: str
    future: "asyncio.Future[Any]"
    timer: asyncio.TimerHandle | None = None


class ServerConnection:
    """Connection to one MCP server over a child process's stdio.

    ABOUTME: Usable only after start() has completed the initialize handshake
    ABOUTME: Every request leaves the pending table exactly once

    Example usage:
        async with ServerConnection(descriptor) as connection:
            tools = await connection.list_tools()
            result = await connection.call_tool("read_file", {"path": "/tmp/x"})

    Args:
        descriptor: Server to launch
        request_timeout: Per-request deadline in seconds
        stderr_sink: Receives (server_name, line) for every stderr line
        on_exit: Called with this connection when the process exits on its own
        on_notification: Called with (server_name, notification) for server notifications
    """

    def __init__(
        self,
        descriptor: ServerDescriptor,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        stderr_sink: StderrSink | None = None,
        on_exit: Callable[["ServerConnection"], None] | None = None,
        on_notification: NotificationHandler | None = None,
    ) -> None:
        self.descriptor = descriptor
        self.request_timeout = request_timeout
        self.on_exit = on_exit
        self.on_notification = on_notification
        self.server_info: dict[str, Any] = {}
        self._stderr_sink = stderr_sink or log_stderr
        self._framer = LineFramer(on_error=self._on_parse_error)
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._pending: dict[int, PendingRequest] = {}
        self._last_id = 0
        self._initialized = False
        self._closed = False
        self._stopped = asyncio.Event()

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def is_initialized(self) -> bool:
        """True once the handshake succeeded and until teardown."""
        return self._initialized and not self._closed

    @property
    def pending_ids(self) -> list[int]:
        """Ids of requests still waiting for a response."""
        return list(self._pending)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def parse_errors(self) -> int:
        """Number of stdout lines dropped because they were not JSON-RPC."""
        return self._framer.parse_errors

    async def __aenter__(self) -> "ServerConnection":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # Lifecycle

    async def start(self) -> None:
        """Spawn the server process and perform the initialize handshake.

        Raises:
            SpawnError: If the process can't be started
            InitializeError: If the handshake fails; the process is stopped
        """
        if self._process is not None or self._closed:
            raise SpawnError(self.name, "connection was already started")

        await self._spawn()
        try:
            await self._handshake()
        except (Exception, asyncio.CancelledError):
            await self.stop()
            raise

    async def _spawn(self) -> None:
        cmd_error = validate_command_exists(self.descriptor.command)
        if cmd_error:
            raise SpawnError(self.name, cmd_error.message)

        command = self.descriptor.command
        args = list(self.descriptor.args)
        logger.info(f"Starting MCP server '{self.name}': {command} {' '.join(args)}".rstrip())

        try:
            self._process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_process_env(self.descriptor.env),
            )
        except PermissionError as e:
            raise SpawnError(self.name, f"permission denied executing: {command}") from e
        except OSError as e:
            raise SpawnError(self.name, f"OS error: {e}") from e

        self._tasks = [
            asyncio.create_task(self._read_stdout(), name=f"mcplink-stdout-{self.name}"),
            asyncio.create_task(self._read_stderr(), name=f"mcplink-stderr-{self.name}"),
        ]

    async def _handshake(self) -> None:
        params = {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {
                "tools": {},
                "resources": {},
            },
            "clientInfo": {
                "name": MCP_CLIENT_NAME,
                "version": MCP_CLIENT_VERSION,
            },
        }
        try:
            result = await self.send_request("initialize", params)
        except (ServerError, RequestTimeoutError, ConnectionClosedError, NotStartedError) as e:
            raise InitializeError(self.name, str(e)) from e

        # The reply can arrive just before stdout hits EOF
        if self._closed:
            raise InitializeError(self.name, "server process exited during initialize")

        self.server_info = result if isinstance(result, dict) else {}
        self._initialized = True
        self.send_notification("notifications/initialized", {})

        info = self.server_info.get("serverInfo") or {}
        logger.info(
            f"Connected to MCP server '{self.name}' "
            f"(server: {info.get('name', 'unknown')} v{info.get('version', 'unknown')})"
        )

    async def stop(self) -> None:
        """Kill the process and reject every outstanding request.

        ABOUTME: Idempotent; safe to call on a connection that never started
        """
        await self._shutdown("connection closed", notify=False)

    async def _shutdown(self, reason: str, notify: bool) -> None:
        if self._closed:
            # Another caller is already tearing down; wait for it to finish
            await self._stopped.wait()
            return
        self._closed = True
        was_initialized = self._initialized
        self._initialized = False

        self._reject_all(ConnectionClosedError(self.name, reason))

        try:
            process = self._process
            if process is not None:
                if process.stdin is not None and not process.stdin.is_closing():
                    process.stdin.close()
                await self._terminate(process)

            # Readers normally hit EOF once the process is gone; give stderr a
            # moment to flush before cancelling whatever is still blocked
            current = asyncio.current_task()
            others = [task for task in self._tasks if task is not current]
            if others:
                _, still_running = await asyncio.wait(others, timeout=STOP_GRACE_PERIOD)
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*others, return_exceptions=True)
            self._tasks = []
        finally:
            self._stopped.set()

        logger.info(f"Disconnected from MCP server '{self.name}': {reason}")

        if notify and was_initialized and self.on_exit is not None:
            try:
                self.on_exit(self)
            except Exception as e:
                logger.warning(f"Exit callback for '{self.name}' failed: {e}")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=STOP_GRACE_PERIOD)
        except ProcessLookupError:
            pass  # Already gone
        except asyncio.TimeoutError:
            logger.warning(f"MCP server '{self.name}' ignored terminate, killing")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    # Requests

    def _writable_stdin(self) -> asyncio.StreamWriter | None:
        if self._closed or self._process is None:
            return None
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return None
        return stdin

    async def send_request(self, method: str, params: Any = None) -> Any:
        """Send a request and wait for its result.

        ABOUTME: The deadline timer is armed before the write so a stuck pipe can't extend it

        Args:
            method: JSON-RPC method name
            params: JSON-serializable params (omitted when None)

        Returns:
            The response's result value

        Raises:
            NotStartedError: No live process; nothing is registered
            ServerError: The server answered with an error object
            RequestTimeoutError: No answer within request_timeout
            ConnectionClosedError: The connection was torn down first
        """
        stdin = self._writable_stdin()
        if stdin is None:
            raise NotStartedError(self.name)

        loop = asyncio.get_running_loop()
        self._last_id += 1
        request_id = self._last_id

        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        payload = encode_message(message)

        future: asyncio.Future[Any] = loop.create_future()
        entry = PendingRequest(method=method, future=future)
        self._pending[request_id] = entry
        entry.timer = loop.call_later(self.request_timeout, self._expire, request_id)

        drain: asyncio.Future[None] | None = None
        try:
            stdin.write(payload)
            drain = asyncio.ensure_future(stdin.drain())
            drain.add_done_callback(functools.partial(self._write_finished, request_id))
            logger.debug(f"-> {self.name} #{request_id} {method}")
            return await future
        finally:
            if drain is not None and not drain.done():
                drain.cancel()
            # Covers caller cancellation; a no-op when already resolved
            self._remove_pending(request_id)

    def send_notification(self, method: str, params: Any = None) -> None:
        """Write a notification; no response is expected.

        ABOUTME: Silently skipped when the process input isn't available
        """
        stdin = self._writable_stdin()
        if stdin is None:
            logger.debug(f"Skipping notification '{method}' to '{self.name}': not running")
            return
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        stdin.write(encode_message(message))

    def _remove_pending(self, request_id: int) -> PendingRequest | None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _fail(self, request_id: int, error: Exception) -> None:
        entry = self._remove_pending(request_id)
        if entry is not None and not entry.future.done():
            entry.future.set_exception(error)

    def _expire(self, request_id: int) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        logger.warning(
            f"Request '{entry.method}' (#{request_id}) to '{self.name}' "
            f"timed out after {self.request_timeout:g}s"
        )
        self._fail(request_id, RequestTimeoutError(self.name, entry.method, self.request_timeout))

    def _write_finished(self, request_id: int, drain: "asyncio.Future[None]") -> None:
        if drain.cancelled():
            return
        error = drain.exception()
        if error is not None:
            self._fail(request_id, ConnectionClosedError(self.name, f"write failed: {error}"))

    def _reject_all(self, error: Exception) -> None:
        for request_id in list(self._pending):
            self._fail(request_id, error)

    # Incoming data

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                chunk = await stdout.read(READ_CHUNK_SIZE)
            except (ConnectionError, OSError) as e:
                logger.warning(f"Reading from '{self.name}' failed: {e}")
                break
            if not chunk:
                break
            for message in self._framer.feed(chunk):
                self._dispatch(message)

        if not self._closed:
            reason = "server process exited"
            if self.returncode is not None:
                reason = f"server process exited with code {self.returncode}"
            logger.warning(f"MCP server '{self.name}' closed its output: {reason}")
            await self._shutdown(reason, notify=True)

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        partial = b""
        while True:
            try:
                chunk = await stderr.read(READ_CHUNK_SIZE)
            except (ConnectionError, OSError):
                break
            if not chunk:
                break
            *lines, partial = (partial + chunk).split(b"\n")
            for line in lines:
                self._emit_stderr(line)
        if partial:
            self._emit_stderr(partial)

    def _emit_stderr(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").rstrip("\r")
        try:
            self._stderr_sink(self.name, line)
        except Exception as e:
            logger.warning(f"stderr sink for '{self.name}' failed: {e}")

    def _on_parse_error(self, error: ProtocolParseError) -> None:
        logger.warning(f"Ignoring non-protocol output from '{self.name}': {error}")

    def _dispatch(self, message: Request | Response | Notification) -> None:
        if isinstance(message, Response):
            self._handle_response(message)
        elif isinstance(message, Request):
            self._handle_server_request(message)
        else:
            self._handle_notification(message)

    def _handle_response(self, response: Response) -> None:
        request_id = response.id
        # bool is an int subclass; true/false are never valid ids here
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            logger.debug(f"Dropping response from '{self.name}' with id {request_id!r}")
            return

        entry = self._remove_pending(request_id)
        if entry is None:
            logger.debug(f"Dropping response from '{self.name}' for unknown request #{request_id}")
            return
        if entry.future.done():
            return

        if response.is_error:
            entry.future.set_exception(ServerError.from_error_object(self.name, response.error))
        else:
            entry.future.set_result(response.result)

    def _handle_server_request(self, request: Request) -> None:
        reply: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request.id}
        if request.method == "ping":
            reply["result"] = {}
        else:
            logger.debug(f"Rejecting unsupported request '{request.method}' from '{self.name}'")
            reply["error"] = {"code": METHOD_NOT_FOUND, "message": f"Method not found: {request.method}"}

        stdin = self._writable_stdin()
        if stdin is not None:
            stdin.write(encode_message(reply))

    def _handle_notification(self, notification: Notification) -> None:
        logger.debug(f"Notification from '{self.name}': {notification.method}")
        if self.on_notification is None:
            return
        try:
            self.on_notification(self.name, notification)
        except Exception as e:
            logger.warning(f"Notification callback for '{self.name}' failed: {e}")

    # MCP methods

    def _collect(self, result: Any, key: str, required: str, model: type[T]) -> list[T]:
        items = result.get(key) if isinstance(result, dict) else None
        if not isinstance(items, list):
            return []

        collected: list[T] = []
        for item in items:
            if isinstance(item, dict) and isinstance(item.get(required), str):
                collected.append(model.from_dict(item))
            else:
                logger.warning(f"Skipping {key} entry from '{self.name}' without '{required}': {item!r}")
        return collected

    async def list_tools(self) -> list[Tool]:
        """List tools via tools/list; a missing list means no tools."""
        result = await self.send_request("tools/list", {})
        return self._collect(result, "tools", "name", Tool)

    async def list_resources(self) -> list[Resource]:
        """List resources via resources/list; a missing list means no resources."""
        result = await self.send_request("resources/list", {})
        return self._collect(result, "resources", "uri", Resource)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Invoke a tool via tools/call and return the raw result object."""
        result = await self.send_request("tools/call", {"name": name, "arguments": arguments or {}})
        return result if isinstance(result, dict) else {"content": result}

    async def read_resource(self, uri: str) -> dict[str, Any]:
        """Read a resource via resources/read and return the raw result object."""
        result = await self.send_request("resources/read", {"uri": uri})
        return result if isinstance(result, dict) else {"contents": result}
