# Newline-delimited JSON-RPC framing
# ABOUTME: Turns an arbitrarily chunked byte stream into discrete messages
# ABOUTME: Malformed lines are logged and dropped, never raised to the caller
import json
import logging
from typing import Any, Callable

from mcplink.errors import ProtocolParseError
from mcplink.models import Message, Notification, Request, Response

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize one JSON-RPC object as a single newline-terminated line.

    ABOUTME: Compact separators; json.dumps escapes newlines inside strings
    """
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def parse_message(obj: dict[str, Any]) -> Message:
    """Classify a decoded JSON object as Request, Response or Notification.

    ABOUTME: method + id -> Request, method without id -> Notification
    ABOUTME: anything else is treated as a Response (result or error)

    Args:
        obj: Decoded JSON object

    Returns:
        The matching message dataclass
    """
    method = obj.get("method")
    if isinstance(method, str):
        if "id" in obj and obj["id"] is not None:
            return Request(id=obj["id"], method=method, params=obj.get("params"))
        return Notification(method=method, params=obj.get("params"))
    return Response(id=obj.get("id"), result=obj.get("result"), error=obj.get("error"))


def decode_line(line: bytes) -> Message:
    """Decode one complete line into a message.

    Raises:
        ProtocolParseError: If the line is not UTF-8 JSON describing an object
    """
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolParseError(line, f"invalid UTF-8: {e.reason}") from e

    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(line, f"invalid JSON: {e.msg}") from e

    if not isinstance(obj, dict):
        raise ProtocolParseError(line, f"expected JSON object, got {type(obj).__name__}")

    return parse_message(obj)


class LineFramer:
    """Incremental splitter for newline-delimited JSON.

    ABOUTME: The buffer only ever holds bytes after the last newline seen
    ABOUTME: Decoding is per complete line, so split UTF-8 sequences are safe

    Servers frequently write banners or log output to stdout alongside the
    protocol. Those lines fail to parse, get counted in ``parse_errors`` and
    reported through ``on_error``, and the stream carries on.
    """

    def __init__(self, on_error: Callable[[ProtocolParseError], None] | None = None) -> None:
        self._buffer = b""
        self._on_error = on_error
        self.parse_errors = 0

    @property
    def buffered(self) -> bytes:
        """Trailing partial line waiting for more data."""
        return self._buffer

    def feed(self, data: bytes) -> list[Message]:
        """Append a chunk and return every message it completes, in order."""
        self._buffer += data
        if b"\n" not in data:
            return []

        *lines, self._buffer = self._buffer.split(b"\n")

        messages: list[Message] = []
        for raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                messages.append(decode_line(line))
            except ProtocolParseError as e:
                self.parse_errors += 1
                if self._on_error is None:
                    logger.warning(f"Dropping unparseable line: {e}")
                    continue
                try:
                    self._on_error(e)
                except Exception as callback_error:
                    logger.warning(f"Parse error callback failed: {callback_error}")
        return messages
