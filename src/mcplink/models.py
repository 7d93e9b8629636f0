# Core data models for mcplink
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class ServerDescriptor:
    """Immutable description of a stdio MCP server.

    ABOUTME: Uses frozen dataclass so a running connection can't see it change
    ABOUTME: Only an explicit enabled=False keeps a server from connect_all

    args is stored as a tuple and env as a read-only mapping, whatever
    sequence or dict they were given as. env is left out of the hash.
    """
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict, hash=False)
    enabled: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


@dataclass
class Config:
    """Server descriptors loaded from one or more config files.

    ABOUTME: Keeps load order (project entries first, then user-only entries)
    """
    servers: dict[str, ServerDescriptor] = field(default_factory=dict)


@dataclass
class Tool:
    """A tool advertised by a server through tools/list."""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tool":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class Resource:
    """A resource advertised by a server through resources/list."""
    uri: str
    name: str
    mime_type: str | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resource":
        return cls(
            uri=data["uri"],
            name=data.get("name") or data["uri"],
            mime_type=data.get("mimeType"),
            description=data.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"uri": self.uri, "name": self.name}
        if self.mime_type is not None:
            result["mimeType"] = self.mime_type
        if self.description is not None:
            result["description"] = self.description
        return result


# JSON-RPC 2.0 message shapes, discriminated by parse_message() in framing.py

@dataclass(frozen=True)
class Request:
    id: int | str
    method: str
    params: Any = None


@dataclass(frozen=True)
class Response:
    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Notification:
    method: str
    params: Any = None


Message = Request | Response | Notification
