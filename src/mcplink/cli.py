# CLI interface for mcplink
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from mcplink import __version__
from mcplink.config import (
    add_server,
    get_project_config_path,
    load_config,
    load_descriptors,
    remove_server,
)
from mcplink.errors import ConfigError, McpLinkError
from mcplink.models import ServerDescriptor
from mcplink.registry import ConnectReport, ServerRegistry
from mcplink.utils import validate_descriptor

# ABOUTME: Exit codes
# 0 = success, 1 = partial success, 2 = config error, 3 = fatal
EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_CONFIG_ERROR = 2
EXIT_FATAL = 3


def _descriptors(args: argparse.Namespace) -> list[ServerDescriptor]:
    """Servers from --config if given, else the merged project/user config."""
    if args.config:
        return list(load_config(Path(args.config)).servers.values())
    return load_descriptors()


def _print_failures(report: ConnectReport) -> None:
    for name, error in report.failed.items():
        print(f"  {name} - failed: {error}")


def cmd_list(args: argparse.Namespace) -> int:
    """List configured servers with their validation status.

    ABOUTME: Does not start any server
    """
    descriptors = _descriptors(args)
    if not descriptors:
        print("No MCP servers configured.")
        print(f"Configure servers in {get_project_config_path()}")
        return EXIT_SUCCESS

    print(f"Configured MCP servers ({len(descriptors)}):")
    errors = 0
    for server in descriptors:
        status = "enabled" if server.enabled else "disabled"
        print(f"  {server.name} ({status}): {server.command} {' '.join(server.args)}".rstrip())
        for problem in validate_descriptor(server):
            print(f"    {problem.severity}: {problem.message}")
            if problem.severity == "error":
                errors += 1

    return EXIT_CONFIG_ERROR if errors else EXIT_SUCCESS


async def _list_capabilities(args: argparse.Namespace, kind: str) -> int:
    descriptors = _descriptors(args)
    async with ServerRegistry(request_timeout=args.timeout) as registry:
        report = await registry.connect_all(descriptors)
        if kind == "tools":
            results = await registry.get_all_tools()
        else:
            results = await registry.get_all_resources()

    for server_name, items in results.items():
        print(f"{server_name} ({len(items)} {kind}):")
        for item in items:
            if kind == "tools":
                print(f"  {item.name}: {item.description}" if item.description else f"  {item.name}")
            else:
                print(f"  {item.uri} - {item.name}")

    missing = [name for name in report.connected if name not in results]
    if report.failed or missing:
        print()
        _print_failures(report)
        for name in missing:
            print(f"  {name} - failed to list {kind}")
        return EXIT_PARTIAL
    return EXIT_SUCCESS


def cmd_tools(args: argparse.Namespace) -> int:
    """Connect to every enabled server and print its tools."""
    return asyncio.run(_list_capabilities(args, "tools"))


def cmd_resources(args: argparse.Namespace) -> int:
    """Connect to every enabled server and print its resources."""
    return asyncio.run(_list_capabilities(args, "resources"))


def _find_descriptor(args: argparse.Namespace, name: str) -> ServerDescriptor | None:
    for server in _descriptors(args):
        if server.name == name:
            return server
    return None


async def _call(args: argparse.Namespace, server: ServerDescriptor, arguments: dict) -> int:
    async with ServerRegistry(request_timeout=args.timeout) as registry:
        await registry.connect(server)
        if args.command == "call":
            result = await registry.call_tool(server.name, args.tool, arguments)
        else:
            result = await registry.read_resource(server.name, args.uri)

    print(json.dumps(result, indent=2))
    return EXIT_PARTIAL if result.get("isError") else EXIT_SUCCESS


def cmd_call(args: argparse.Namespace) -> int:
    """Start one server and run a tools/call or resources/read against it.

    ABOUTME: Shared by the 'call' and 'read' commands
    """
    server = _find_descriptor(args, args.server)
    if server is None:
        print(f"Error: Server '{args.server}' not found in config.")
        return EXIT_CONFIG_ERROR

    arguments: dict = {}
    if args.command == "call":
        try:
            arguments = json.loads(args.args or "{}")
        except json.JSONDecodeError as e:
            print(f"Error: --args is not valid JSON: {e}")
            return EXIT_CONFIG_ERROR
        if not isinstance(arguments, dict):
            print("Error: --args must be a JSON object")
            return EXIT_CONFIG_ERROR

    return asyncio.run(_call(args, server, arguments))


def _parse_pairs(value: str | None) -> dict[str, str]:
    """Parse comma-separated KEY=VALUE pairs."""
    pairs: dict[str, str] = {}
    if not value:
        return pairs
    for pair in value.split(","):
        if "=" in pair:
            key, val = pair.split("=", 1)
            pairs[key.strip()] = val.strip()
    return pairs


def cmd_add(args: argparse.Namespace) -> int:
    """Add a server to the config file (project config unless --config)."""
    config_path = Path(args.config) if args.config else get_project_config_path()
    server = ServerDescriptor(
        name=args.name,
        command=args.server_command,
        args=tuple(arg.strip() for arg in args.server_args.split(",")) if args.server_args else (),
        env=_parse_pairs(args.env),
        enabled=not args.disabled,
    )

    replaced = add_server(config_path, server)
    verb = "Replaced" if replaced else "Added"
    print(f"{verb} server '{server.name}' in {config_path}")

    for problem in validate_descriptor(server):
        print(f"  {problem.severity}: {problem.message}")
    return EXIT_SUCCESS


def cmd_remove(args: argparse.Namespace) -> int:
    """Remove a server from the config file."""
    config_path = Path(args.config) if args.config else get_project_config_path()
    try:
        removed = remove_server(config_path, args.name)
    except FileNotFoundError:
        print(f"Error: Config file not found at {config_path}")
        return EXIT_CONFIG_ERROR

    if not removed:
        print(f"Server '{args.name}' not found in {config_path}.")
        return EXIT_CONFIG_ERROR

    print(f"Removed server '{args.name}' from {config_path}")
    return EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcplink",
        description="Connect to stdio MCP servers and query their tools and resources"
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"mcplink v{__version__}"
    )
    parser.add_argument(
        "--config", "-c",
        help="Config file to use instead of the project/user config (.json or .toml)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Per-request timeout in seconds (default: 30)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("list", help="List configured servers")
    subparsers.add_parser("tools", help="List tools from all enabled servers")
    subparsers.add_parser("resources", help="List resources from all enabled servers")

    call_parser = subparsers.add_parser("call", help="Call a tool on a server")
    call_parser.add_argument("server", help="Server name")
    call_parser.add_argument("tool", help="Tool name")
    call_parser.add_argument("--args", help="Tool arguments as a JSON object")

    read_parser = subparsers.add_parser("read", help="Read a resource from a server")
    read_parser.add_argument("server", help="Server name")
    read_parser.add_argument("uri", help="Resource URI")

    add_parser = subparsers.add_parser("add", help="Add a server to config")
    add_parser.add_argument("name", help="Name of the server to add")
    add_parser.add_argument("--command", dest="server_command", required=True, help="Command to run")
    add_parser.add_argument("--args", dest="server_args", help="Comma-separated arguments")
    add_parser.add_argument("--env", help="Comma-separated KEY=VALUE environment variables")
    add_parser.add_argument("--disabled", action="store_true", help="Add the server disabled")

    remove_parser = subparsers.add_parser("remove", help="Remove a server from config")
    remove_parser.add_argument("name", help="Name of the server to remove")

    return parser


COMMANDS = {
    "list": cmd_list,
    "tools": cmd_tools,
    "resources": cmd_resources,
    "call": cmd_call,
    "read": cmd_call,
    "add": cmd_add,
    "remove": cmd_remove,
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    ABOUTME: Parses args and dispatches to appropriate command
    ABOUTME: Returns exit code for sys.exit()
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        return handler(args)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return EXIT_CONFIG_ERROR
    except ConfigError as e:
        print(f"Config error: {e}")
        return EXIT_CONFIG_ERROR
    except McpLinkError as e:
        print(f"Error: {e}")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
