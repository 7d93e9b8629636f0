# ABOUTME: Validation utilities for server descriptors
# ABOUTME: Checks run before spawning and when loading config
import os
import shutil
from dataclasses import dataclass

from mcplink.models import ServerDescriptor
from mcplink.utils.env import referenced_env_vars


@dataclass(frozen=True)
class ValidationError:
    """Represents a validation error or warning.

    ABOUTME: Severity level distinguishes between blocking errors and warnings
    """
    server_name: str
    message: str
    severity: str  # 'error' or 'warning'


def validate_command_exists(command: str) -> ValidationError | None:
    """Validate that a command exists on the system.

    ABOUTME: Uses shutil.which() for cross-platform command lookup
    ABOUTME: Accepts both bare names on PATH and explicit executable paths

    Args:
        command: Command name or path to check

    Returns:
        ValidationError if command not found, None otherwise
    """
    if not command:
        return ValidationError(
            server_name="",
            message="No command specified",
            severity="error"
        )
    if shutil.which(command) is None:
        return ValidationError(
            server_name="",
            message=f"Command not found: {command}",
            severity="error"
        )
    return None


def validate_descriptor(server: ServerDescriptor) -> list[ValidationError]:
    """Validate a server descriptor.

    ABOUTME: Errors: missing or unresolvable command
    ABOUTME: Warnings: ${VAR} references to unset environment variables

    Args:
        server: ServerDescriptor to validate

    Returns:
        List of ValidationError instances (empty if valid)

    Examples:
        >>> validate_descriptor(ServerDescriptor(name="fs", command="npx", args=["-y", "server"]))
        []
    """
    errors: list[ValidationError] = []

    cmd_error = validate_command_exists(server.command)
    if cmd_error:
        errors.append(ValidationError(
            server_name=server.name,
            message=cmd_error.message,
            severity=cmd_error.severity
        ))

    sources: list[tuple[str, str]] = [("command", server.command or "")]
    sources += [("args", arg) for arg in server.args]
    sources += [(f"env.{key}", value) for key, value in server.env.items()]

    for where, value in sources:
        for var_name in referenced_env_vars(value):
            if var_name not in os.environ:
                errors.append(ValidationError(
                    server_name=server.name,
                    message=f"Environment variable '${var_name}' not set (referenced in {where})",
                    severity="warning"
                ))

    return errors
